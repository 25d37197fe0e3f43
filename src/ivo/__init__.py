"""
Unit Generation Pipeline for IVO Learning Content

This package drives a single unit (course → book → unit) through the ordered
content-generation stages of the IVO generation service (objectives, vocabulary,
sentences, grammar/tips, assessments, Q&A and answer-key solving), persisting
progress so a run can be resumed after a restart.

**Version**: 0.1.0
**Python**: >=3.11
**Key Dependencies**: requests, pydantic, python-dotenv, loguru
"""

__version__ = "0.1.0"
__author__ = "IVO"

# Pipeline metadata
UNIT_VARIANTS = ["lexical_unit", "grammar_unit"]
CEFR_LEVELS = ["A1", "A2", "B1", "B2", "C1", "C2"]

__all__ = [
    "__version__",
    "__author__",
    "UNIT_VARIANTS",
    "CEFR_LEVELS",
]
