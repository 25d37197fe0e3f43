"""Data models for units and pipeline runs."""

from ivo.models.pipeline_run import (
    AssessmentSolveResult,
    FanOutOutcome,
    PipelineRun,
    StageExecutionResult,
    StageRun,
    StageStatus,
)
from ivo.models.unit import (
    Assessment,
    AssessmentsSection,
    UnitGenerationConfig,
    UnitSnapshot,
    UnitVariant,
)

__all__ = [
    "Assessment",
    "AssessmentSolveResult",
    "AssessmentsSection",
    "FanOutOutcome",
    "PipelineRun",
    "StageExecutionResult",
    "StageRun",
    "StageStatus",
    "UnitGenerationConfig",
    "UnitSnapshot",
    "UnitVariant",
]
