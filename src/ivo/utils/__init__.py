"""
Shared utilities for the unit generation pipeline.

- generation_client.py: HTTP client for the IVO generation service
- file_io.py: JSON file operations
- logging_config.py: Structured JSON logging for pipeline observability
- logging_helper.py: Loguru sinks for command-line runs
"""

__all__ = [
    "generation_client",
    "file_io",
    "logging_config",
    "logging_helper",
]
