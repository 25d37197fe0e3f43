"""Loguru sinks for command-line runs.

All stdlib ``logging`` records (the pipeline modules, requests/urllib3) are
forwarded to loguru so a CLI run has a single, consistently formatted stream.
"""

import inspect
import logging
import sys

from loguru import logger

from ivo.constants import ENV, LOG_FORMAT, LOG_LEVEL, PRODUCT

__all__ = ["logger", "setup_logging", "InterceptHandler"]

# Chatty third-party loggers, kept at WARNING unless debugging
_NOISY_LOGGERS = ("urllib3", "requests")


class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        # Get corresponding Loguru level if it exists.
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message.
        frame, depth = inspect.currentframe(), 0
        while frame:
            filename = frame.f_code.co_filename
            is_logging = filename == logging.__file__
            is_frozen = "importlib" in filename and "_bootstrap" in filename
            if depth > 0 and not (is_logging or is_frozen):
                break
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def setup_logging(level: str | None = None, json_format: bool | None = None) -> None:
    """Install the intercept handler and the stdout sink.

    Args:
        level: Minimum level (default: LOG_LEVEL)
        json_format: Serialize records as JSON (default: LOG_FORMAT == "json")
    """
    level = (level or LOG_LEVEL).upper()
    if json_format is None:
        json_format = LOG_FORMAT == "json"

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    if level != "DEBUG":
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logger.remove()  # Remove default configuration
    logger.add(sys.stdout, level=level, backtrace=True, diagnose=False, serialize=json_format)
    if ENV == "dev":
        logger.add(f"/tmp/{PRODUCT}-{ENV}.log", level="DEBUG")
    logger.debug(f"Logging setup completed (level={level}, json={json_format})")
