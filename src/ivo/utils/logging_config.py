"""Structured logging for pipeline runs.

Stage start/finish/failure records carry the unit, the stage and the elapsed
time as fields, so a run can be followed from JSON log output alone.
"""

import json
import logging
import sys
import time
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

# Attributes every LogRecord has; anything else was passed through `extra`
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

# Promoted out of "extra" to the top level of the JSON record
_TOP_LEVEL_FIELDS = ("unit_id", "stage", "status")

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Keys: timestamp (UTC ISO 8601), level, logger, message, then unit_id,
    stage and status when present, an "extra" mapping for any other context
    and "exception" with the formatted traceback.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        for field in _TOP_LEVEL_FIELDS:
            if field in context:
                payload[field] = context.pop(field)
        if context:
            payload["extra"] = context

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(
    level: Union[str, int] = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
    json_format: bool = True,
    console_output: bool = True,
) -> None:
    """Replace the root logger's handlers with console and/or file handlers.

    Args:
        level: Minimum level for root and handlers
        log_file: Optional log file; parent directories are created
        json_format: JsonFormatter if True, plain text otherwise
        console_output: Add a stdout handler
    """
    formatter: logging.Formatter = (
        JsonFormatter() if json_format else logging.Formatter(_TEXT_FORMAT, "%Y-%m-%d %H:%M:%S")
    )

    handlers: list[logging.Handler] = []
    if console_output:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    root.info(
        f"Logging configured: level={logging.getLevelName(root.level)}, "
        f"json_format={json_format}, log_file={log_file}"
    )


@contextmanager
def pipeline_stage_logger(stage_name: str, **context: Any) -> Iterator[logging.Logger]:
    """Log a stage's start, completion or failure with its duration.

    Records go to the ``ivo.stage.<stage_name>`` logger with ``stage``,
    ``status`` and ``duration_ms`` fields plus the given context. Exceptions
    are logged and re-raised.

    Example:
        >>> with pipeline_stage_logger("vocabulary", unit_id="u-1") as log:
        ...     log.info("Requesting vocabulary")
    """
    stage_log = logging.getLogger(f"ivo.stage.{stage_name}")
    fields = {"stage": stage_name, **context}

    stage_log.info(f"Stage {stage_name} started", extra={**fields, "status": "started"})
    started = time.monotonic()

    try:
        yield stage_log
    except Exception as e:
        stage_log.error(
            f"Stage {stage_name} failed: {e}",
            extra={
                **fields,
                "status": "failed",
                "duration_ms": round((time.monotonic() - started) * 1000, 2),
                "error": str(e)[:200],
            },
        )
        raise

    stage_log.info(
        f"Stage {stage_name} completed",
        extra={
            **fields,
            "status": "completed",
            "duration_ms": round((time.monotonic() - started) * 1000, 2),
        },
    )
