"""JSON helpers for run checkpoint files."""

import json
import logging
import os
from pathlib import Path
from typing import Any, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def read_json(file_path: PathLike) -> Any:
    """Parse a UTF-8 JSON file.

    Raises:
        FileNotFoundError: The file does not exist
        json.JSONDecodeError: The content is not valid JSON
    """
    path = Path(file_path)
    logger.debug(f"Loading checkpoint {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def write_json(
    data: Any,
    file_path: PathLike,
    indent: int = 2,
    ensure_ascii: bool = False,
) -> None:
    """Serialize `data` to `file_path`, replacing the file atomically.

    Parent directories are created as needed. Content goes to a ``.tmp``
    sibling first and is moved over the target with ``os.replace``, so readers
    see either the old checkpoint or the new one. Values json cannot encode
    natively (datetimes, enums) are written with ``str``.
    """
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = path.with_name(f"{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=indent, ensure_ascii=ensure_ascii, default=str)
    os.replace(tmp_path, path)
    logger.debug(f"Checkpoint written to {path}")
