"""Persistent run store for pipeline checkpoints.

Run state is kept under two keys per unit so that several units never collide
and an interrupted run can be picked up by reloading the same keys:

- ``run:{unit_id}``: executing flag, active stage, event log, completion time
- ``stages:{unit_id}``: the ordered stage records

Any key-value backend works. ``JsonFileKeyValueStore`` keeps every key in one
JSON checkpoint file; ``InMemoryKeyValueStore`` is for tests and throwaway runs.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from pydantic import ValidationError

from ivo.models.pipeline_run import PipelineRun, StageRun
from ivo.utils.file_io import read_json, write_json

logger = logging.getLogger(__name__)


def run_key(unit_id: str) -> str:
    return f"run:{unit_id}"


def stages_key(unit_id: str) -> str:
    return f"stages:{unit_id}"


class KeyValueStore(Protocol):
    """Minimal durable key-value interface."""

    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> List[str]: ...

class InMemoryKeyValueStore:
    """Dict-backed store. Values are JSON round-tripped to mimic a real backend."""

    def __init__(self):
        self._data: Dict[str, str] = {}

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, ensure_ascii=False, default=str)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data.keys())


class JsonFileKeyValueStore:
    """All keys in a single JSON checkpoint file, rewritten on every change."""

    def __init__(self, file_path: str | Path):
        """
        Args:
            file_path: Path to the checkpoint JSON file
        """
        self.file_path = Path(file_path)
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        if not self.file_path.exists():
            logger.info(f"No checkpoint file at {self.file_path}, starting empty")
            return

        try:
            data = read_json(self.file_path)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            logger.error(f"Failed to read checkpoint file {self.file_path}: {e}")
            return

        if not isinstance(data, dict):
            logger.error(f"Checkpoint file {self.file_path} is not a JSON object, ignoring")
            return

        self._data = data
        logger.info(f"Loaded {len(self._data)} keys from {self.file_path}")

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            write_json(self._data, self.file_path)

    def delete(self, key: str) -> None:
        with self._lock:
            if key in self._data:
                del self._data[key]
                write_json(self._data, self.file_path)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())


class PersistentRunStore:
    """Save, load and clear a unit's PipelineRun."""

    def __init__(self, backend: Optional[KeyValueStore] = None):
        self.backend = backend if backend is not None else InMemoryKeyValueStore()

    def load(self, unit_id: str) -> PipelineRun | None:
        """Load the persisted run, or None if absent or unreadable.

        A corrupted stages entry is removed so the next attach starts fresh.
        """
        raw_stages = self.backend.get(stages_key(unit_id))
        if raw_stages is None:
            return None

        try:
            if not isinstance(raw_stages, list) or not raw_stages:
                raise ValueError("stages entry is not a non-empty list")
            stages = [StageRun.model_validate(s) for s in raw_stages]
        except (ValueError, ValidationError) as e:
            logger.warning(f"Discarding corrupted stages for unit {unit_id}: {e}")
            self.backend.delete(stages_key(unit_id))
            return None

        state = self.backend.get(run_key(unit_id)) or {}
        try:
            return PipelineRun(
                unit_id=unit_id,
                stages=stages,
                is_executing=state.get("is_executing", False),
                active_stage_id=state.get("active_stage_id"),
                log=state.get("log", []),
                completed_at=state.get("completed_at"),
            )
        except (AttributeError, ValidationError) as e:
            logger.warning(f"Discarding corrupted run state for unit {unit_id}: {e}")
            self.backend.delete(run_key(unit_id))
            return PipelineRun(unit_id=unit_id, stages=stages)

    def save(self, unit_id: str, run: PipelineRun) -> None:
        data = run.model_dump(mode="json")
        self.backend.set(
            run_key(unit_id),
            {
                "is_executing": data["is_executing"],
                "active_stage_id": data["active_stage_id"],
                "log": data["log"],
                "completed_at": data["completed_at"],
            },
        )
        self.backend.set(stages_key(unit_id), data["stages"])
        logger.debug(
            f"Run checkpoint saved for {unit_id}: "
            f"{run.completed_count}/{len(run.stages)} completed"
        )

    def clear(self, unit_id: str) -> None:
        self.backend.delete(run_key(unit_id))
        self.backend.delete(stages_key(unit_id))
        logger.info(f"Cleared persisted run for unit {unit_id}")

    def unit_ids(self) -> List[str]:
        """Units with a saved run, sorted."""
        prefix = stages_key("")
        return sorted(k[len(prefix):] for k in self.backend.keys() if k.startswith(prefix))
