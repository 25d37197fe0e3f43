"""Shared fixtures for unit and integration tests."""

import pytest

from ivo.models.pipeline_run import StageExecutionResult
from ivo.models.unit import UnitSnapshot, UnitVariant


@pytest.fixture
def make_unit():
    """Factory for unit snapshots with only the given sections filled in."""

    def _make(unit_type=UnitVariant.LEXICAL, **fields):
        data = {
            "id": "unit-1",
            "unit_type": unit_type,
            "title": "Daily Routines",
            "main_aim": "Students will be able to describe their daily routine",
        }
        data.update(fields)
        return UnitSnapshot(**data)

    return _make


@pytest.fixture
def complete_unit(make_unit):
    """Lexical unit with every stage already generated."""
    return make_unit(
        vocabulary={"items": [{"word": "wake up"}]},
        sentences={"sentences": [{"text": "I wake up at seven."}]},
        tips={"strategies": [{"title": "Chunking"}]},
        assessments={"activities": [{"type": "gap_fill"}, {"type": "matching"}]},
        qa={"questions": [{"question": "What time do you wake up?"}]},
        solve_assessments={"gap_fill": {"answers": []}, "matching": {"answers": []}},
    )


class FakeExecutor:
    """Stage executor double recording calls in order."""

    def __init__(self, failures=(), on_execute=None):
        self.calls = []
        self.known_assessments = {}
        self.configs = {}
        self.failures = set(failures)
        self.on_execute = on_execute

    def execute(self, unit_id, stage_id, config, known_assessments=None):
        self.calls.append(stage_id)
        self.known_assessments[stage_id] = known_assessments
        self.configs[stage_id] = config
        if self.on_execute is not None:
            self.on_execute(stage_id)
        success = stage_id not in self.failures
        return StageExecutionResult(
            stage_id=stage_id,
            success=success,
            message="done" if success else f"{stage_id} failed",
            duration_ms=5,
        )


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def executor_factory():
    """Build a FakeExecutor with failures or a per-call hook."""
    return FakeExecutor
