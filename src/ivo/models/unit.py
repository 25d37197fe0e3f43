"""Pydantic models for the unit snapshot returned by the generation service.

The snapshot is the server's view of a unit. Stage completion is always judged
against it, never against locally cached pipeline state.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class UnitVariant(str, Enum):
    """Unit type, which decides between the grammar and tips stages."""

    LEXICAL = "lexical_unit"
    GRAMMAR = "grammar_unit"


class Assessment(BaseModel):
    """Assessment activity descriptor (only the fields the pipeline needs)."""

    id: Optional[str] = Field(None, description="Assessment activity ID")
    type: str = Field(..., description="Assessment type, e.g. gap_fill, matching")
    title: Optional[str] = Field(None, description="Activity title")
    difficulty_level: Optional[str] = Field(None, description="Difficulty label")

    model_config = {"extra": "ignore"}


class AssessmentsSection(BaseModel):
    """Assessments content section of a unit."""

    activities: List[Assessment] = Field(default_factory=list)
    total_count: Optional[int] = None

    model_config = {"extra": "ignore"}


class UnitSnapshot(BaseModel):
    """Server-side state of a unit at the time it was fetched."""

    id: str = Field(..., description="Unit ID")
    unit_type: UnitVariant = Field(..., description="lexical_unit or grammar_unit")
    title: Optional[str] = None
    main_aim: Optional[str] = Field(None, description="Main CEFR learning objective")

    # Generated content sections (stored server-side as JSONB)
    vocabulary: Optional[Dict[str, Any]] = None
    sentences: Optional[Dict[str, Any]] = None
    grammar: Optional[Dict[str, Any]] = None
    tips: Optional[Dict[str, Any]] = None
    qa: Optional[Dict[str, Any]] = None
    assessments: Optional[AssessmentsSection] = None
    solve_assessments: Optional[Dict[str, Any]] = Field(
        None, description="Answer keys keyed by assessment type"
    )

    # Generation targets chosen at unit creation
    vocabulary_target_count: Optional[int] = None
    sentences_target_count: Optional[int] = None
    qa_target_count: Optional[int] = None
    assessment_count: Optional[int] = None
    is_revision_unit: Optional[bool] = None

    model_config = {"extra": "ignore"}

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "UnitSnapshot":
        """Build a snapshot from the `data` field of a unit response.

        The service sometimes nests the unit under a `unit` key.
        """
        if "unit" in data and isinstance(data["unit"], dict) and "id" not in data:
            merged = dict(data["unit"])
            merged.update({k: v for k, v in data.items() if k != "unit"})
            data = merged
        return cls.model_validate(data)

    @property
    def activities(self) -> List[Assessment]:
        return self.assessments.activities if self.assessments else []

    def assessment_types(self) -> List[str]:
        """Distinct assessment types in activity order."""
        return list(dict.fromkeys(a.type for a in self.activities))


# Ranges accepted for operator-supplied targets (CLI flags). Targets coming
# from the unit snapshot are only required to be positive.
TARGET_COUNT_RANGES: Dict[str, Tuple[int, int]] = {
    "vocabulary_target_count": (5, 50),
    "sentences_target_count": (3, 20),
    "qa_target_count": (2, 15),
    "assessment_count": (1, 5),
}


class UnitGenerationConfig(BaseModel):
    """Generation settings shared by every stage of a run.

    `stage_params` holds per-stage overrides that are merged over the
    defaults and forwarded to the service as-is.
    """

    unit_type: UnitVariant = UnitVariant.LEXICAL
    vocabulary_target_count: int = Field(default=15, ge=1)
    sentences_target_count: int = Field(default=10, ge=1)
    qa_target_count: int = Field(default=8, ge=1)
    assessment_count: int = Field(default=2, ge=1)
    is_revision_unit: bool = False
    stage_params: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @classmethod
    def from_snapshot(
        cls, snapshot: UnitSnapshot, **overrides: Any
    ) -> "UnitGenerationConfig":
        """Take the unit's own targets where set, then apply overrides."""
        values: Dict[str, Any] = {"unit_type": snapshot.unit_type}
        for name in (
            "vocabulary_target_count",
            "sentences_target_count",
            "qa_target_count",
            "assessment_count",
            "is_revision_unit",
        ):
            value = getattr(snapshot, name)
            if value:
                values[name] = value
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
