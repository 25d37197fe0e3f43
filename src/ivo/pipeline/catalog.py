"""Stage catalog for the unit generation pipeline.

Defines the fixed, ordered stage list for each unit variant and the completion
predicate of every stage. Each stage depends on all stages before it in
catalog order.

    objectives → vocabulary → sentences → grammar | tips → assessments → qa → solve
"""

from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from ivo.models.pipeline_run import StageRun, StageStatus
from ivo.models.unit import UnitSnapshot, UnitVariant

OBJECTIVES = "objectives"
VOCABULARY = "vocabulary"
SENTENCES = "sentences"
GRAMMAR = "grammar"
TIPS = "tips"
ASSESSMENTS = "assessments"
QA = "qa"
SOLVE = "solve"


class UnknownStageError(ValueError):
    """Raised when a stage id is not part of the unit's catalog."""


@dataclass(frozen=True)
class Stage:
    """Immutable stage definition."""

    id: str
    name: str
    description: str
    predicate: Callable[[UnitSnapshot], bool]
    is_regenerable: bool = True

    def is_complete(self, snapshot: UnitSnapshot) -> bool:
        return self.predicate(snapshot)


def _has_content(section: Optional[Any]) -> bool:
    return bool(section)


def _objectives_complete(snapshot: UnitSnapshot) -> bool:
    return bool(snapshot.main_aim and snapshot.main_aim.strip())


def _solve_complete(snapshot: UnitSnapshot) -> bool:
    """Every listed assessment type must have an answer key."""
    assessment_types = snapshot.assessment_types()
    if not assessment_types or not snapshot.solve_assessments:
        return False
    solved = set(snapshot.solve_assessments.keys())
    return all(t in solved for t in assessment_types)


_OBJECTIVES_STAGE = Stage(
    id=OBJECTIVES,
    name="Objectives",
    description="CEFR learning objectives, fixed at unit creation",
    predicate=_objectives_complete,
    is_regenerable=False,
)
_VOCABULARY_STAGE = Stage(
    id=VOCABULARY,
    name="Vocabulary",
    description="Contextualised vocabulary with IPA",
    predicate=lambda s: _has_content(s.vocabulary),
)
_SENTENCES_STAGE = Stage(
    id=SENTENCES,
    name="Sentences",
    description="Example sentences using the unit vocabulary",
    predicate=lambda s: _has_content(s.sentences),
)
_GRAMMAR_STAGE = Stage(
    id=GRAMMAR,
    name="Grammar",
    description="Systematic explanation and L1 interference notes",
    predicate=lambda s: _has_content(s.grammar),
)
_TIPS_STAGE = Stage(
    id=TIPS,
    name="Tips",
    description="Learning and memorisation strategies",
    predicate=lambda s: _has_content(s.tips),
)
_ASSESSMENTS_STAGE = Stage(
    id=ASSESSMENTS,
    name="Assessments",
    description="Varied exercises for the unit",
    predicate=lambda s: bool(s.activities),
)
_QA_STAGE = Stage(
    id=QA,
    name="Q&A",
    description="Discussion questions across Bloom levels",
    predicate=lambda s: _has_content(s.qa),
)
_SOLVE_STAGE = Stage(
    id=SOLVE,
    name="Answer keys",
    description="Answer keys for every assessment",
    predicate=_solve_complete,
)


def stages_for(unit_variant: UnitVariant) -> List[Stage]:
    """Ordered stage list for a unit variant."""
    variant_stage = _TIPS_STAGE if unit_variant == UnitVariant.LEXICAL else _GRAMMAR_STAGE
    return [
        _OBJECTIVES_STAGE,
        _VOCABULARY_STAGE,
        _SENTENCES_STAGE,
        variant_stage,
        _ASSESSMENTS_STAGE,
        _QA_STAGE,
        _SOLVE_STAGE,
    ]


def get_stage(stages: List[Stage], stage_id: str) -> Stage:
    for stage in stages:
        if stage.id == stage_id:
            return stage
    raise UnknownStageError(
        f"Unknown stage '{stage_id}'. Valid stages: {', '.join(s.id for s in stages)}"
    )


def derive_stage_run(stage: Stage, snapshot: UnitSnapshot) -> StageRun:
    """Fresh stage record whose status comes from the snapshot."""
    complete = stage.is_complete(snapshot)
    return StageRun(
        stage_id=stage.id,
        name=stage.name,
        status=StageStatus.COMPLETED if complete else StageStatus.PENDING,
        progress=100 if complete else 0,
    )


def derive_stage_runs(stages: List[Stage], snapshot: UnitSnapshot) -> List[StageRun]:
    return [derive_stage_run(stage, snapshot) for stage in stages]


class StageCatalog:
    """Stage list of one unit variant, with lookups by stage id."""

    def __init__(self, unit_variant: UnitVariant):
        self.unit_variant = unit_variant
        self.stages = stages_for(unit_variant)

    @property
    def stage_ids(self) -> List[str]:
        return [stage.id for stage in self.stages]

    def get(self, stage_id: str) -> Stage:
        return get_stage(self.stages, stage_id)

    def index_of(self, stage_id: str) -> int:
        ids = self.stage_ids
        if stage_id not in ids:
            raise UnknownStageError(
                f"Unknown stage '{stage_id}'. Valid stages: {', '.join(ids)}"
            )
        return ids.index(stage_id)

    def derive_runs(self, snapshot: UnitSnapshot) -> List[StageRun]:
        return derive_stage_runs(self.stages, snapshot)

    def __iter__(self):
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)
