"""Pipeline run tracking models."""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# Progress shown once the generation request has been sent
DISPATCHED_PROGRESS = 20


class StageStatus(str, Enum):
    """Lifecycle status of a stage within a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class StageRun(BaseModel):
    """Progress tracking for a single stage."""

    stage_id: str = Field(..., description="Stable stage identifier")
    name: str = Field(..., description="Display name")
    status: StageStatus = Field(default=StageStatus.PENDING)
    progress: int = Field(default=0, ge=0, le=100)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    details: Optional[str] = Field(None, description="Last result message or error")

    def mark_running(self) -> None:
        self.status = StageStatus.RUNNING
        self.progress = 0
        self.started_at = datetime.now(UTC)
        self.ended_at = None
        self.duration_ms = None
        self.details = None

    def mark_completed(self, duration_ms: int, details: Optional[str] = None) -> None:
        self.status = StageStatus.COMPLETED
        self.progress = 100
        self.ended_at = datetime.now(UTC)
        self.duration_ms = duration_ms
        self.details = details

    def mark_error(self, duration_ms: Optional[int], details: str) -> None:
        self.status = StageStatus.ERROR
        self.progress = 0
        self.ended_at = datetime.now(UTC)
        self.duration_ms = duration_ms
        self.details = details

    def reset(self) -> None:
        """Return to pending and drop timing fields."""
        self.status = StageStatus.PENDING
        self.progress = 0
        self.started_at = None
        self.ended_at = None
        self.duration_ms = None
        self.details = None


class PipelineRun(BaseModel):
    """Execution record for all stages of one unit."""

    unit_id: str = Field(..., description="Unit being generated")
    stages: List[StageRun] = Field(
        default_factory=list, description="One entry per catalog stage, catalog order"
    )
    is_executing: bool = False
    active_stage_id: Optional[str] = None
    log: List[str] = Field(default_factory=list, description="Append-only event log")
    completed_at: Optional[datetime] = None

    def get_stage(self, stage_id: str) -> StageRun | None:
        for stage in self.stages:
            if stage.stage_id == stage_id:
                return stage
        return None

    def index_of(self, stage_id: str) -> int:
        for index, stage in enumerate(self.stages):
            if stage.stage_id == stage_id:
                return index
        return -1

    def running_stages(self) -> List[StageRun]:
        return [s for s in self.stages if s.status == StageStatus.RUNNING]

    @property
    def overall_progress(self) -> float:
        """Mean stage progress as a percentage."""
        if not self.stages:
            return 0.0
        return sum(s.progress for s in self.stages) / len(self.stages)

    @property
    def completed_count(self) -> int:
        return sum(1 for s in self.stages if s.status == StageStatus.COMPLETED)

    @property
    def has_errors(self) -> bool:
        return any(s.status == StageStatus.ERROR for s in self.stages)

    @property
    def has_pending(self) -> bool:
        return any(s.status == StageStatus.PENDING for s in self.stages)

    def get_summary(self) -> dict:
        """Summary statistics for display."""
        return {
            "unit_id": self.unit_id,
            "is_executing": self.is_executing,
            "active_stage_id": self.active_stage_id,
            "completed": self.completed_count,
            "total": len(self.stages),
            "overall_progress": round(self.overall_progress, 1),
            "has_errors": self.has_errors,
            "has_pending": self.has_pending,
            "stages": {s.stage_id: s.status.value for s in self.stages},
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class StageExecutionResult(BaseModel):
    """Outcome of one call to the generation service for a stage."""

    stage_id: str
    success: bool
    message: str = ""
    duration_ms: int = 0
    data: Optional[Dict[str, Any]] = None


class AssessmentSolveResult(BaseModel):
    """Outcome of solving one assessment type during fan-out."""

    assessment_type: str
    title: Optional[str] = None
    success: bool
    payload: Optional[Any] = Field(None, description="Answer key on success")
    error_message: Optional[str] = None


class FanOutOutcome(BaseModel):
    """Aggregate verdict of the answer-key fan-out."""

    success: bool
    message: str
    results: List[AssessmentSolveResult] = Field(default_factory=list)
    success_count: int = 0
    total_count: int = 0

    @property
    def failed_count(self) -> int:
        return self.total_count - self.success_count
