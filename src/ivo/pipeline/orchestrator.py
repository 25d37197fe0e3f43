"""Unit generation pipeline orchestrator.

The orchestrator drives one unit through its stage catalog:

1. Attaches to a unit: fetches the snapshot, restores the persisted run (or
   derives a new one) and reconciles stage statuses with server truth
2. Selects the stages to run (all pending, or pending from a given stage
   when every earlier stage is completed)
3. Runs them one at a time in catalog order, persisting after every transition
4. Records failed stages and moves on to the next stage
5. Waits a settling interval after each successful stage, since the next
   stage may read what the previous one just wrote
6. Stops cooperatively between stages when asked

Notifications go out through two callbacks: ``on_step_complete(stage_id)``
after each successful stage and ``on_pipeline_complete()`` once a run has
gone through every selected stage.
"""

import json
import logging
import threading
import time
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from ivo.constants import (
    ASSESSMENTS_SETTLE_SECONDS,
    PIPELINE_COMPLETE_DELAY_SECONDS,
    STAGE_SETTLE_SECONDS,
)
from ivo.models.pipeline_run import (
    DISPATCHED_PROGRESS,
    PipelineRun,
    StageExecutionResult,
    StageRun,
    StageStatus,
)
from ivo.models.unit import UnitGenerationConfig, UnitSnapshot
from ivo.pipeline import catalog
from ivo.pipeline.catalog import StageCatalog
from ivo.pipeline.executor import StageExecutor
from ivo.pipeline.run_store import PersistentRunStore
from ivo.utils.generation_client import GenerationClient

logger = logging.getLogger(__name__)


class OrchestratorState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class RunInProgressError(RuntimeError):
    """Raised when an operation needs the pipeline to be idle."""


class Orchestrator:
    """State machine for one unit's generation pipeline."""

    def __init__(
        self,
        unit: UnitSnapshot,
        executor: StageExecutor,
        store: PersistentRunStore,
        client: Optional[GenerationClient] = None,
        config_overrides: Optional[Dict[str, Any]] = None,
        on_step_complete: Optional[Callable[[str], None]] = None,
        on_pipeline_complete: Optional[Callable[[], None]] = None,
        stage_settle_seconds: float = STAGE_SETTLE_SECONDS,
        assessments_settle_seconds: float = ASSESSMENTS_SETTLE_SECONDS,
        complete_delay_seconds: float = PIPELINE_COMPLETE_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            unit: Freshly fetched unit snapshot
            executor: Stage executor
            store: Persistent run store
            client: Generation client, used to re-fetch the unit on reconcile/clear
            config_overrides: UnitGenerationConfig fields overriding the unit's own
            on_step_complete: Called with the stage id after each successful stage
            on_pipeline_complete: Called once a run has gone through all its stages
            stage_settle_seconds: Pause after a successful stage
            assessments_settle_seconds: Extra pause after the assessments stage
            complete_delay_seconds: Pause before the pipeline-completed notification
            sleep: Sleep function (injectable for tests)
        """
        self.unit_id = unit.id
        self.unit = unit
        self.executor = executor
        self.store = store
        self.client = client
        self.config_overrides = config_overrides or {}
        self.on_step_complete = on_step_complete
        self.on_pipeline_complete = on_pipeline_complete
        self.stage_settle_seconds = stage_settle_seconds
        self.assessments_settle_seconds = assessments_settle_seconds
        self.complete_delay_seconds = complete_delay_seconds
        self._sleep = sleep

        self.catalog = StageCatalog(unit.unit_type)

        # _lock guards self.run; _run_lock is held for the whole of a run
        self._lock = threading.RLock()
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._stopped = False

        self.run = self._restore()
        self._persist()

    @classmethod
    def attach(
        cls,
        unit_id: str,
        client: GenerationClient,
        store: PersistentRunStore,
        executor: Optional[StageExecutor] = None,
        **kwargs: Any,
    ) -> "Orchestrator":
        """Fetch the unit and build an orchestrator for it."""
        unit = client.get_unit(unit_id)
        return cls(
            unit,
            executor or StageExecutor(client),
            store,
            client=client,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> OrchestratorState:
        with self._lock:
            if self.run.is_executing:
                return OrchestratorState.RUNNING
            if self._stopped:
                return OrchestratorState.STOPPED
            return OrchestratorState.IDLE

    def snapshot(self) -> PipelineRun:
        """Copy of the current run for readers."""
        with self._lock:
            return self.run.model_copy(deep=True)

    def _log(self, message: str, level: int = logging.INFO) -> None:
        with self._lock:
            self.run.log.append(message)
        logger.log(level, f"[{self.unit_id}] {message}")

    def _persist(self) -> None:
        with self._lock:
            try:
                self.store.save(self.unit_id, self.run)
            except Exception as e:
                logger.error(f"Failed to persist run for {self.unit_id}: {e}")

    def _merge_stages(self, saved: List[StageRun]) -> List[StageRun]:
        """Saved stage records laid over a fresh catalog, by stage id."""
        by_id = {s.stage_id: s for s in saved}
        merged = []
        for fresh in self.catalog.derive_runs(self.unit):
            stage = by_id.get(fresh.stage_id)
            if stage is None:
                merged.append(fresh)
            else:
                merged.append(stage.model_copy(update={"name": fresh.name}))
        return merged

    def _restore(self) -> PipelineRun:
        persisted = self.store.load(self.unit_id)
        if persisted is None:
            run = PipelineRun(
                unit_id=self.unit_id, stages=self.catalog.derive_runs(self.unit)
            )
            logger.info(f"Created pipeline run for unit {self.unit_id}")
            return run

        run = persisted.model_copy(
            update={"stages": self._merge_stages(persisted.stages)}
        )
        logger.info(
            f"Restored pipeline run for unit {self.unit_id}: "
            f"{run.completed_count}/{len(run.stages)} completed"
        )

        # No run loop survives a restart: whatever was running is indeterminate
        interrupted = run.running_stages()
        if run.is_executing or interrupted:
            for stage in interrupted:
                stage.reset()
            run.is_executing = False
            run.active_stage_id = None
            message = "Previous run was interrupted"
            if interrupted:
                message += f"; {', '.join(s.name for s in interrupted)} will be re-run"
            run.log.append(message)
            logger.warning(f"[{self.unit_id}] {message}")

        self.run = run
        self._apply_unit(self.unit)
        return run

    def _apply_unit(self, unit: UnitSnapshot) -> None:
        """Re-derive stage statuses from a unit snapshot (idle only)."""
        if unit.unit_type != self.catalog.unit_variant:
            self.catalog = StageCatalog(unit.unit_type)
        self.unit = unit
        self.run.stages = self._merge_stages(self.run.stages)

        for stage_def, stage in zip(self.catalog, self.run.stages):
            if stage_def.is_complete(unit):
                if stage.status != StageStatus.COMPLETED:
                    stage.status = StageStatus.COMPLETED
                    stage.progress = 100
            elif stage.status != StageStatus.PENDING:
                stage.reset()

    def reconcile(self, unit: Optional[UnitSnapshot] = None) -> bool:
        """Bring stage statuses in line with the server's view of the unit.

        Ignored while a run is in progress, since in-memory state is
        authoritative then.

        Args:
            unit: Snapshot to reconcile against (default: re-fetch via client)

        Returns:
            True if the run was reconciled
        """
        if self.run.is_executing:
            logger.debug(f"Skipping reconcile for {self.unit_id}: run in progress")
            return False

        if unit is None:
            if self.client is None:
                raise ValueError("No unit snapshot given and no client to fetch one")
            unit = self.client.get_unit(self.unit_id)

        with self._lock:
            if self.run.is_executing:
                return False
            self._apply_unit(unit)
        self._persist()
        return True

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    def run_all(self) -> List[StageExecutionResult]:
        """Run every pending stage in catalog order."""
        return self._run()

    def run_from(self, stage_id: str) -> List[StageExecutionResult]:
        """Run pending stages from `stage_id` on, if all earlier stages are done.

        Falls back to a full pending sweep when a prerequisite is incomplete.
        """
        self.catalog.get(stage_id)
        return self._run(start_from=stage_id)

    def regenerate_from(self, stage_id: str) -> List[StageExecutionResult]:
        """Reset `stage_id` and every later stage to pending, then run from it."""
        stage_def = self.catalog.get(stage_id)
        if not stage_def.is_regenerable:
            self._log(
                f"{stage_def.name} cannot be regenerated; "
                f"they are defined when the unit is created",
                logging.WARNING,
            )
            self._persist()
            return []

        def reset_from_stage() -> None:
            start = self.catalog.index_of(stage_id)
            reset_count = 0
            for later_def, stage in zip(self.catalog.stages[start:], self.run.stages[start:]):
                if later_def.is_regenerable:
                    stage.reset()
                    reset_count += 1
            self._log(f"Regenerating from {stage_def.name}: {reset_count} stage(s) reset")

        return self._run(start_from=stage_id, prepare=reset_from_stage)

    def restart_all(self) -> List[StageExecutionResult]:
        """Reset every regenerable stage and run the whole pipeline again."""

        def reset_all() -> None:
            for stage_def, stage in zip(self.catalog, self.run.stages):
                if stage_def.is_regenerable:
                    stage.reset()
                else:
                    derived = catalog.derive_stage_run(stage_def, self.unit)
                    stage.status = derived.status
                    stage.progress = derived.progress
            self._log("Restarting pipeline: all regenerable stages reset")

        return self._run(prepare=reset_all)

    def stop(self) -> bool:
        """Ask the current run to stop after the stage in flight.

        Returns:
            True if a run was in progress
        """
        with self._lock:
            if not self.run.is_executing:
                logger.info(f"[{self.unit_id}] Stop requested but no run in progress")
                return False
            self._stop_event.set()
            self._log("Generation paused by user; the current stage will finish first")
        self._persist()
        return True

    def clear(self) -> None:
        """Drop persisted state and re-derive the run from a fresh snapshot."""
        if self._run_lock.locked():
            raise RunInProgressError(f"Cannot clear unit {self.unit_id} while a run is in progress")

        unit = self.client.get_unit(self.unit_id) if self.client else self.unit
        self.store.clear(self.unit_id)
        with self._lock:
            self.unit = unit
            self.catalog = StageCatalog(unit.unit_type)
            self.run = PipelineRun(
                unit_id=self.unit_id, stages=self.catalog.derive_runs(unit)
            )
            self._stopped = False
        self._persist()
        logger.info(f"Pipeline state cleared for unit {self.unit_id}")

    def start_in_background(self, operation: Callable[..., Any], *args: Any) -> threading.Thread:
        """Run a control operation on a worker thread so stop() can be called."""
        thread = threading.Thread(
            target=operation,
            args=args,
            name=f"pipeline-{self.unit_id}",
            daemon=True,
        )
        thread.start()
        return thread

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def _is_eligible(self, stage: StageRun) -> bool:
        return (
            stage.status == StageStatus.PENDING
            and self.catalog.get(stage.stage_id).is_regenerable
        )

    def _select_stages(self, start_from: Optional[str]) -> List[str]:
        all_pending = [s.stage_id for s in self.run.stages if self._is_eligible(s)]
        if start_from is None:
            return all_pending

        start = self.catalog.index_of(start_from)
        prerequisites_met = all(
            s.status == StageStatus.COMPLETED for s in self.run.stages[:start]
        )
        if not prerequisites_met:
            self._log(
                f"Dependencies not met for {self.catalog.get(start_from).name}; "
                f"running all pending stages from the start",
                logging.WARNING,
            )
            return all_pending

        return [s.stage_id for s in self.run.stages[start:] if self._is_eligible(s)]

    def _build_config(self) -> UnitGenerationConfig:
        return UnitGenerationConfig.from_snapshot(self.unit, **self.config_overrides)

    def _run(
        self,
        start_from: Optional[str] = None,
        prepare: Optional[Callable[[], None]] = None,
    ) -> List[StageExecutionResult]:
        if not self._run_lock.acquire(blocking=False):
            self._log("A run is already in progress; request ignored", logging.WARNING)
            return []

        try:
            try:
                config = self._build_config()
            except ValidationError as e:
                self._log(
                    f"Invalid generation configuration ({e.error_count()} error(s)); run not started",
                    logging.ERROR,
                )
                logger.error(f"[{self.unit_id}] {e}")
                self._persist()
                return []

            with self._lock:
                if prepare is not None:
                    prepare()
                stage_ids = self._select_stages(start_from)
                if not stage_ids:
                    self._log("All stages are already completed")
                    self._persist()
                    return []

                self._stop_event.clear()
                self._stopped = False
                self.run.is_executing = True
                self.run.completed_at = None
                self._log(f"Starting pipeline: {len(stage_ids)} stage(s) to process")
                logger.info(
                    f"[{self.unit_id}] Configuration: "
                    f"{json.dumps(config.model_dump(mode='json'), sort_keys=True)}"
                )
                self._persist()

            results: List[StageExecutionResult] = []
            aborted = True
            try:
                self._run_stages(stage_ids, config, results)
                aborted = False
            finally:
                stopped = self._finish_run(stage_ids, results, aborted)

            if not stopped:
                self._sleep(self.complete_delay_seconds)
                self._notify(self.on_pipeline_complete)

            return results

        finally:
            self._run_lock.release()

    def _finish_run(
        self, stage_ids: List[str], results: List[StageExecutionResult], aborted: bool
    ) -> bool:
        """Leave the Running state whatever ended the loop. Returns True if stopped."""
        stopped = self._stop_event.is_set()
        with self._lock:
            for stage in self.run.running_stages():
                stage.mark_error(None, "Run aborted before the stage finished")
            self.run.is_executing = False
            self.run.active_stage_id = None

            succeeded = sum(1 for r in results if r.success)
            failed = len(results) - succeeded
            if aborted:
                self._log(
                    f"Pipeline aborted: {succeeded} completed, {failed} failed",
                    logging.ERROR,
                )
            elif stopped:
                self._stopped = True
                self._log(
                    f"Pipeline stopped: {succeeded} completed, {failed} failed, "
                    f"{len(stage_ids) - len(results)} not started"
                )
            else:
                self.run.completed_at = datetime.now(UTC)
                self._log(f"Pipeline finished: {succeeded} completed, {failed} failed")
            self._persist()
        return stopped

    def _run_stages(
        self,
        stage_ids: List[str],
        config: UnitGenerationConfig,
        results: List[StageExecutionResult],
    ) -> None:
        for position, stage_id in enumerate(stage_ids):
            if self._stop_event.is_set():
                logger.info(f"[{self.unit_id}] Stop flag set, not starting {stage_id}")
                break

            result = self._execute_stage(stage_id, config)
            results.append(result)

            if result.success:
                self._notify(self.on_step_complete, stage_id)
                is_last = position == len(stage_ids) - 1
                if not is_last and not self._stop_event.is_set():
                    self._settle(stage_id)

    def _execute_stage(
        self, stage_id: str, config: UnitGenerationConfig
    ) -> StageExecutionResult:
        with self._lock:
            stage = self.run.get_stage(stage_id)
            stage.mark_running()
            self.run.active_stage_id = stage_id
            self._log(f"Processing: {stage.name}")
            self._persist()
            stage.progress = DISPATCHED_PROGRESS
            self._persist()
            known_assessments = list(self.unit.activities)

        try:
            result = self.executor.execute(
                self.unit_id, stage_id, config, known_assessments=known_assessments
            )
        except Exception as e:
            logger.error(f"[{self.unit_id}] Stage {stage_id} crashed: {e}", exc_info=True)
            result = StageExecutionResult(
                stage_id=stage_id, success=False, message=f"Unexpected error: {e}"
            )

        with self._lock:
            if result.success:
                stage.mark_completed(result.duration_ms, result.message)
                self._log(f"{stage.name} completed successfully ({result.duration_ms}ms)")
            else:
                stage.mark_error(result.duration_ms, result.message)
                self._log(f"Error in {stage.name}: {result.message}", logging.ERROR)
            self.run.active_stage_id = None
            self._persist()

        return result

    def _settle(self, stage_id: str) -> None:
        delay = self.stage_settle_seconds
        if stage_id == catalog.ASSESSMENTS:
            delay += self.assessments_settle_seconds
        if delay > 0:
            logger.debug(f"[{self.unit_id}] Waiting {delay:.1f}s for {stage_id} to propagate")
            self._sleep(delay)

    def _notify(self, callback: Optional[Callable[..., None]], *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"[{self.unit_id}] Notification callback failed: {e}", exc_info=True)
