"""
Unit tests for the pipeline Orchestrator.
"""

import threading
from unittest.mock import MagicMock

import pytest

from ivo.models.pipeline_run import DISPATCHED_PROGRESS, PipelineRun, StageRun, StageStatus
from ivo.pipeline.catalog import StageCatalog, UnknownStageError
from ivo.pipeline.orchestrator import Orchestrator, OrchestratorState, RunInProgressError
from ivo.pipeline.run_store import InMemoryKeyValueStore, PersistentRunStore

GENERATED_STAGES = ["vocabulary", "sentences", "tips", "assessments", "qa", "solve"]


@pytest.fixture
def store():
    return PersistentRunStore(InMemoryKeyValueStore())


@pytest.fixture
def events():
    return {"steps": [], "completed": 0, "sleeps": []}


@pytest.fixture
def build(store, events):
    """Build an orchestrator with recording callbacks and no real sleeping."""

    def _build(unit, executor, **kwargs):
        def on_pipeline_complete():
            events["completed"] += 1

        options = {
            "on_step_complete": events["steps"].append,
            "on_pipeline_complete": on_pipeline_complete,
            "stage_settle_seconds": 0,
            "assessments_settle_seconds": 0,
            "complete_delay_seconds": 0,
            "sleep": events["sleeps"].append,
        }
        options.update(kwargs)
        return Orchestrator(unit, executor, store, **options)

    return _build


def statuses(orchestrator):
    return {s.stage_id: s.status for s in orchestrator.snapshot().stages}


class TestRunAll:
    """run_all over pending stages."""

    def test_runs_pending_stages_in_catalog_order(self, build, make_unit, fake_executor, events):
        orchestrator = build(make_unit(), fake_executor)

        results = orchestrator.run_all()

        assert fake_executor.calls == GENERATED_STAGES
        assert [r.stage_id for r in results] == GENERATED_STAGES
        assert all(s == StageStatus.COMPLETED for s in statuses(orchestrator).values())
        assert events["steps"] == GENERATED_STAGES
        assert events["completed"] == 1
        assert orchestrator.state == OrchestratorState.IDLE

        run = orchestrator.snapshot()
        assert run.is_executing is False
        assert run.active_stage_id is None
        assert run.completed_at is not None
        assert run.get_stage("vocabulary").duration_ms == 5
        assert run.get_stage("vocabulary").started_at is not None

    def test_objectives_are_never_executed(self, build, make_unit, fake_executor):
        orchestrator = build(make_unit(main_aim=None), fake_executor)

        orchestrator.run_all()

        assert "objectives" not in fake_executor.calls
        assert statuses(orchestrator)["objectives"] == StageStatus.PENDING

    def test_nothing_pending(self, build, complete_unit, fake_executor, events):
        orchestrator = build(complete_unit, fake_executor)
        before = orchestrator.snapshot().stages

        assert orchestrator.run_all() == []

        assert fake_executor.calls == []
        assert orchestrator.snapshot().stages == before
        assert orchestrator.snapshot().log[-1] == "All stages are already completed"
        assert events["completed"] == 0

    def test_run_all_is_idempotent(self, build, make_unit, fake_executor):
        orchestrator = build(make_unit(), fake_executor)

        orchestrator.run_all()
        orchestrator.run_all()

        assert fake_executor.calls == GENERATED_STAGES

    def test_failed_stage_does_not_stop_the_run(
        self, build, make_unit, executor_factory, events
    ):
        executor = executor_factory(failures={"sentences"})
        orchestrator = build(make_unit(vocabulary={"items": [1]}), executor)

        orchestrator.run_all()

        assert executor.calls == ["sentences", "tips", "assessments", "qa", "solve"]
        sentences = orchestrator.snapshot().get_stage("sentences")
        assert sentences.status == StageStatus.ERROR
        assert sentences.progress == 0
        assert sentences.details == "sentences failed"
        assert sentences.ended_at is not None
        assert "sentences" not in events["steps"]
        assert events["completed"] == 1
        assert orchestrator.state == OrchestratorState.IDLE
        assert any("Error in Sentences" in entry for entry in orchestrator.snapshot().log)

    def test_executor_crash_is_recorded_as_stage_error(self, build, make_unit, executor_factory):
        def crash(stage_id):
            if stage_id == "tips":
                raise RuntimeError("unexpected payload")

        executor = executor_factory(on_execute=crash)
        orchestrator = build(make_unit(), executor)

        orchestrator.run_all()

        tips = orchestrator.snapshot().get_stage("tips")
        assert tips.status == StageStatus.ERROR
        assert "unexpected payload" in tips.details
        assert executor.calls == GENERATED_STAGES

    def test_settling_waits_after_successful_stages(self, build, make_unit, executor_factory, events):
        executor = executor_factory(failures={"sentences"})
        orchestrator = build(
            make_unit(),
            executor,
            stage_settle_seconds=3,
            assessments_settle_seconds=5,
            complete_delay_seconds=0.5,
        )

        orchestrator.run_all()

        # vocabulary, tips, assessments (+extra), qa; none after the failure or the last stage
        assert events["sleeps"] == [3, 3, 8, 3, 0.5]

    def test_known_assessments_are_passed_to_executor(self, build, make_unit, fake_executor):
        unit = make_unit(assessments={"activities": [{"type": "gap_fill"}]})
        orchestrator = build(unit, fake_executor)

        orchestrator.run_all()

        known = fake_executor.known_assessments["solve"]
        assert [a.type for a in known] == ["gap_fill"]

    def test_listener_errors_do_not_break_the_run(self, build, make_unit, fake_executor):
        def broken_listener(stage_id):
            raise RuntimeError("listener failed")

        orchestrator = build(make_unit(), fake_executor, on_step_complete=broken_listener)

        orchestrator.run_all()

        assert fake_executor.calls == GENERATED_STAGES

    def test_every_transition_is_persisted(self, build, make_unit, executor_factory, store):
        seen = []

        def check_checkpoint(stage_id):
            saved = store.load("unit-1")
            stage = saved.get_stage(stage_id)
            seen.append((stage.status, stage.progress, saved.active_stage_id, saved.is_executing))

        executor = executor_factory(on_execute=check_checkpoint)
        orchestrator = build(make_unit(), executor)

        orchestrator.run_all()

        assert seen[0] == (StageStatus.RUNNING, DISPATCHED_PROGRESS, "vocabulary", True)
        assert len(seen) == len(GENERATED_STAGES)
        saved = store.load("unit-1")
        assert saved.is_executing is False
        assert saved.completed_count == 7

    def test_at_most_one_stage_running(self, build, make_unit, executor_factory):
        running_counts = []
        holder = {}

        def count_running(stage_id):
            running_counts.append(len(holder["o"].snapshot().running_stages()))

        orchestrator = build(make_unit(), executor_factory(on_execute=count_running))
        holder["o"] = orchestrator

        orchestrator.run_all()

        assert running_counts == [1] * len(GENERATED_STAGES)


class TestRunFrom:
    """run_from and its dependency gate."""

    def test_gate_passes(self, build, make_unit, fake_executor):
        unit = make_unit(
            vocabulary={"items": [1]},
            sentences={"items": [1]},
            tips={"items": [1]},
            qa={"items": [1]},
        )
        orchestrator = build(unit, fake_executor)

        orchestrator.run_from("assessments")

        assert fake_executor.calls == ["assessments", "solve"]
        assert not any("Dependencies not met" in e for e in orchestrator.snapshot().log)

    def test_gate_failure_widens_to_run_all(self, build, make_unit, executor_factory, store):
        unit = make_unit(vocabulary={"items": [1]})
        widened = executor_factory()
        full = executor_factory()

        build(unit, widened).run_from("qa")
        other = Orchestrator(
            unit.model_copy(update={"id": "unit-2"}),
            full,
            store,
            stage_settle_seconds=0,
            assessments_settle_seconds=0,
            complete_delay_seconds=0,
            sleep=lambda seconds: None,
        )
        other.run_all()

        assert widened.calls == full.calls == ["sentences", "tips", "assessments", "qa", "solve"]

    def test_gate_failure_is_logged(self, build, make_unit, fake_executor):
        orchestrator = build(make_unit(), fake_executor)

        orchestrator.run_from("qa")

        assert any("Dependencies not met for Q&A" in e for e in orchestrator.snapshot().log)

    def test_unknown_stage(self, build, make_unit, fake_executor):
        orchestrator = build(make_unit(), fake_executor)

        with pytest.raises(UnknownStageError):
            orchestrator.run_from("grammar")

        assert fake_executor.calls == []


class TestRegenerate:
    """regenerate_from and restart_all."""

    def test_regenerate_resets_stage_and_later(self, build, complete_unit, executor_factory):
        observed = {}
        holder = {}

        def capture(stage_id):
            if stage_id == "assessments":
                observed.update(statuses(holder["o"]))

        executor = executor_factory(on_execute=capture)
        orchestrator = build(complete_unit, executor)
        holder["o"] = orchestrator

        orchestrator.regenerate_from("assessments")

        assert executor.calls == ["assessments", "qa", "solve"]
        assert observed["tips"] == StageStatus.COMPLETED
        assert observed["assessments"] == StageStatus.RUNNING
        assert observed["qa"] == StageStatus.PENDING
        assert observed["solve"] == StageStatus.PENDING

    def test_regenerate_after_failure(self, build, make_unit, executor_factory):
        executor = executor_factory(failures={"sentences"})
        orchestrator = build(make_unit(), executor)
        orchestrator.run_all()

        executor.failures.clear()
        executor.calls.clear()
        orchestrator.regenerate_from("sentences")

        assert executor.calls == ["sentences", "tips", "assessments", "qa", "solve"]
        assert statuses(orchestrator)["sentences"] == StageStatus.COMPLETED

    def test_regenerate_objectives_is_a_logged_no_op(self, build, complete_unit, fake_executor):
        orchestrator = build(complete_unit, fake_executor)
        before = orchestrator.snapshot().stages

        assert orchestrator.regenerate_from("objectives") == []

        assert fake_executor.calls == []
        assert orchestrator.snapshot().stages == before
        assert "cannot be regenerated" in orchestrator.snapshot().log[-1]

    def test_restart_all(self, build, complete_unit, fake_executor):
        orchestrator = build(complete_unit, fake_executor)

        orchestrator.restart_all()

        assert fake_executor.calls == GENERATED_STAGES
        assert statuses(orchestrator)["objectives"] == StageStatus.COMPLETED

    def test_restart_keeps_objectives_derived(self, build, make_unit, fake_executor):
        orchestrator = build(make_unit(main_aim=""), fake_executor)

        orchestrator.restart_all()

        assert statuses(orchestrator)["objectives"] == StageStatus.PENDING
        assert "objectives" not in fake_executor.calls


class TestStop:
    """Cooperative stop between stages."""

    def test_stop_during_third_stage(self, build, make_unit, executor_factory, events):
        holder = {}

        def stop_on_tips(stage_id):
            if stage_id == "tips":
                assert holder["o"].stop() is True

        executor = executor_factory(on_execute=stop_on_tips)
        orchestrator = build(make_unit(), executor)
        holder["o"] = orchestrator

        orchestrator.run_all()

        assert executor.calls == ["vocabulary", "sentences", "tips"]
        current = statuses(orchestrator)
        assert current["tips"] == StageStatus.COMPLETED
        assert current["assessments"] == StageStatus.PENDING
        assert orchestrator.state == OrchestratorState.STOPPED
        assert orchestrator.snapshot().is_executing is False
        assert events["completed"] == 0

    def test_stop_from_another_thread(self, build, make_unit, executor_factory):
        in_stage = threading.Event()
        release = threading.Event()

        def block_on_sentences(stage_id):
            if stage_id == "sentences":
                in_stage.set()
                assert release.wait(timeout=5)

        executor = executor_factory(on_execute=block_on_sentences)
        orchestrator = build(make_unit(), executor)

        thread = orchestrator.start_in_background(orchestrator.run_all)
        assert in_stage.wait(timeout=5)
        assert orchestrator.state == OrchestratorState.RUNNING

        orchestrator.stop()
        release.set()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert executor.calls == ["vocabulary", "sentences"]
        assert statuses(orchestrator)["sentences"] == StageStatus.COMPLETED
        assert orchestrator.state == OrchestratorState.STOPPED

    def test_run_after_stop_resumes_pending(self, build, make_unit, executor_factory):
        holder = {}

        def stop_on_vocabulary(stage_id):
            if stage_id == "vocabulary":
                holder["o"].stop()

        executor = executor_factory(on_execute=stop_on_vocabulary)
        orchestrator = build(make_unit(), executor)
        holder["o"] = orchestrator
        orchestrator.run_all()

        executor.on_execute = None
        orchestrator.run_all()

        assert executor.calls == GENERATED_STAGES
        assert orchestrator.state == OrchestratorState.IDLE

    def test_stop_when_idle(self, build, make_unit, fake_executor):
        orchestrator = build(make_unit(), fake_executor)

        assert orchestrator.stop() is False
        assert orchestrator.state == OrchestratorState.IDLE


class TestRunGuard:
    """Operations refused while a run is in progress."""

    def test_second_run_is_ignored(self, build, make_unit, executor_factory):
        nested = []
        holder = {}

        def start_again(stage_id):
            if stage_id == "vocabulary":
                nested.append(holder["o"].run_all())

        executor = executor_factory(on_execute=start_again)
        orchestrator = build(make_unit(), executor)
        holder["o"] = orchestrator

        orchestrator.run_all()

        assert nested == [[]]
        assert executor.calls == GENERATED_STAGES
        assert any("already in progress" in e for e in orchestrator.snapshot().log)

    def test_clear_refused_while_running(self, build, make_unit, executor_factory):
        errors = []
        holder = {}

        def clear_mid_run(stage_id):
            if stage_id == "vocabulary":
                try:
                    holder["o"].clear()
                except RunInProgressError as e:
                    errors.append(e)

        orchestrator = build(make_unit(), executor_factory(on_execute=clear_mid_run))
        holder["o"] = orchestrator

        orchestrator.run_all()

        assert len(errors) == 1

    def test_reconcile_ignored_while_running(self, build, make_unit, complete_unit, executor_factory):
        results = []
        holder = {}

        def reconcile_mid_run(stage_id):
            if stage_id == "vocabulary":
                results.append(holder["o"].reconcile(complete_unit))

        orchestrator = build(make_unit(), executor_factory(on_execute=reconcile_mid_run))
        holder["o"] = orchestrator

        orchestrator.run_all()

        assert results == [False]


class TestRestoreAndReconcile:
    """Attach, recovery of interrupted runs and reconciliation."""

    def test_interrupted_run_is_recovered(self, store, build, make_unit, fake_executor):
        unit = make_unit(vocabulary={"items": [1]})
        stages = StageCatalog(unit.unit_type).derive_runs(unit)
        stages[2].mark_running()
        stages[2].progress = DISPATCHED_PROGRESS
        store.save(
            "unit-1",
            PipelineRun(
                unit_id="unit-1",
                stages=stages,
                is_executing=True,
                active_stage_id="sentences",
                log=["Processing: Sentences"],
            ),
        )

        orchestrator = build(unit, fake_executor)

        run = orchestrator.snapshot()
        assert run.is_executing is False
        assert run.active_stage_id is None
        assert run.get_stage("sentences").status == StageStatus.PENDING
        assert run.get_stage("sentences").started_at is None
        assert "interrupted" in run.log[-1]
        assert orchestrator.state == OrchestratorState.IDLE
        assert store.load("unit-1").is_executing is False

        orchestrator.run_all()
        assert fake_executor.calls[0] == "sentences"

    def test_completed_stage_keeps_timing_on_attach(self, store, build, make_unit, fake_executor):
        unit = make_unit(vocabulary={"items": [1]})
        stages = StageCatalog(unit.unit_type).derive_runs(unit)
        stages[1].mark_completed(1234, "Vocabulary generated")
        store.save("unit-1", PipelineRun(unit_id="unit-1", stages=stages, log=["earlier"]))

        orchestrator = build(unit, fake_executor)

        vocabulary = orchestrator.snapshot().get_stage("vocabulary")
        assert vocabulary.duration_ms == 1234
        assert orchestrator.snapshot().log[0] == "earlier"

    def test_server_truth_overrides_persisted_status(self, store, build, make_unit, fake_executor):
        unit = make_unit()
        stages = StageCatalog(unit.unit_type).derive_runs(unit)
        stages[1].mark_completed(100)
        stages[2].mark_error(50, "timeout")
        store.save("unit-1", PipelineRun(unit_id="unit-1", stages=stages))

        orchestrator = build(unit, fake_executor)

        current = statuses(orchestrator)
        assert current["vocabulary"] == StageStatus.PENDING
        assert current["sentences"] == StageStatus.PENDING

    def test_unknown_persisted_stages_are_dropped(self, store, build, make_unit, fake_executor):
        store.save(
            "unit-1",
            PipelineRun(
                unit_id="unit-1",
                stages=[StageRun(stage_id="aims", name="Aims"), StageRun(stage_id="tips", name="Old")],
            ),
        )

        orchestrator = build(make_unit(), fake_executor)

        run = orchestrator.snapshot()
        assert [s.stage_id for s in run.stages] == orchestrator.catalog.stage_ids
        assert run.get_stage("tips").name == "Tips"

    def test_reconcile_with_snapshot(self, build, make_unit, fake_executor):
        orchestrator = build(make_unit(), fake_executor)

        assert orchestrator.reconcile(make_unit(vocabulary={"items": [1]})) is True

        assert statuses(orchestrator)["vocabulary"] == StageStatus.COMPLETED

    def test_reconcile_fetches_when_no_snapshot(self, build, make_unit, fake_executor):
        client = MagicMock()
        client.get_unit.return_value = make_unit(sentences={"items": [1]})
        orchestrator = build(make_unit(), fake_executor, client=client)

        orchestrator.reconcile()

        client.get_unit.assert_called_once_with("unit-1")
        assert statuses(orchestrator)["sentences"] == StageStatus.COMPLETED

    def test_attach_fetches_unit(self, store, make_unit, fake_executor):
        client = MagicMock()
        client.get_unit.return_value = make_unit()

        orchestrator = Orchestrator.attach("unit-1", client, store, executor=fake_executor)

        assert orchestrator.unit_id == "unit-1"
        assert store.load("unit-1") is not None


class TestClearAndSnapshot:
    def test_clear_rederives_from_fresh_unit(self, store, build, make_unit, executor_factory):
        client = MagicMock()
        client.get_unit.return_value = make_unit(vocabulary={"items": [1]})
        executor = executor_factory(failures={"sentences"})
        orchestrator = build(make_unit(), executor, client=client)
        orchestrator.run_all()

        orchestrator.clear()

        run = orchestrator.snapshot()
        assert run.log == []
        assert run.get_stage("vocabulary").status == StageStatus.COMPLETED
        assert run.get_stage("sentences").status == StageStatus.PENDING
        assert store.load("unit-1").log == []

    def test_snapshot_is_a_copy(self, build, make_unit, fake_executor):
        orchestrator = build(make_unit(), fake_executor)

        copy = orchestrator.snapshot()
        copy.stages[1].status = StageStatus.ERROR
        copy.log.append("tampered")

        assert statuses(orchestrator)["vocabulary"] == StageStatus.PENDING
        assert "tampered" not in orchestrator.snapshot().log


class TestConfigurationAndAbort:
    """Invalid settings and unexpected errors never leave a run marked as executing."""

    def test_snapshot_targets_outside_cli_ranges_are_used(self, build, make_unit, fake_executor):
        orchestrator = build(make_unit(vocabulary_target_count=60), fake_executor)

        orchestrator.run_all()

        assert fake_executor.configs["vocabulary"].vocabulary_target_count == 60
        assert orchestrator.state == OrchestratorState.IDLE

    def test_invalid_override_refuses_to_start(self, build, make_unit, fake_executor, store):
        orchestrator = build(
            make_unit(), fake_executor, config_overrides={"vocabulary_target_count": -5}
        )

        results = orchestrator.run_all()

        assert results == []
        assert fake_executor.calls == []
        assert orchestrator.state == OrchestratorState.IDLE
        run = store.load("unit-1")
        assert run.is_executing is False
        assert run.active_stage_id is None
        assert any("Invalid generation configuration" in entry for entry in run.log)

    def test_invalid_override_leaves_stages_untouched_on_regenerate(
        self, build, complete_unit, fake_executor
    ):
        orchestrator = build(
            complete_unit, fake_executor, config_overrides={"qa_target_count": 0}
        )

        assert orchestrator.regenerate_from("sentences") == []

        assert all(s == StageStatus.COMPLETED for s in statuses(orchestrator).values())
        assert fake_executor.calls == []

    def test_run_recovers_after_invalid_override_is_fixed(self, build, make_unit, fake_executor):
        orchestrator = build(
            make_unit(), fake_executor, config_overrides={"assessment_count": 0}
        )
        orchestrator.run_all()

        orchestrator.config_overrides = {}
        results = orchestrator.run_all()

        assert [r.stage_id for r in results] == GENERATED_STAGES

    def test_error_while_settling_resets_execution_flags(
        self, build, make_unit, fake_executor, store, events
    ):
        def failing_sleep(seconds):
            raise RuntimeError("clock unavailable")

        orchestrator = build(
            make_unit(), fake_executor, stage_settle_seconds=1, sleep=failing_sleep
        )

        with pytest.raises(RuntimeError, match="clock unavailable"):
            orchestrator.run_all()

        assert fake_executor.calls == ["vocabulary"]
        assert orchestrator.state == OrchestratorState.IDLE
        assert events["completed"] == 0
        run = store.load("unit-1")
        assert run.is_executing is False
        assert run.active_stage_id is None
        assert run.get_stage("vocabulary").status == StageStatus.COMPLETED
        assert "Pipeline aborted" in run.log[-1]

        # The run lock was released, so the next run proceeds
        orchestrator._sleep = events["sleeps"].append
        assert [r.stage_id for r in orchestrator.run_all()] == GENERATED_STAGES[1:]

    def test_configuration_is_not_written_to_run_log(self, build, make_unit, fake_executor):
        orchestrator = build(make_unit(), fake_executor)

        orchestrator.run_all()
        orchestrator.restart_all()

        log = orchestrator.snapshot().log
        assert not any(entry.startswith("Configuration") for entry in log)
        assert not any("vocabulary_target_count" in entry for entry in log)
