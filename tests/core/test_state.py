"""Tests for signal rules and controller snapshots."""

from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from syncloop.core.state import (
    ControllerPhase,
    ControllerSnapshot,
    ControllerState,
    JobInformation,
    PendingIntent,
    Signal,
    WorkflowState,
)


@pytest.fixture
def state():
    return ControllerState("orders")


@pytest.fixture
def running(state):
    state.begin_job(reset=False)
    state.job_information = JobInformation(job_id=1, attempt_id=0)
    return state


class TestSignalsWhileWaiting:
    def test_manual_sync_wakes_the_loop(self, state):
        assert state.apply(Signal.MANUAL_SYNC)

        assert state.has_intent(PendingIntent.MANUAL_SYNC)
        assert state.should_wake()

    def test_duplicate_manual_syncs_coalesce(self, state):
        state.apply(Signal.MANUAL_SYNC)
        state.apply(Signal.MANUAL_SYNC)

        assert state.intents == [PendingIntent.MANUAL_SYNC]

    def test_cancel_is_a_no_op(self, state):
        assert state.apply(Signal.CANCEL_JOB) is False
        assert state.view() == WorkflowState()

    def test_reset_and_skip(self, state):
        state.apply(Signal.RESET_CONNECTION_AND_SKIP_NEXT_SCHEDULING)

        view = state.view()
        assert view.reset_requested
        assert view.skip_next_scheduling
        assert state.phase is ControllerPhase.WAITING

    def test_update_is_recorded(self, state):
        state.apply(Signal.CONNECTION_UPDATED)

        assert state.view().updated
        assert state.should_wake()


class TestSignalsWhileRunning:
    def test_manual_sync_is_ignored(self, running):
        assert running.apply(Signal.MANUAL_SYNC) is False
        assert running.intents == []
        assert running.phase is ControllerPhase.RUNNING

    def test_cancel_requests_interrupt(self, running):
        assert running.apply(Signal.CANCEL_JOB)

        assert running.phase is ControllerPhase.CANCELLING
        assert running.view().cancelled
        assert running.should_interrupt()

    def test_reset_cancels_running_job(self, running):
        running.apply(Signal.RESET_CONNECTION)

        assert running.should_interrupt()
        assert running.has_intent(PendingIntent.RESET)

    def test_update_is_deferred(self, running):
        running.apply(Signal.CONNECTION_UPDATED)

        assert running.phase is ControllerPhase.RUNNING
        assert not running.should_interrupt()
        assert running.view().updated


class TestDeletion:
    def test_delete_clears_everything(self, running):
        running.apply(Signal.RESET_CONNECTION_AND_SKIP_NEXT_SCHEDULING)

        assert running.apply(Signal.DELETE_CONNECTION)

        view = running.view()
        assert view.deleted
        assert not any((view.running, view.cancelled, view.reset_requested, view.skip_next_scheduling))
        assert running.should_interrupt()

    @pytest.mark.parametrize("signal", list(Signal))
    def test_signals_after_delete_are_no_ops(self, state, signal):
        state.apply(Signal.DELETE_CONNECTION)

        assert state.apply(signal) is False
        assert state.phase is ControllerPhase.DELETING

    def test_finish_job_keeps_deletion(self, running):
        running.apply(Signal.DELETE_CONNECTION)

        running.finish_job(failed=True)

        assert running.phase is ControllerPhase.DELETING
        assert running.job_information.is_idle
        assert not running.failed

    def test_deleted_view_rejects_other_flags(self):
        with pytest.raises(ValidationError):
            WorkflowState(deleted=True, running=True)


class TestJobLifecycle:
    def test_begin_reset_job_consumes_intents(self, state):
        state.apply(Signal.RESET_CONNECTION)
        state.apply(Signal.MANUAL_SYNC)

        state.begin_job(reset=True)

        assert state.phase is ControllerPhase.RESETTING
        assert state.intents == []
        assert state.view().reset_requested

    def test_finish_job_returns_to_waiting(self, running):
        running.apply(Signal.CANCEL_JOB)

        running.finish_job()

        assert running.phase is ControllerPhase.WAITING
        assert not running.cancelled
        assert running.job_information.is_idle

    def test_failed_flag_cleared_by_next_job(self, running):
        running.finish_job(failed=True)
        assert running.view().failed

        running.begin_job(reset=False)
        assert not running.view().failed


class TestSnapshots:
    def test_round_trip(self, state):
        state.apply(Signal.RESET_CONNECTION_AND_SKIP_NEXT_SCHEDULING)
        state.failed = True
        state.skipped_run_at = datetime(2026, 1, 1, tzinfo=UTC)

        snapshot = state.to_snapshot()
        restored = ControllerState.from_snapshot(snapshot)

        assert restored.to_snapshot() == snapshot
        assert restored.view() == state.view()

    def test_json_round_trip(self, state):
        state.apply(Signal.CONNECTION_UPDATED)
        snapshot = state.to_snapshot()

        assert ControllerSnapshot.model_validate_json(snapshot.model_dump_json()) == snapshot

    def test_in_flight_job_restarts_idle(self):
        snapshot = ControllerSnapshot(
            connection_id="orders",
            phase=ControllerPhase.CANCELLING,
            job_information=JobInformation(job_id=5, attempt_id=2),
            cancelled=True,
            intents=[PendingIntent.RESET],
        )

        restored = ControllerState.from_snapshot(snapshot)

        assert restored.phase is ControllerPhase.WAITING
        assert restored.job_information.is_idle
        assert not restored.cancelled
        assert restored.has_intent(PendingIntent.RESET)

    def test_terminate(self, running):
        running.apply(Signal.DELETE_CONNECTION)

        running.terminate()

        assert running.view() == WorkflowState(phase=ControllerPhase.TERMINATED, deleted=True)
