"""Per-connection control loop.

A ConnectionManager waits for the next scheduled run, executes the attempts of
a job up to the retry cap and reacts to operator signals. Signals are queued
in a mailbox and only applied at checkpoints between steps, so the loop always
sees a consistent state and at most one attempt is ever in flight.
"""

import asyncio
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from syncloop.activities.config_fetch import ConfigFetchActivity
from syncloop.activities.jobs import JobPersistence
from syncloop.activities.models import (
    ConnectionStatus,
    ScheduleRetrieverInput,
    SyncInput,
)
from syncloop.activities.sync import SyncRunner
from syncloop.config import SyncloopConfig
from syncloop.core.state import (
    ControllerPhase,
    ControllerSnapshot,
    ControllerState,
    JobInformation,
    PendingIntent,
    Signal,
    WorkflowState,
)
from syncloop.error_handling import (
    ActivityRetriesExhausted,
    AttemptFailure,
    ScheduleComputationFailure,
)
from syncloop.notify.ntfy import NtfyNotifier
from syncloop.scheduling.retry import BackoffPolicy, RetryPolicy
from syncloop.scheduling.scheduler import SUSPENDED_WAIT

logger = logging.getLogger(__name__)


class RunTrigger(Enum):
    """Why a job is being started."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"
    RESET = "reset"


class AttemptOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class RunResultKind(Enum):
    """How a manager incarnation ended."""

    CONTINUE_AS_NEW = "continue_as_new"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class RunResult:
    kind: RunResultKind
    reason: str
    snapshot: ControllerSnapshot | None = None


class ConnectionManager:
    """Long-lived controller of a single connection."""

    def __init__(
        self,
        connection_id: str,
        config: SyncloopConfig,
        activities: ConfigFetchActivity,
        jobs: JobPersistence,
        runner: SyncRunner,
        *,
        notifier: NtfyNotifier | None = None,
        snapshot: ControllerSnapshot | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ):
        self.connection_id = connection_id
        self.config = config
        self.activities = activities
        self.jobs = jobs
        self.runner = runner
        self.notifier = notifier
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)
        self.attempt_backoff = BackoffPolicy.for_attempts(config)
        self._rng = rng or random.Random()
        self._clock = clock or (lambda: datetime.now(UTC))

        if snapshot is None:
            self._state = ControllerState(connection_id)
        elif snapshot.connection_id != connection_id:
            msg = f"Snapshot of {snapshot.connection_id} cannot start {connection_id}"
            raise ValueError(msg)
        else:
            self._state = ControllerState.from_snapshot(snapshot)

        self._mailbox: asyncio.Queue[Signal] = asyncio.Queue()
        self._attempt_task: asyncio.Task | None = None
        self._cycles = 0

    # Signals

    def signal(self, signal: Signal) -> None:
        """Queue a signal; it is applied at the next checkpoint."""
        if self._state.phase is ControllerPhase.TERMINATED:
            logger.debug("Dropping %s for terminated %s", signal.value, self.connection_id)
            return
        self._mailbox.put_nowait(signal)

    def submit_manual_sync(self) -> None:
        self.signal(Signal.MANUAL_SYNC)

    def cancel_job(self) -> None:
        self.signal(Signal.CANCEL_JOB)

    def delete_connection(self) -> None:
        self.signal(Signal.DELETE_CONNECTION)

    def connection_updated(self) -> None:
        self.signal(Signal.CONNECTION_UPDATED)

    def reset_connection(self) -> None:
        self.signal(Signal.RESET_CONNECTION)

    def reset_connection_and_skip_next_scheduling(self) -> None:
        self.signal(Signal.RESET_CONNECTION_AND_SKIP_NEXT_SCHEDULING)

    def pending_signals(self) -> list[Signal]:
        """Remove and return signals that were queued but never applied."""
        pending = []
        while not self._mailbox.empty():
            pending.append(self._mailbox.get_nowait())
        return pending

    # Queries

    def get_state(self) -> WorkflowState:
        return self._state.view()

    def get_job_information(self) -> JobInformation:
        return self._state.job_information

    def snapshot(self) -> ControllerSnapshot:
        return self._state.to_snapshot()

    # Control loop

    async def run(self) -> RunResult:
        """Run until the state is handed off or the connection is deleted."""
        logger.info(
            "Connection manager for %s started (%s)",
            self.connection_id,
            self._state.phase.value,
        )
        try:
            while True:
                await self._checkpoint()

                if self._state.phase.is_deleted:
                    return self._terminate()

                if self._state.consume_intent(PendingIntent.CONNECTION_UPDATED):
                    await self._refresh_catalog()
                    return self._continue_as_new("connection updated")

                if self._cycles >= self.config.max_cycles_before_handoff:
                    return self._continue_as_new("cycle limit reached")
                self._cycles += 1

                trigger = await self._wait_for_next_run()
                if trigger is not None:
                    await self._run_job(trigger)
        finally:
            if self._attempt_task is not None and not self._attempt_task.done():
                self._attempt_task.cancel()

    async def _checkpoint(self) -> None:
        await asyncio.sleep(0)
        self._drain_mailbox()

    def _drain_mailbox(self) -> None:
        while not self._mailbox.empty():
            self._apply(self._mailbox.get_nowait())

    def _apply(self, signal: Signal) -> None:
        before = self._state.phase
        if self._state.apply(signal):
            logger.info(
                "%s: applied %s (%s -> %s)",
                self.connection_id,
                signal.value,
                before.value,
                self._state.phase.value,
            )
        else:
            logger.debug(
                "%s: ignored %s while %s",
                self.connection_id,
                signal.value,
                before.value,
            )

    async def _wait_for_signals(
        self,
        duration: timedelta | float | None,
        predicate: Callable[[], bool],
    ) -> bool:
        """Apply signals until ``predicate`` holds or the duration elapses.

        Returns True when the predicate was satisfied, False on timeout. A
        duration of None (or the suspended wait) waits for signals only.
        """
        if isinstance(duration, timedelta):
            duration = None if duration >= SUSPENDED_WAIT else duration.total_seconds()

        loop = asyncio.get_running_loop()
        deadline = None if duration is None else loop.time() + max(duration, 0)

        while not predicate():
            remaining = None
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return False
            try:
                signal = await asyncio.wait_for(self._mailbox.get(), timeout=remaining)
            except asyncio.TimeoutError:
                return predicate()
            self._apply(signal)
            self._drain_mailbox()
        return True

    def _immediate_trigger(self) -> RunTrigger | None:
        if self._state.phase.is_deleted or self._state.has_intent(
            PendingIntent.CONNECTION_UPDATED,
        ):
            return None
        if self._state.has_intent(PendingIntent.RESET):
            return RunTrigger.RESET
        if self._state.has_intent(PendingIntent.MANUAL_SYNC):
            return RunTrigger.MANUAL
        return None

    async def _wait_for_next_run(self) -> RunTrigger | None:
        """Wait for the next run. None means the loop should re-evaluate."""
        trigger = self._immediate_trigger()
        if trigger is not None:
            return trigger

        if await self._connection_deprecated():
            logger.info("Connection %s is deprecated, deleting it", self.connection_id)
            self._apply(Signal.DELETE_CONNECTION)
            return None

        time_to_wait, computed = await self._compute_wait_time()
        if time_to_wait >= SUSPENDED_WAIT:
            logger.info("Scheduling of %s is suspended until a signal arrives", self.connection_id)
        else:
            logger.info("Next run of %s in %s", self.connection_id, time_to_wait)

        if await self._wait_for_signals(time_to_wait, self._state.should_wake):
            return self._immediate_trigger()

        if not computed:
            return None

        if self._state.consume_intent(PendingIntent.SKIP_NEXT_SCHEDULING):
            self._state.skipped_run_at = self._clock()
            logger.info("Skipping scheduled run of %s", self.connection_id)
            return None

        return RunTrigger.SCHEDULED

    async def _connection_deprecated(self) -> bool:
        try:
            status = await self._activity(
                "get_status",
                self.activities.get_status,
                self.connection_id,
            )
        except ActivityRetriesExhausted:
            return False
        return status is ConnectionStatus.DEPRECATED

    async def _compute_wait_time(self) -> tuple[timedelta, bool]:
        """Return the wait and whether it came from the schedule."""
        request = ScheduleRetrieverInput(
            connection_id=self.connection_id,
            skipped_run_at=self._state.skipped_run_at,
        )
        try:
            output = await self._activity(
                "get_time_to_wait",
                self.activities.get_time_to_wait,
                request,
            )
        except (ActivityRetriesExhausted, ScheduleComputationFailure) as e:
            logger.warning(
                "Schedule lookup for %s failed, retrying in %ss: %s",
                self.connection_id,
                self.config.schedule_retry_interval,
                e,
            )
            return timedelta(seconds=self.config.schedule_retry_interval), False
        return output.time_to_wait, True

    # Jobs and attempts

    async def _run_job(self, trigger: RunTrigger) -> None:
        reset = trigger is RunTrigger.RESET
        self._state.begin_job(reset=reset)
        logger.info(
            "Starting %s job for %s (%s)",
            "reset" if reset else "sync",
            self.connection_id,
            trigger.value,
        )

        try:
            job_id = await self._activity(
                "create_job",
                self.jobs.create_job,
                self.connection_id,
                reset,
            )
        except ActivityRetriesExhausted:
            logger.error("Could not create a job for %s, waiting again", self.connection_id)
            self._state.finish_job()
            return

        self._state.job_information = JobInformation(job_id=job_id)
        failed = False
        try:
            failed = await self._run_attempts(job_id, reset)
        finally:
            self._state.finish_job(failed=failed)

    async def _run_attempts(self, job_id: int, reset: bool) -> bool:
        """Run attempts until one succeeds, the cap is hit or the job is interrupted.

        Returns True when the job ended up failed.
        """
        max_attempt = await self._fetch_max_attempt()
        source_config = await self._fetch_source_config()
        failures = 0

        while True:
            self._drain_mailbox()
            if self._state.should_interrupt():
                await self._report_interrupted(job_id)
                return False

            try:
                attempt_number = await self._activity(
                    "create_attempt",
                    self.jobs.create_attempt,
                    job_id,
                )
            except ActivityRetriesExhausted as e:
                await self._report("job_failed", self.jobs.job_failed, job_id, e.message)
                return True

            self._state.job_information = JobInformation(
                job_id=job_id,
                attempt_id=attempt_number,
            )
            outcome, reason = await self._run_attempt(
                SyncInput(
                    connection_id=self.connection_id,
                    job_id=job_id,
                    attempt_number=attempt_number,
                    reset=reset,
                    source_config=source_config,
                ),
            )

            if outcome is AttemptOutcome.INTERRUPTED:
                await self._report_interrupted(job_id)
                return False

            if outcome is AttemptOutcome.SUCCEEDED:
                await self._report(
                    "attempt_succeeded",
                    self.jobs.attempt_succeeded,
                    job_id,
                    attempt_number,
                )
                await self._report("job_succeeded", self.jobs.job_succeeded, job_id)
                logger.info("Job %s of %s succeeded", job_id, self.connection_id)
                if self.notifier:
                    self.notifier.notify_job_succeeded(self.connection_id, job_id, reset)
                return False

            failures += 1
            await self._report(
                "attempt_failed",
                self.jobs.attempt_failed,
                job_id,
                attempt_number,
                reason,
            )

            if failures >= max_attempt:
                logger.error(
                    "Job %s of %s failed after %s attempts: %s",
                    job_id,
                    self.connection_id,
                    failures,
                    reason,
                )
                await self._report("job_failed", self.jobs.job_failed, job_id, reason)
                if self.notifier:
                    self.notifier.notify_job_failed(
                        self.connection_id,
                        job_id,
                        failures,
                        reason,
                    )
                return True

            delay = self.attempt_backoff.delay(failures, self._rng)
            logger.warning(
                "Attempt %s of job %s failed (%s/%s), retrying in %.1fs: %s",
                attempt_number,
                job_id,
                failures,
                max_attempt,
                delay,
                reason,
            )
            await self._wait_for_signals(delay, self._state.should_interrupt)

    async def _run_attempt(self, sync_input: SyncInput) -> tuple[AttemptOutcome, str | None]:
        task = asyncio.create_task(
            self.runner.run(sync_input),
            name=f"sync-{self.connection_id}-{sync_input.job_id}-{sync_input.attempt_number}",
        )
        self._attempt_task = task
        try:
            while not task.done():
                getter = asyncio.ensure_future(self._mailbox.get())
                try:
                    await asyncio.wait({task, getter}, return_when=asyncio.FIRST_COMPLETED)
                finally:
                    if not getter.done():
                        getter.cancel()

                if getter.done() and not getter.cancelled():
                    self._apply(getter.result())
                    self._drain_mailbox()

                if self._state.should_interrupt() and not task.done():
                    await self._interrupt_attempt(task)
                    return AttemptOutcome.INTERRUPTED, None
        finally:
            self._attempt_task = None

        return self._attempt_outcome(task)

    async def _interrupt_attempt(self, task: asyncio.Task) -> None:
        logger.info("Interrupting running attempt of %s", self.connection_id)
        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=self.config.cancellation_grace_period)
        if not done:
            # No new attempt may start until this one has unwound
            logger.warning(
                "Attempt of %s did not stop within %ss, still waiting for it",
                self.connection_id,
                self.config.cancellation_grace_period,
            )
            await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Interrupted attempt raised %r", task.exception())

    def _attempt_outcome(self, task: asyncio.Task) -> tuple[AttemptOutcome, str | None]:
        if task.cancelled():
            return AttemptOutcome.FAILED, "attempt was cancelled outside the manager"

        error = task.exception()
        if isinstance(error, AttemptFailure):
            if not error.retryable:
                logger.warning(
                    "Attempt of %s reported a non-retryable failure",
                    self.connection_id,
                )
            return AttemptOutcome.FAILED, error.message
        if error is not None:
            logger.warning(
                "Attempt of %s raised an error",
                self.connection_id,
                exc_info=error,
            )
            return AttemptOutcome.FAILED, str(error) or type(error).__name__

        output = task.result()
        if output.succeeded:
            return AttemptOutcome.SUCCEEDED, None
        if not output.retryable:
            logger.warning("Attempt of %s reported a non-retryable failure", self.connection_id)
        return AttemptOutcome.FAILED, output.failure_reason or "sync failed"

    async def _report_interrupted(self, job_id: int) -> None:
        if self._state.phase.is_deleted:
            reason = "connection deleted"
        elif self._state.has_intent(PendingIntent.RESET):
            reason = "cancelled for reset"
        else:
            reason = "cancelled by operator"
        logger.info("Job %s of %s cancelled: %s", job_id, self.connection_id, reason)
        await self._report("job_cancelled", self.jobs.job_cancelled, job_id, reason)

    async def _refresh_catalog(self) -> None:
        try:
            refreshed = await self._activity(
                "refresh_catalog",
                self.activities.refresh_catalog,
            )
        except ActivityRetriesExhausted:
            logger.warning(
                "Could not reload the catalog for %s, keeping the current one",
                self.connection_id,
            )
            return
        if refreshed:
            logger.info("Reloaded the connection catalog for %s", self.connection_id)

    async def _fetch_max_attempt(self) -> int:
        try:
            output = await self._activity("get_max_attempt", self.activities.get_max_attempt)
        except ActivityRetriesExhausted:
            logger.warning(
                "Max attempt lookup failed, using fallback of %s",
                self.config.max_attempt_fallback,
            )
            return self.config.max_attempt_fallback
        return max(output.max_attempt, 1)

    async def _fetch_source_config(self) -> dict[str, Any] | None:
        try:
            source_id = await self._activity(
                "get_source_id",
                self.activities.get_source_id,
                self.connection_id,
            )
            if source_id is None:
                return None
            return await self._activity(
                "get_source_config",
                self.activities.get_source_config,
                source_id,
            )
        except ActivityRetriesExhausted:
            logger.warning("Running %s without its source config", self.connection_id)
            return None

    async def _activity(self, name: str, func: Callable[..., Any], *args: Any) -> Any:
        return await self.retry_policy.call(name, func, *args)

    async def _report(self, name: str, func: Callable[..., Any], *args: Any) -> None:
        """Record a job status change; failures are logged and do not stop the loop."""
        try:
            await self._activity(name, func, *args)
        except ActivityRetriesExhausted:
            logger.error("Could not record %s for %s", name, self.connection_id)

    # Endings

    def _continue_as_new(self, reason: str) -> RunResult:
        logger.info("Handing off %s to a fresh instance (%s)", self.connection_id, reason)
        return RunResult(
            kind=RunResultKind.CONTINUE_AS_NEW,
            reason=reason,
            snapshot=self._state.to_snapshot(),
        )

    def _terminate(self) -> RunResult:
        self._state.terminate()
        dropped = self.pending_signals()
        if dropped:
            logger.debug("Dropped %s signals queued after deletion", len(dropped))
        logger.info("Connection %s deleted, manager terminated", self.connection_id)
        if self.notifier:
            self.notifier.notify_connection_deleted(self.connection_id)
        return RunResult(kind=RunResultKind.TERMINATED, reason="connection deleted")
