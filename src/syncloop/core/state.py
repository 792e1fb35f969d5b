"""State of a connection manager.

The controller keeps a small tagged phase plus an ordered set of pending
intents. The flag-style WorkflowState operators query is derived from it, so
combinations such as deleted-while-running cannot be represented.
"""

import logging
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)

NON_RUNNING_JOB_ID = -1
NON_RUNNING_ATTEMPT_ID = -1


class Signal(Enum):
    """Messages an operator can send to a running connection manager."""

    MANUAL_SYNC = "submit_manual_sync"
    CANCEL_JOB = "cancel_job"
    DELETE_CONNECTION = "delete_connection"
    CONNECTION_UPDATED = "connection_updated"
    RESET_CONNECTION = "reset_connection"
    RESET_CONNECTION_AND_SKIP_NEXT_SCHEDULING = "reset_connection_and_skip_next_scheduling"


class ControllerPhase(Enum):
    """Where the control loop currently is."""

    WAITING = "waiting"
    RUNNING = "running"
    RESETTING = "resetting"
    CANCELLING = "cancelling"
    DELETING = "deleting"
    TERMINATED = "terminated"

    @property
    def has_active_job(self) -> bool:
        return self in _ACTIVE_JOB_PHASES

    @property
    def is_deleted(self) -> bool:
        return self in (ControllerPhase.DELETING, ControllerPhase.TERMINATED)


_ACTIVE_JOB_PHASES = frozenset(
    {ControllerPhase.RUNNING, ControllerPhase.RESETTING, ControllerPhase.CANCELLING},
)


class PendingIntent(Enum):
    """Work requested by a signal that the loop has not acted on yet."""

    MANUAL_SYNC = "manual_sync"
    RESET = "reset"
    SKIP_NEXT_SCHEDULING = "skip_next_scheduling"
    CONNECTION_UPDATED = "connection_updated"


class JobInformation(BaseModel):
    """Which job and attempt is currently running."""

    model_config = ConfigDict(frozen=True)

    job_id: int = NON_RUNNING_JOB_ID
    attempt_id: int = NON_RUNNING_ATTEMPT_ID

    @classmethod
    def idle(cls) -> "JobInformation":
        return cls()

    @property
    def is_idle(self) -> bool:
        return self.job_id == NON_RUNNING_JOB_ID and self.attempt_id == NON_RUNNING_ATTEMPT_ID


class WorkflowState(BaseModel):
    """Read-only view of the controller answered by the state query."""

    model_config = ConfigDict(frozen=True)

    phase: ControllerPhase = ControllerPhase.WAITING
    running: bool = False
    cancelled: bool = False
    deleted: bool = False
    updated: bool = False
    reset_requested: bool = False
    skip_next_scheduling: bool = False
    failed: bool = False

    @model_validator(mode="after")
    def deleted_excludes_everything_else(self) -> "WorkflowState":
        if self.deleted and any(
            (
                self.running,
                self.cancelled,
                self.updated,
                self.reset_requested,
                self.skip_next_scheduling,
                self.failed,
            ),
        ):
            msg = "a deleted connection cannot carry any other flag"
            raise ValueError(msg)
        return self


class ControllerSnapshot(BaseModel):
    """Everything a fresh incarnation needs to resume where the last one stopped."""

    connection_id: str
    phase: ControllerPhase = ControllerPhase.WAITING
    intents: list[PendingIntent] = Field(default_factory=list)
    job_information: JobInformation = Field(default_factory=JobInformation.idle)
    failed: bool = False
    cancelled: bool = False
    skipped_run_at: datetime | None = None


class ControllerState:
    """Mutable state owned by a single connection manager."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.phase = ControllerPhase.WAITING
        self.intents: list[PendingIntent] = []
        self.job_information = JobInformation.idle()
        self.failed = False
        self.cancelled = False
        self.skipped_run_at: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: ControllerSnapshot) -> "ControllerState":
        state = cls(snapshot.connection_id)
        state.phase = snapshot.phase
        state.intents = list(dict.fromkeys(snapshot.intents))
        state.job_information = snapshot.job_information
        state.failed = snapshot.failed
        state.cancelled = snapshot.cancelled
        state.skipped_run_at = snapshot.skipped_run_at

        # A job cannot survive the loss of its attempt task
        if state.phase.has_active_job:
            logger.warning(
                "Snapshot of %s was taken during job %s, restarting idle",
                state.connection_id,
                state.job_information.job_id,
            )
            state.phase = ControllerPhase.WAITING
            state.job_information = JobInformation.idle()
            state.cancelled = False
        return state

    def to_snapshot(self) -> ControllerSnapshot:
        return ControllerSnapshot(
            connection_id=self.connection_id,
            phase=self.phase,
            intents=list(self.intents),
            job_information=self.job_information,
            failed=self.failed,
            cancelled=self.cancelled,
            skipped_run_at=self.skipped_run_at,
        )

    def view(self) -> WorkflowState:
        if self.phase.is_deleted:
            return WorkflowState(phase=self.phase, deleted=True)
        return WorkflowState(
            phase=self.phase,
            running=self.phase.has_active_job,
            cancelled=self.cancelled,
            updated=PendingIntent.CONNECTION_UPDATED in self.intents,
            reset_requested=(
                PendingIntent.RESET in self.intents
                or self.phase is ControllerPhase.RESETTING
            ),
            skip_next_scheduling=PendingIntent.SKIP_NEXT_SCHEDULING in self.intents,
            failed=self.failed,
        )

    # Intents

    def has_intent(self, intent: PendingIntent) -> bool:
        return intent in self.intents

    def add_intent(self, intent: PendingIntent) -> None:
        if intent not in self.intents:
            self.intents.append(intent)

    def consume_intent(self, intent: PendingIntent) -> bool:
        """Remove the intent, returning whether it was pending."""
        if intent in self.intents:
            self.intents.remove(intent)
            return True
        return False

    # Signals

    def apply(self, signal: Signal) -> bool:
        """Apply a drained signal. Returns False when the signal is a no-op."""
        if self.phase.is_deleted:
            return False

        if signal is Signal.MANUAL_SYNC:
            if self.phase.has_active_job:
                return False
            self.add_intent(PendingIntent.MANUAL_SYNC)
            return True

        if signal is Signal.CANCEL_JOB:
            if self.phase not in (ControllerPhase.RUNNING, ControllerPhase.RESETTING):
                return False
            self.phase = ControllerPhase.CANCELLING
            self.cancelled = True
            return True

        if signal is Signal.DELETE_CONNECTION:
            self.phase = ControllerPhase.DELETING
            self.intents.clear()
            self.cancelled = False
            self.failed = False
            return True

        if signal is Signal.CONNECTION_UPDATED:
            self.add_intent(PendingIntent.CONNECTION_UPDATED)
            return True

        # Both reset variants
        self.add_intent(PendingIntent.RESET)
        if signal is Signal.RESET_CONNECTION_AND_SKIP_NEXT_SCHEDULING:
            self.add_intent(PendingIntent.SKIP_NEXT_SCHEDULING)
        if self.phase in (ControllerPhase.RUNNING, ControllerPhase.RESETTING):
            # The running job is cancelled so the reset can start
            self.phase = ControllerPhase.CANCELLING
            self.cancelled = True
        return True

    def should_wake(self) -> bool:
        """Whether an idle wait must end early."""
        return self.phase.is_deleted or any(
            intent in self.intents
            for intent in (
                PendingIntent.MANUAL_SYNC,
                PendingIntent.RESET,
                PendingIntent.CONNECTION_UPDATED,
            )
        )

    def should_interrupt(self) -> bool:
        """Whether the running job must stop."""
        return self.phase in (ControllerPhase.CANCELLING, ControllerPhase.DELETING)

    # Job lifecycle

    def begin_job(self, *, reset: bool) -> None:
        if reset:
            self.consume_intent(PendingIntent.RESET)
        self.consume_intent(PendingIntent.MANUAL_SYNC)
        self.phase = ControllerPhase.RESETTING if reset else ControllerPhase.RUNNING
        self.failed = False
        self.cancelled = False

    def finish_job(self, *, failed: bool = False) -> None:
        self.job_information = JobInformation.idle()
        self.cancelled = False
        if self.phase.is_deleted:
            return
        self.failed = failed
        self.phase = ControllerPhase.WAITING

    def terminate(self) -> None:
        self.phase = ControllerPhase.TERMINATED
        self.intents.clear()
        self.job_information = JobInformation.idle()
        self.cancelled = False
        self.failed = False
