"""Job and attempt bookkeeping."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Status of a sync job."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


class AttemptStatus(Enum):
    """Status of a single attempt."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class AttemptRecord:
    attempt_number: int
    status: AttemptStatus = AttemptStatus.RUNNING
    failure_reason: str | None = None


@dataclass
class JobRecord:
    """A job and its attempts."""

    job_id: int
    connection_id: str
    reset: bool
    started_at: datetime
    status: JobStatus = JobStatus.RUNNING
    attempts: list[AttemptRecord] = field(default_factory=list)
    failure_reason: str | None = None
    ended_at: datetime | None = None


class JobPersistence(Protocol):
    """Where the manager records jobs and attempts."""

    def create_job(self, connection_id: str, reset: bool) -> int: ...

    def create_attempt(self, job_id: int) -> int: ...

    def attempt_succeeded(self, job_id: int, attempt_number: int) -> None: ...

    def attempt_failed(self, job_id: int, attempt_number: int, reason: str) -> None: ...

    def job_succeeded(self, job_id: int) -> None: ...

    def job_failed(self, job_id: int, reason: str) -> None: ...

    def job_cancelled(self, job_id: int, reason: str) -> None: ...

    def last_terminal_job_start(self, connection_id: str) -> datetime | None: ...


class InMemoryJobTracker:
    """Keeps job records in memory.

    Status updates on jobs that are already terminal are ignored, so repeated
    calls from a retried activity leave the first outcome in place.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self._clock = clock or (lambda: datetime.now(UTC))
        self._jobs: dict[int, JobRecord] = {}
        self._next_job_id = 1

    def create_job(self, connection_id: str, reset: bool) -> int:
        job_id = self._next_job_id
        self._next_job_id += 1
        self._jobs[job_id] = JobRecord(
            job_id=job_id,
            connection_id=connection_id,
            reset=reset,
            started_at=self._clock(),
        )
        logger.debug("Created job %s for %s (reset=%s)", job_id, connection_id, reset)
        return job_id

    def create_attempt(self, job_id: int) -> int:
        job = self._require(job_id)
        attempt = AttemptRecord(attempt_number=len(job.attempts))
        job.attempts.append(attempt)
        return attempt.attempt_number

    def attempt_succeeded(self, job_id: int, attempt_number: int) -> None:
        attempt = self._require_attempt(job_id, attempt_number)
        attempt.status = AttemptStatus.SUCCEEDED

    def attempt_failed(self, job_id: int, attempt_number: int, reason: str) -> None:
        attempt = self._require_attempt(job_id, attempt_number)
        attempt.status = AttemptStatus.FAILED
        attempt.failure_reason = reason

    def job_succeeded(self, job_id: int) -> None:
        self._finish(job_id, JobStatus.SUCCEEDED)

    def job_failed(self, job_id: int, reason: str) -> None:
        self._finish(job_id, JobStatus.FAILED, reason)

    def job_cancelled(self, job_id: int, reason: str) -> None:
        self._finish(job_id, JobStatus.CANCELLED, reason)

    def last_terminal_job_start(self, connection_id: str) -> datetime | None:
        starts = [
            job.started_at
            for job in self._jobs.values()
            if job.connection_id == connection_id and job.status.is_terminal
        ]
        return max(starts) if starts else None

    def get_job(self, job_id: int) -> JobRecord | None:
        return self._jobs.get(job_id)

    def jobs_for(self, connection_id: str) -> list[JobRecord]:
        """All jobs of a connection, oldest first."""
        return [job for job in self._jobs.values() if job.connection_id == connection_id]

    def _finish(self, job_id: int, status: JobStatus, reason: str | None = None) -> None:
        job = self._require(job_id)
        if job.status.is_terminal:
            logger.debug("Job %s already %s, ignoring %s", job_id, job.status.value, status.value)
            return
        job.status = status
        job.failure_reason = reason
        job.ended_at = self._clock()

    def _require(self, job_id: int) -> JobRecord:
        job = self._jobs.get(job_id)
        if job is None:
            msg = f"Unknown job {job_id}"
            raise KeyError(msg)
        return job

    def _require_attempt(self, job_id: int, attempt_number: int) -> AttemptRecord:
        job = self._require(job_id)
        if attempt_number >= len(job.attempts):
            msg = f"Unknown attempt {attempt_number} for job {job_id}"
            raise KeyError(msg)
        return job.attempts[attempt_number]
