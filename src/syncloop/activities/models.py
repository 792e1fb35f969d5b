"""Data shapes shared by the activity layer."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator


class ConnectionStatus(Enum):
    """Lifecycle status of a connection."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    DEPRECATED = "deprecated"


class ScheduleType(Enum):
    """How a connection is scheduled."""

    BASIC = "basic"
    CRON = "cron"
    MANUAL = "manual"


class TimeUnit(Enum):
    """Units accepted by basic schedules."""

    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"

    def to_timedelta(self, units: int) -> timedelta:
        """Convert a unit count into a duration. Months count as 30 days."""
        if self is TimeUnit.MINUTES:
            return timedelta(minutes=units)
        if self is TimeUnit.HOURS:
            return timedelta(hours=units)
        if self is TimeUnit.DAYS:
            return timedelta(days=units)
        if self is TimeUnit.WEEKS:
            return timedelta(weeks=units)
        return timedelta(days=30 * units)


class ConnectionSchedule(BaseModel):
    """Schedule configuration of a connection."""

    schedule_type: ScheduleType = Field(default=ScheduleType.BASIC)

    # Basic schedules
    units: int = Field(default=24, ge=1)
    time_unit: TimeUnit = Field(default=TimeUnit.HOURS)

    # Cron schedules
    cron_expression: str | None = None
    timezone: str = Field(default="UTC")

    @field_validator("timezone")
    @classmethod
    def known_timezone(cls, v: str) -> str:
        """Reject names missing from the tz database."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            msg = f"Unknown timezone: {v}"
            raise ValueError(msg) from e
        return v

    @model_validator(mode="after")
    def cron_requires_expression(self) -> "ConnectionSchedule":
        """Cron schedules must carry an expression."""
        if self.schedule_type is ScheduleType.CRON and not self.cron_expression:
            msg = "cron schedules require a cron_expression"
            raise ValueError(msg)
        return self

    @property
    def interval(self) -> timedelta:
        """Interval between runs of a basic schedule."""
        return self.time_unit.to_timedelta(self.units)


class ConnectionRecord(BaseModel):
    """What the config service knows about a connection."""

    connection_id: str
    source_id: str | None = None
    status: ConnectionStatus = Field(default=ConnectionStatus.ACTIVE)
    schedule: ConnectionSchedule = Field(default_factory=ConnectionSchedule)
    workspace_tombstone: bool = False


@dataclass(frozen=True)
class ScheduleRetrieverInput:
    """Input of the time-to-wait activity."""

    connection_id: str
    # A scheduled run that was suppressed counts as the latest run
    skipped_run_at: datetime | None = None


@dataclass(frozen=True)
class ScheduleRetrieverOutput:
    """How long the manager should wait before the next scheduled run."""

    time_to_wait: timedelta


@dataclass(frozen=True)
class MaxAttemptOutput:
    """Maximum number of attempts allowed per job."""

    max_attempt: int


@dataclass(frozen=True)
class SyncInput:
    """Everything a runner needs to execute one attempt."""

    connection_id: str
    job_id: int
    attempt_number: int
    reset: bool = False
    source_config: dict[str, Any] | None = None


@dataclass(frozen=True)
class SyncOutput:
    """Result of one attempt."""

    succeeded: bool
    failure_reason: str | None = None
    retryable: bool = True

    @classmethod
    def success(cls) -> "SyncOutput":
        return cls(succeeded=True)

    @classmethod
    def failure(cls, reason: str, *, retryable: bool = True) -> "SyncOutput":
        return cls(succeeded=False, failure_reason=reason, retryable=retryable)
