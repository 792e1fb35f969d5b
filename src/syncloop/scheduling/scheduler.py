"""
Connection Scheduler

Computes how long a connection waits before its next scheduled run. Basic
schedules run every fixed interval after the last terminal job started, cron
schedules use APScheduler's CronTrigger, and manual schedules only run on
demand.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger

from syncloop.activities.config_api import ConfigApi
from syncloop.activities.models import (
    ConnectionSchedule,
    ConnectionStatus,
    ScheduleType,
)
from syncloop.error_handling import ScheduleComputationFailure

logger = logging.getLogger(__name__)

# Returned when scheduling is suspended rather than failed
SUSPENDED_WAIT = timedelta(days=365 * 100)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class Scheduler:
    """Decides when the next scheduled run of a connection is due."""

    def __init__(
        self,
        config_api: ConfigApi,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config_api = config_api
        self._clock = clock or (lambda: datetime.now(UTC))

    def compute_wait_time(
        self,
        connection_id: str,
        skipped_run_at: datetime | None = None,
    ) -> timedelta:
        """Return the remaining wait, zero when overdue or never run."""
        if self.config_api.is_workspace_tombstone(connection_id):
            logger.info("Workspace of %s is tombstoned, suspending schedule", connection_id)
            return SUSPENDED_WAIT

        connection = self.config_api.get_connection(connection_id)
        if connection is None:
            raise ScheduleComputationFailure(connection_id, "connection not found")

        if connection.status is not ConnectionStatus.ACTIVE:
            logger.debug("%s is %s, suspending schedule", connection_id, connection.status.value)
            return SUSPENDED_WAIT

        schedule = connection.schedule
        if schedule.schedule_type is ScheduleType.MANUAL:
            return SUSPENDED_WAIT

        anchors = [
            _as_utc(moment)
            for moment in (
                self.config_api.get_last_terminal_job_start(connection_id),
                skipped_run_at,
            )
            if moment is not None
        ]
        if not anchors:
            return timedelta(0)
        anchor = max(anchors)

        next_run = self._next_run(connection_id, schedule, anchor)
        if next_run is None:
            return SUSPENDED_WAIT

        remaining = next_run - _as_utc(self._clock())
        return max(remaining, timedelta(0))

    def _next_run(
        self,
        connection_id: str,
        schedule: ConnectionSchedule,
        anchor: datetime,
    ) -> datetime | None:
        if schedule.schedule_type is ScheduleType.BASIC:
            return anchor + schedule.interval

        try:
            trigger = CronTrigger.from_crontab(
                schedule.cron_expression,
                timezone=schedule.timezone,
            )
        except ZoneInfoNotFoundError as e:
            raise ScheduleComputationFailure(
                connection_id,
                f"unknown timezone {schedule.timezone!r}",
                original_error=e,
            ) from e
        except ValueError as e:
            raise ScheduleComputationFailure(
                connection_id,
                f"invalid cron expression {schedule.cron_expression!r}",
                original_error=e,
            ) from e

        # Strictly after the anchor so a run at the fire time is not repeated
        after = (anchor + timedelta(seconds=1)).astimezone(trigger.timezone)
        fire_time = trigger.get_next_fire_time(None, after)
        return _as_utc(fire_time) if fire_time else None
