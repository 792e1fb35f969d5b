"""Configuration lookups made by the connection manager."""

import logging
from typing import Any

from syncloop.activities.config_api import ConfigApi
from syncloop.activities.models import (
    ConnectionStatus,
    MaxAttemptOutput,
    ScheduleRetrieverInput,
    ScheduleRetrieverOutput,
)
from syncloop.config import SyncloopConfig
from syncloop.scheduling.scheduler import Scheduler

logger = logging.getLogger(__name__)


class ConfigFetchActivity:
    """Wraps the config service and the scheduler behind activity calls."""

    def __init__(
        self,
        config: SyncloopConfig,
        config_api: ConfigApi,
        scheduler: Scheduler | None = None,
    ):
        self.config = config
        self.config_api = config_api
        self.scheduler = scheduler or Scheduler(config_api)

    def get_source_id(self, connection_id: str) -> str | None:
        connection = self.config_api.get_connection(connection_id)
        return connection.source_id if connection else None

    def get_source_config(self, source_id: str) -> dict[str, Any]:
        return self.config_api.get_source_config(source_id)

    def get_status(self, connection_id: str) -> ConnectionStatus | None:
        connection = self.config_api.get_connection(connection_id)
        return connection.status if connection else None

    def get_time_to_wait(self, request: ScheduleRetrieverInput) -> ScheduleRetrieverOutput:
        """Return how long to wait before the next scheduled sync.

        The wait is measured from the start of the latest terminal job (or the
        latest suppressed run) of the connection.
        """
        time_to_wait = self.scheduler.compute_wait_time(
            request.connection_id,
            skipped_run_at=request.skipped_run_at,
        )
        logger.debug("Next run of %s in %s", request.connection_id, time_to_wait)
        return ScheduleRetrieverOutput(time_to_wait=time_to_wait)

    def refresh_catalog(self) -> bool:
        """Re-read the connection catalog; False when there is no file to read."""
        return self.config_api.refresh()

    def get_max_attempt(self) -> MaxAttemptOutput:
        return MaxAttemptOutput(max_attempt=self.config.max_attempt)

    def is_workspace_tombstone(self, connection_id: str) -> bool:
        return self.config_api.is_workspace_tombstone(connection_id)
