"""Client boundary to the connection configuration service."""

from datetime import datetime
from typing import Any, Protocol

from syncloop.activities.jobs import InMemoryJobTracker
from syncloop.activities.models import ConnectionRecord
from syncloop.config import SyncloopConfig
from syncloop.error_handling import TransientActivityFailure


class ConfigApi(Protocol):
    """Read-only view of connections, their workspace and their job history."""

    def get_connection(self, connection_id: str) -> ConnectionRecord | None: ...

    def get_source_config(self, source_id: str) -> dict[str, Any]: ...

    def get_last_terminal_job_start(self, connection_id: str) -> datetime | None: ...

    def is_workspace_tombstone(self, connection_id: str) -> bool: ...

    def refresh(self) -> bool: ...


class CatalogConfigApi:
    """ConfigApi backed by the connections declared in the configuration file."""

    def __init__(self, config: SyncloopConfig, jobs: InMemoryJobTracker):
        self.config = config
        self.jobs = jobs

    def get_connection(self, connection_id: str) -> ConnectionRecord | None:
        return self.config.get_connection(connection_id)

    def get_source_config(self, source_id: str) -> dict[str, Any]:
        for entry in self.config.connections:
            if entry.source_id == source_id:
                return dict(entry.source_config)
        msg = f"Unknown source {source_id}"
        raise KeyError(msg)

    def get_last_terminal_job_start(self, connection_id: str) -> datetime | None:
        return self.jobs.last_terminal_job_start(connection_id)

    def is_workspace_tombstone(self, connection_id: str) -> bool:
        entry = self.config.get_connection(connection_id)
        return bool(entry and entry.workspace_tombstone)

    def refresh(self) -> bool:
        """Re-read the connection catalog from the configuration file."""
        try:
            return self.config.reload_connections()
        except (OSError, ValueError) as e:
            raise TransientActivityFailure("refresh", str(e), original_error=e) from e
