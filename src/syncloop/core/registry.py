"""Registry of connection managers.

The registry guarantees a single live manager per connection id, routes
signals and queries to it, and drives hand-offs: when a manager returns a
continue-as-new result, its snapshot and any unapplied signals are moved to a
fresh manager for the same connection.
"""

import asyncio
import logging
from collections import Counter
from functools import partial
from typing import Any

from syncloop.activities.config_fetch import ConfigFetchActivity
from syncloop.activities.jobs import JobPersistence
from syncloop.activities.sync import SyncRunner
from syncloop.config import SyncloopConfig
from syncloop.core.manager import ConnectionManager, RunResult, RunResultKind
from syncloop.core.state import (
    ControllerPhase,
    ControllerSnapshot,
    JobInformation,
    Signal,
    WorkflowState,
)
from syncloop.error_handling import ConnectionDeletedError, ConnectionNotFoundError
from syncloop.notify.ntfy import NtfyNotifier
from syncloop.storage.snapshots import SnapshotStore

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Keeps exactly one connection manager alive per connection."""

    def __init__(
        self,
        config: SyncloopConfig,
        activities: ConfigFetchActivity,
        jobs: JobPersistence,
        runner: SyncRunner,
        *,
        notifier: NtfyNotifier | None = None,
        store: SnapshotStore | None = None,
        **manager_options: Any,
    ):
        self.config = config
        self.activities = activities
        self.jobs = jobs
        self.runner = runner
        self.notifier = notifier
        self.store = store
        self._manager_options = manager_options

        self._managers: dict[str, ConnectionManager] = {}
        self._drivers: dict[str, asyncio.Task] = {}
        self._deleted: set[str] = set()
        self._lock = asyncio.Lock()
        self.handoffs: Counter[str] = Counter()

    @property
    def connection_ids(self) -> list[str]:
        """Ids of connections with a live manager."""
        return sorted(self._managers)

    def is_deleted(self, connection_id: str) -> bool:
        if connection_id in self._deleted:
            return True
        return bool(self.store and self.store.is_deleted(connection_id))

    async def start(
        self,
        connection_id: str,
        snapshot: ControllerSnapshot | None = None,
    ) -> ConnectionManager:
        """Start the manager of a connection, or return the one already running."""
        async with self._lock:
            manager = self._managers.get(connection_id)
            if manager is not None:
                return manager

            if self.is_deleted(connection_id):
                raise ConnectionDeletedError(connection_id)

            if snapshot is None and self.store is not None:
                snapshot = self.store.load(connection_id)

            manager = self._create_manager(connection_id, snapshot)
            self._managers[connection_id] = manager

            task = asyncio.create_task(
                self._drive(connection_id, manager),
                name=f"connection-manager-{connection_id}",
            )
            self._drivers[connection_id] = task
            task.add_done_callback(partial(self._on_driver_done, connection_id))

            logger.info(
                "Started manager for %s%s",
                connection_id,
                " from snapshot" if snapshot else "",
            )
            return manager

    def _create_manager(
        self,
        connection_id: str,
        snapshot: ControllerSnapshot | None,
    ) -> ConnectionManager:
        return ConnectionManager(
            connection_id,
            self.config,
            self.activities,
            self.jobs,
            self.runner,
            notifier=self.notifier,
            snapshot=snapshot,
            **self._manager_options,
        )

    async def _drive(self, connection_id: str, manager: ConnectionManager) -> RunResult:
        while True:
            result = await manager.run()

            if result.kind is RunResultKind.TERMINATED:
                self._deleted.add(connection_id)
                if self.store:
                    self.store.mark_deleted(connection_id)
                return result

            # Nothing may be awaited until the new manager is registered
            carried = manager.pending_signals()
            if self.store:
                self.store.save(result.snapshot)
            manager = self._create_manager(connection_id, result.snapshot)
            for signal in carried:
                manager.signal(signal)
            self._managers[connection_id] = manager
            self.handoffs[connection_id] += 1
            logger.debug(
                "Handed off %s (%s), %s signals carried over",
                connection_id,
                result.reason,
                len(carried),
            )

    def _on_driver_done(self, connection_id: str, task: asyncio.Task) -> None:
        if self._drivers.get(connection_id) is not task:
            return
        self._drivers.pop(connection_id, None)
        self._managers.pop(connection_id, None)

        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Manager for %s crashed", connection_id, exc_info=error)
            if self.notifier:
                self.notifier.notify_error(str(error), context=connection_id)

    def _require(self, connection_id: str) -> ConnectionManager:
        manager = self._managers.get(connection_id)
        if manager is None:
            raise ConnectionNotFoundError(connection_id)
        return manager

    def signal(self, connection_id: str, signal: Signal) -> None:
        """Deliver a signal; signals to deleted connections are ignored."""
        if self.is_deleted(connection_id):
            logger.debug("Ignoring %s for deleted %s", signal.value, connection_id)
            return
        self._require(connection_id).signal(signal)

    def get_state(self, connection_id: str) -> WorkflowState:
        if self.is_deleted(connection_id):
            return WorkflowState(phase=ControllerPhase.TERMINATED, deleted=True)
        return self._require(connection_id).get_state()

    def get_job_information(self, connection_id: str) -> JobInformation:
        if self.is_deleted(connection_id):
            return JobInformation.idle()
        return self._require(connection_id).get_job_information()

    async def wait_until_terminated(self, connection_id: str) -> None:
        """Wait for the driver of a connection to finish."""
        task = self._drivers.get(connection_id)
        if task is not None:
            await asyncio.wait({task})

    async def stop(self) -> None:
        """Stop every manager, saving its latest snapshot first."""
        if self.store:
            for manager in self._managers.values():
                self.store.save(manager.snapshot())

        tasks = list(self._drivers.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Stopped %s connection managers", len(tasks))
