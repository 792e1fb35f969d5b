"""Daemon management for Syncloop."""

import asyncio
import logging
import signal

from ..activities.config_api import CatalogConfigApi
from ..activities.config_fetch import ConfigFetchActivity
from ..activities.jobs import InMemoryJobTracker
from ..activities.sync import CommandSyncRunner
from ..config import SyncloopConfig
from ..notify.ntfy import NtfyNotifier
from ..process_lock import ProcessLock
from ..storage.snapshots import SnapshotStore
from .registry import ConnectionRegistry

logger = logging.getLogger(__name__)


class SyncloopDaemon:
    """Runs a connection manager for every configured connection."""

    def __init__(self, config: SyncloopConfig):
        self.config = config
        self.registry: ConnectionRegistry | None = None
        self.lock: ProcessLock | None = None
        self._stop_event: asyncio.Event | None = None

    def build_registry(self) -> ConnectionRegistry:
        """Wire the registry to the configured catalog, runner and store."""
        jobs = InMemoryJobTracker()
        activities = ConfigFetchActivity(self.config, CatalogConfigApi(self.config, jobs))
        return ConnectionRegistry(
            self.config,
            activities,
            jobs,
            CommandSyncRunner(self.config),
            notifier=NtfyNotifier(self.config),
            store=SnapshotStore(self.config),
        )

    def start_foreground(self) -> None:
        """Run in the foreground until SIGINT or SIGTERM."""
        self.config.ensure_directories()

        self.lock = ProcessLock(self.config)
        if not self.lock.acquire():
            msg = f"Syncloop is already running for {self.config.state_dir}"
            raise RuntimeError(msg)

        try:
            asyncio.run(self._serve())
        finally:
            self.lock.release()

    async def _serve(self) -> None:
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, self.request_stop)

        self.registry = self.build_registry()
        try:
            for entry in self.config.connections:
                if self.registry.is_deleted(entry.connection_id):
                    logger.info("Skipping deleted connection %s", entry.connection_id)
                    continue
                await self.registry.start(entry.connection_id)

            logger.info("Managing %s connections", len(self.registry.connection_ids))

            while not self._stop_event.is_set():
                if not self.registry.connection_ids:
                    logger.info("No connections left to manage")
                    break
                self._log_status()
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self.config.status_display_interval,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.registry.stop()
            for signum in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(signum)

    def request_stop(self) -> None:
        """Ask the daemon to stop at its next status tick."""
        logger.info("Stop requested")
        if self._stop_event is not None:
            self._stop_event.set()

    def _log_status(self) -> None:
        for connection_id in self.registry.connection_ids:
            state = self.registry.get_state(connection_id)
            job = self.registry.get_job_information(connection_id)
            if job.is_idle:
                logger.info("%s: %s", connection_id, state.phase.value)
            else:
                logger.info(
                    "%s: %s (job %s, attempt %s)",
                    connection_id,
                    state.phase.value,
                    job.job_id,
                    job.attempt_id,
                )
