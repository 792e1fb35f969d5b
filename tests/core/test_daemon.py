"""Test daemon lifecycle management."""

import asyncio
import sys

import pytest

from syncloop.activities.jobs import JobStatus
from syncloop.config import SyncloopConfig
from syncloop.core.daemon import SyncloopDaemon
from syncloop.core.registry import ConnectionRegistry
from syncloop.process_lock import ProcessLock
from syncloop.storage.snapshots import SnapshotStore


@pytest.fixture
def daemon_config(tmp_path):
    return SyncloopConfig(
        state_dir=tmp_path / "state",
        log_dir=tmp_path / "logs",
        status_display_interval=1,
        connections=[
            {"connection_id": "orders", "sync_command": [sys.executable, "-c", "pass"]},
        ],
    )


class TestSyncloopDaemon:
    def test_daemon_initialization(self, daemon_config):
        daemon = SyncloopDaemon(daemon_config)

        assert daemon.config == daemon_config
        assert daemon.registry is None

    def test_build_registry(self, daemon_config):
        registry = SyncloopDaemon(daemon_config).build_registry()

        assert isinstance(registry, ConnectionRegistry)
        assert isinstance(registry.store, SnapshotStore)
        assert registry.notifier is not None

    def test_refuses_to_start_twice(self, daemon_config):
        daemon_config.ensure_directories()
        lock = ProcessLock(daemon_config)
        assert lock.acquire()
        try:
            with pytest.raises(RuntimeError, match="already running"):
                SyncloopDaemon(daemon_config).start_foreground()
        finally:
            lock.release()

    def test_exits_when_nothing_to_manage(self, tmp_path):
        config = SyncloopConfig(state_dir=tmp_path / "state", log_dir=tmp_path / "logs")
        daemon = SyncloopDaemon(config)

        daemon.start_foreground()

        assert config.log_dir.exists()
        assert not ProcessLock(config).is_locked()

    def test_deleted_connections_are_not_started(self, daemon_config):
        SnapshotStore(daemon_config).mark_deleted("orders")
        daemon = SyncloopDaemon(daemon_config)

        daemon.start_foreground()

        assert daemon.registry.connection_ids == []

    @pytest.mark.asyncio
    async def test_serve_runs_connections_until_stopped(
        self, daemon_config, until,
    ):
        daemon = SyncloopDaemon(daemon_config)
        task = asyncio.create_task(daemon._serve())

        def synced():
            if daemon.registry is None:
                return False
            job = daemon.registry.jobs.get_job(1)
            return job is not None and job.status is JobStatus.SUCCEEDED

        await until(synced, timeout=10)
        daemon.request_stop()
        await asyncio.wait_for(task, timeout=5)

        assert SnapshotStore(daemon_config).load("orders") is not None
