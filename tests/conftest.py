"""Shared test configuration and fixtures."""

import asyncio
import logging
from datetime import timedelta

import pytest

from syncloop.activities.models import (
    ConnectionStatus,
    MaxAttemptOutput,
    ScheduleRetrieverOutput,
    SyncOutput,
)
from syncloop.cli import cleanup_logging
from syncloop.config import SyncloopConfig
from syncloop.scheduling.retry import BackoffPolicy, RetryPolicy


@pytest.fixture(scope="function", autouse=True)
def cleanup_logging_handlers():
    """Automatically cleanup logging handlers after each test to prevent ResourceWarnings."""
    yield
    cleanup_logging()


@pytest.fixture(scope="function", autouse=True)
def reset_logging():
    """Reset logging configuration after each test."""
    yield
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.WARNING)


@pytest.fixture
def config(tmp_path):
    """Configuration with no real waiting between attempts."""
    return SyncloopConfig(
        state_dir=tmp_path / "state",
        log_dir=tmp_path / "logs",
        attempt_backoff_initial=0,
        max_cycles_before_handoff=100,
        cancellation_grace_period=1,
    )


async def _no_sleep(_delay: float) -> None:
    return None


@pytest.fixture
def retry_policy():
    """Retry policy that retries twice without sleeping."""
    return RetryPolicy(max_retries=2, backoff=BackoffPolicy(initial=0), sleep=_no_sleep)


class FakeActivities:
    """Scriptable stand-in for ConfigFetchActivity."""

    def __init__(
        self,
        waits=None,
        *,
        default_wait=timedelta(hours=1),
        max_attempt=3,
        status=ConnectionStatus.ACTIVE,
    ):
        self.waits = list(waits or [])
        self.default_wait = default_wait
        self.max_attempt = max_attempt
        self.status = status
        self.requests = []
        self.refreshes = 0

    def get_time_to_wait(self, request):
        self.requests.append(request)
        wait = self.waits.pop(0) if self.waits else self.default_wait
        if isinstance(wait, Exception):
            raise wait
        return ScheduleRetrieverOutput(time_to_wait=wait)

    def get_max_attempt(self):
        if isinstance(self.max_attempt, Exception):
            raise self.max_attempt
        return MaxAttemptOutput(max_attempt=self.max_attempt)

    def get_status(self, connection_id):
        return self.status

    def get_source_id(self, connection_id):
        return None

    def get_source_config(self, source_id):
        return {}

    def is_workspace_tombstone(self, connection_id):
        return False

    def refresh_catalog(self):
        self.refreshes += 1
        return True


class ScriptedRunner:
    """Sync runner that replays scripted outputs and records its calls."""

    def __init__(self, outputs=None, *, block=False, default=None, unwind_delay=0):
        self.outputs = list(outputs or [])
        self.default = default or SyncOutput.success()
        self.block = block
        self.unwind_delay = unwind_delay
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.cancelled = 0

    async def run(self, sync_input):
        self.calls.append(sync_input)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            if self.block:
                await self.release.wait()
            await asyncio.sleep(0)
            return self.outputs.pop(0) if self.outputs else self.default
        except asyncio.CancelledError:
            self.cancelled += 1
            if self.unwind_delay:
                await asyncio.sleep(self.unwind_delay)
            raise
        finally:
            self.active -= 1


async def wait_until(predicate, timeout=2.0):
    """Poll until the predicate holds, failing the test after the timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def activities_factory():
    return FakeActivities


@pytest.fixture
def runner_factory():
    return ScriptedRunner


@pytest.fixture
def until():
    return wait_until
