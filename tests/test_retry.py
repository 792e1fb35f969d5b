"""Tests for backoff curves and the activity retry policy."""

import asyncio
import random

import pytest

from syncloop.config import SyncloopConfig
from syncloop.error_handling import (
    ActivityRetriesExhausted,
    ScheduleComputationFailure,
    TransientActivityFailure,
)
from syncloop.scheduling.retry import BackoffPolicy, RetryPolicy


class TestBackoffPolicy:
    def test_exponential_growth_is_capped(self):
        policy = BackoffPolicy(initial=1, coefficient=2, maximum=5)

        assert [policy.delay(n) for n in range(1, 6)] == [1, 2, 4, 5, 5]

    def test_jitter_stays_within_spread(self):
        policy = BackoffPolicy(initial=10, coefficient=1, maximum=10, jitter=0.2)
        rng = random.Random(42)

        delays = [policy.delay(1, rng) for _ in range(50)]

        assert all(8 <= delay <= 12 for delay in delays)
        assert len(set(delays)) > 1

    def test_policies_from_config(self):
        config = SyncloopConfig()

        attempts = BackoffPolicy.for_attempts(config)
        activities = BackoffPolicy.for_activities(config)

        assert attempts.initial == 30
        assert attempts.maximum == 600
        assert activities.initial == 1
        assert activities.jitter == 0.2


class TestRetryPolicy:
    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def policy(self, sleeps):
        async def record_sleep(delay):
            sleeps.append(delay)

        return RetryPolicy(
            max_retries=3,
            backoff=BackoffPolicy(initial=1, coefficient=2, maximum=10),
            sleep=record_sleep,
        )

    @pytest.mark.asyncio
    async def test_returns_result_of_sync_function(self, policy):
        assert await policy.call("lookup", lambda x: x * 2, 21) == 42

    @pytest.mark.asyncio
    async def test_awaits_async_function(self, policy):
        async def lookup():
            return "ok"

        assert await policy.call("lookup", lookup) == "ok"

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, policy, sleeps):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TransientActivityFailure("flaky", "not yet")
            return "done"

        assert await policy.call("flaky", flaky) == "done"
        assert len(calls) == 3
        assert sleeps == [1, 2]

    @pytest.mark.asyncio
    async def test_raises_when_retries_run_out(self, policy, sleeps):
        def broken():
            raise ConnectionError("down")

        with pytest.raises(ActivityRetriesExhausted) as exc_info:
            await policy.call("broken", broken)

        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.original_error, ConnectionError)
        assert len(sleeps) == 3

    @pytest.mark.asyncio
    async def test_non_recoverable_errors_are_not_retried(self, policy, sleeps):
        calls = []

        def unschedulable():
            calls.append(1)
            raise ScheduleComputationFailure("conn", "bad cron")

        with pytest.raises(ScheduleComputationFailure):
            await policy.call("get_time_to_wait", unschedulable)

        assert len(calls) == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_cancellation_is_not_retried(self, policy):
        async def cancelled():
            raise asyncio.CancelledError

        with pytest.raises(asyncio.CancelledError):
            await policy.call("cancelled", cancelled)
