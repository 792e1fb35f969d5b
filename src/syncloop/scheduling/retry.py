"""Retry policy applied to every activity call."""

import asyncio
import inspect
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from syncloop.config import SyncloopConfig
from syncloop.error_handling import ActivityRetriesExhausted

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff curve with proportional jitter."""

    initial: float
    coefficient: float = 2.0
    maximum: float = 60.0
    jitter: float = 0.0

    @classmethod
    def for_activities(cls, config: SyncloopConfig) -> "BackoffPolicy":
        return cls(
            initial=config.activity_initial_interval,
            coefficient=config.activity_backoff_coefficient,
            maximum=config.activity_max_interval,
            jitter=config.activity_jitter,
        )

    @classmethod
    def for_attempts(cls, config: SyncloopConfig) -> "BackoffPolicy":
        return cls(
            initial=config.attempt_backoff_initial,
            coefficient=config.attempt_backoff_coefficient,
            maximum=config.attempt_backoff_max,
            jitter=config.attempt_backoff_jitter,
        )

    def delay(self, retry_number: int, rng: random.Random | None = None) -> float:
        """Seconds to wait before retry ``retry_number`` (1-based)."""
        base = min(
            self.initial * self.coefficient ** max(retry_number - 1, 0),
            self.maximum,
        )
        if self.jitter <= 0 or base <= 0:
            return base
        spread = base * self.jitter
        return max(0.0, base + (rng or random).uniform(-spread, spread))


@dataclass
class RetryPolicy:
    """Calls a function until it succeeds or the retries run out.

    Errors carrying ``recoverable = False`` are raised immediately. Anything
    else is retried ``max_retries`` times, after which ActivityRetriesExhausted
    is raised with the last error attached. ``asyncio.CancelledError`` is never
    retried.
    """

    max_retries: int
    backoff: BackoffPolicy
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def from_config(cls, config: SyncloopConfig, **kwargs: Any) -> "RetryPolicy":
        return cls(
            max_retries=config.activity_max_retries,
            backoff=BackoffPolicy.for_activities(config),
            **kwargs,
        )

    async def call(
        self,
        name: str,
        func: Callable[..., T | Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        attempts = 0
        while True:
            attempts += 1
            try:
                result = func(*args, **kwargs)
                if inspect.isawaitable(result):
                    result = await result
                return result
            except Exception as e:
                if getattr(e, "recoverable", True) is False:
                    raise
                if attempts > self.max_retries:
                    logger.error("%s failed after %s attempts: %s", name, attempts, e)
                    raise ActivityRetriesExhausted(
                        name,
                        attempts,
                        details=str(e),
                        original_error=e,
                    ) from e
                delay = self.backoff.delay(attempts, self.rng)
                logger.warning(
                    "%s failed (attempt %s/%s), retrying in %.1fs: %s",
                    name,
                    attempts,
                    self.max_retries + 1,
                    delay,
                    e,
                )
                await self.sleep(delay)
