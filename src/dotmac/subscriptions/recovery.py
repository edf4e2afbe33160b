"""
Retry helpers for optimistic-concurrency writes.

A write that loses the version race raises :class:`StaleVersionError`;
:class:`ConflictRetry` re-runs the whole read/compute/write attempt with
backoff and converts exhaustion into :class:`ConflictError`.
"""

import asyncio
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from dotmac.subscriptions.exceptions import ConflictError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StaleVersionError(Exception):
    """The record changed between read and write."""

    def __init__(self, subscription_id: str, expected_version: int) -> None:
        self.subscription_id = subscription_id
        self.expected_version = expected_version
        super().__init__(
            f"Subscription {subscription_id} is no longer at version {expected_version}"
        )


class RetryStrategy(ABC):
    """Base class for retry delay strategies."""

    @abstractmethod
    def get_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""


class ExponentialBackoff(RetryStrategy):
    def __init__(self, base_delay: float = 0.05, max_delay: float = 2.0, jitter: bool = True):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def get_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if self.jitter:
            # Spread concurrent writers between 0.5x and 1.5x
            delay *= 0.5 + random.random()
        return delay


class LinearBackoff(RetryStrategy):
    def __init__(self, delay: float = 0.05, increment: float = 0.05):
        self.delay = delay
        self.increment = increment

    def get_delay(self, attempt: int) -> float:
        return self.delay + attempt * self.increment


class ConflictRetry:
    """
    Re-run an optimistic read/compute/write attempt until it wins.

    ``max_retries`` counts retries after the first attempt, so the operation
    runs at most ``max_retries + 1`` times.
    """

    def __init__(
        self,
        max_retries: int = 3,
        strategy: RetryStrategy | None = None,
        on_retry: Callable[[int, StaleVersionError], Awaitable[None]] | None = None,
    ):
        self.max_retries = max_retries
        self.strategy = strategy or ExponentialBackoff()
        self.on_retry = on_retry

    async def execute(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        last_error: StaleVersionError | None = None

        for attempt in range(self.max_retries + 1):
            try:
                return await func(*args, **kwargs)
            except StaleVersionError as e:
                last_error = e
                if attempt >= self.max_retries:
                    break

                delay = self.strategy.get_delay(attempt)
                logger.info(
                    "Version conflict, retrying",
                    subscription_id=e.subscription_id,
                    expected_version=e.expected_version,
                    attempt=attempt + 1,
                    delay=delay,
                )
                if self.on_retry:
                    await self.on_retry(attempt, e)
                await asyncio.sleep(delay)

        assert last_error is not None
        attempts = self.max_retries + 1
        logger.warning(
            "Version conflict retries exhausted",
            subscription_id=last_error.subscription_id,
            attempts=attempts,
        )
        raise ConflictError(
            f"Subscription {last_error.subscription_id} was modified concurrently "
            f"{attempts} times; giving up",
            subscription_id=last_error.subscription_id,
            attempts=attempts,
        ) from last_error


__all__ = [
    "StaleVersionError",
    "RetryStrategy",
    "ExponentialBackoff",
    "LinearBackoff",
    "ConflictRetry",
]
