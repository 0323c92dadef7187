"""
Bounded retry policy with exponential backoff.

The policy is a plain value object: it computes delays and drives an async
operation, so the convergence driver and the discovery client can share it and
tests can exercise it without any network.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import TypeVar

from loguru import logger

from clusterform.datastructures.type_aliases import DurationSeconds

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Configuration and driver for bounded exponential backoff."""

    max_attempts: int = 3
    initial_delay_seconds: DurationSeconds = 0.1
    max_delay_seconds: DurationSeconds = 2.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1
    rng: random.Random = field(
        default_factory=random.Random, compare=False, repr=False
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be non-negative")
        if not 0.0 <= self.jitter_factor < 1.0:
            raise ValueError("jitter_factor must be in [0, 1)")

    def delay_for(self, retry_index: int) -> DurationSeconds:
        """Delay before retry number ``retry_index`` (0-based), jitter included."""
        delay = min(
            self.initial_delay_seconds * (self.backoff_multiplier**retry_index),
            self.max_delay_seconds,
        )
        if self.jitter_factor:
            jitter = self.rng.uniform(-self.jitter_factor, self.jitter_factor)
            delay *= 1 + jitter
        return max(0.0, delay)

    def delays(self) -> Iterator[DurationSeconds]:
        """Delays between consecutive attempts (``max_attempts - 1`` of them)."""
        for retry_index in range(self.max_attempts - 1):
            yield self.delay_for(retry_index)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: tuple[type[BaseException], ...],
        description: str = "operation",
    ) -> T:
        """Run ``operation`` until it succeeds or attempts are exhausted.

        Only exceptions listed in ``retry_on`` are retried; anything else
        propagates on first occurrence. The last retryable exception is
        re-raised when attempts run out.
        """
        delays = self.delays()
        attempt = 1
        while True:
            try:
                return await operation()
            except retry_on as e:
                delay = next(delays, None)
                if delay is None:
                    logger.warning(
                        "{} failed after {} attempts: {}",
                        description,
                        attempt,
                        e,
                    )
                    raise
                logger.debug(
                    "{} attempt {}/{} failed ({}), retrying in {:.3f}s",
                    description,
                    attempt,
                    self.max_attempts,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
                attempt += 1
