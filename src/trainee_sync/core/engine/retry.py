"""
Retry with exponential backoff for transient store failures.

Delay before retry ``n`` (0-indexed) is ``base_delay * multiplier ** n``,
capped at ``max_delay``, with ±``jitter_ratio`` random variance so workers
retrying the same outage do not hit the store in lockstep.

Example:
    >>> policy = RetryPolicy(max_attempts=3, base_delay=0.1)
    >>> value, attempts = policy.call(lambda: store.upsert(key, record, version))
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from typing import TypeVar

from trainee_sync.core.config.models import RetryConfig
from trainee_sync.core.store.backend import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, label: str, attempts: int, last_error: Exception) -> None:
        super().__init__(f"{label}: gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RetryPolicy:
    """
    Bounded retry budget.

    Attributes:
        max_attempts: Total attempts, including the first
        base_delay: Delay in seconds before the first retry
        multiplier: Exponential backoff multiplier
        max_delay: Upper bound on a single delay
        jitter: Whether to add random variance to delays
        jitter_ratio: Variance ratio (0.0-1.0)
        retryable: Exception types worth retrying; anything else propagates
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 0.2,
        multiplier: float = 2.0,
        max_delay: float = 10.0,
        jitter: bool = True,
        jitter_ratio: float = 0.2,
        retryable: tuple[type[Exception], ...] = (StoreUnavailableError,),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if not 0.0 <= jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be between 0.0 and 1.0")

        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self.jitter_ratio = jitter_ratio
        self.retryable = retryable
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: RetryConfig, **kwargs: object) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            multiplier=config.multiplier,
            max_delay=config.max_delay,
            jitter=config.jitter,
            jitter_ratio=config.jitter_ratio,
            **kwargs,  # type: ignore[arg-type]
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-indexed)."""
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter:
            variance = delay * self.jitter_ratio
            delay += random.uniform(-variance, variance)
        return max(0.0, delay)

    def call(self, func: Callable[[], T], label: str = "operation") -> tuple[T, int]:
        """
        Run ``func`` until it succeeds or the budget runs out.

        Returns:
            The result and the number of attempts it took

        Raises:
            RetryExhaustedError: If every attempt raised a retryable error
        """
        for attempt in range(self.max_attempts):
            try:
                return func(), attempt + 1
            except self.retryable as e:
                if attempt + 1 >= self.max_attempts:
                    logger.warning("%s: max attempts (%d) exceeded: %s", label, self.max_attempts, e)
                    raise RetryExhaustedError(label, attempt + 1, e) from e
                delay = self.calculate_delay(attempt)
                logger.warning(
                    "%s: attempt %d/%d failed, retrying in %.2fs: %s",
                    label,
                    attempt + 1,
                    self.max_attempts,
                    delay,
                    e,
                )
                self._sleep(delay)
        raise RuntimeError("Retry loop completed without success or exception")
