"""Retry policy for idempotent platform requests.

Exponential backoff with optional jitter. The environment client applies it
to GET requests only; exports, imports, activations and pushes change state
on the platform and are never replayed.

Retry Timeline (default config):
- Attempt 1: Immediate
- Attempt 2: ~0.5s delay (with jitter)
- Attempt 3: ~1s delay (with jitter)

Example:
    >>> policy = RetryPolicy(RetryConfig(max_attempts=3))
    >>> @policy.wrap
    ... def fetch_project():
    ...     return client.get_project("CHURN")
"""

from __future__ import annotations

import functools
import random
import time
from collections.abc import Callable
from typing import ParamSpec, TypeVar

import structlog

from bundle_pipeline.errors import EnvironmentUnavailableError
from bundle_pipeline.schemas.config import RetryConfig

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


class RetryPolicy:
    """Retry policy with exponential backoff and jitter.

    Attributes:
        config: RetryConfig with max_attempts, delays, and jitter settings.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retryable_exceptions: tuple[type[Exception], ...] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Retry configuration. Uses defaults if None.
            retryable_exceptions: Exception types to retry on.
                Defaults to (EnvironmentUnavailableError,).
            sleep: Sleep function, injectable for tests.
        """
        self._config = config or RetryConfig()
        self._retryable_exceptions = retryable_exceptions or (EnvironmentUnavailableError,)
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        """Return the retry configuration."""
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay before the next attempt.

        delay = initial * (multiplier ^ attempt), capped at max_delay_ms,
        with ±25% jitter when enabled.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in seconds.
        """
        base_delay_ms = min(
            self._config.initial_delay_ms * (self._config.backoff_multiplier**attempt),
            self._config.max_delay_ms,
        )

        if self._config.jitter:
            jitter_range = base_delay_ms * 0.25
            base_delay_ms += random.uniform(-jitter_range, jitter_range)

        return max(base_delay_ms, 0.0) / 1000.0

    def should_retry(self, exception: Exception) -> bool:
        """Check whether an exception is retryable."""
        return isinstance(exception, self._retryable_exceptions)

    def call(self, func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
        """Call func, retrying retryable failures.

        Raises:
            The last exception once attempts are exhausted, or any
            non-retryable exception immediately.
        """
        attempts = self._config.max_attempts
        for attempt in range(attempts):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e) or attempt == attempts - 1:
                    if attempt > 0:
                        logger.warning("retry_exhausted", attempts=attempt + 1, error=str(e))
                    raise

                delay = self.calculate_delay(attempt)
                logger.debug(
                    "retry_attempt",
                    attempt=attempt + 1,
                    max_attempts=attempts,
                    delay_seconds=delay,
                    error=str(e),
                )
                self._sleep(delay)

        raise RuntimeError("Retry exhausted without exception")  # pragma: no cover

    def wrap(self, func: Callable[P, T]) -> Callable[P, T]:
        """Decorator form of call()."""

        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return self.call(func, *args, **kwargs)

        return wrapper


__all__ = ["RetryPolicy"]
