"""Retry for provider calls, built on Tenacity.

Only errors whose kind is on the allow-list are retried; anything else is
raised on the first failure. The delay before attempt ``n`` (``n >= 2``) is
``base_delay * backoff_multiplier ** (n - 2)``, capped at ``max_delay``.

Example:
    >>> retry = RetryMechanism(RetryConfig(max_attempts=3, base_delay=0.1))
    >>> value = await retry.execute(lambda: provider.resolve_boolean(key, False, ctx), key)
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from flageval.core.config import DEFAULT_RETRYABLE_ERRORS
from flageval.core.errors import error_kind

if TYPE_CHECKING:
    from flageval.core.config import RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        retryable_errors: Optional[Iterable[str]] = None,
        log_level: int = logging.DEBUG,
    ):
        """Initialize retry configuration.

        Args:
            max_attempts: Total attempts, including the first call.
            base_delay: Delay before the second attempt (seconds).
            max_delay: Upper bound for any single delay (seconds).
            backoff_multiplier: Growth factor between consecutive delays.
            retryable_errors: Error codes or exception class names to retry on.
            log_level: Log level for retry attempts.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.retryable_errors = frozenset(
            DEFAULT_RETRYABLE_ERRORS if retryable_errors is None else retryable_errors
        )
        self.log_level = log_level

    @classmethod
    def from_settings(cls, settings: "RetrySettings") -> "RetryConfig":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_ms / 1000,
            max_delay=settings.max_delay_ms / 1000,
            backoff_multiplier=settings.backoff_multiplier,
            retryable_errors=settings.retryable_errors,
        )


class RetryMechanism:
    """Exponential backoff retry with an error-kind allow-list."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config or RetryConfig()
        self._sleep = sleep

    def is_retryable(self, error: BaseException) -> bool:
        allowed = self.config.retryable_errors
        return error_kind(error) in allowed or type(error).__name__ in allowed

    def calculate_delay(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (1-based; the first attempt never waits)."""
        if attempt <= 1:
            return 0.0
        delay = self.config.base_delay * (self.config.backoff_multiplier ** (attempt - 2))
        return min(delay, self.config.max_delay)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        name: str = "operation",
        max_attempts: Optional[int] = None,
    ) -> T:
        """Run ``operation`` until it succeeds, fails with a non-retryable
        error, or ``max_attempts`` is exhausted. The last error is re-raised.

        ``max_attempts`` may only lower the configured limit; it never drops below one.
        """
        limit = self.config.max_attempts
        if max_attempts is not None:
            limit = max(1, min(limit, max_attempts))
        retrying = AsyncRetrying(
            stop=stop_after_attempt(limit),
            wait=wait_exponential(
                multiplier=self.config.base_delay,
                exp_base=self.config.backoff_multiplier,
                min=0,
                max=self.config.max_delay,
            ),
            retry=retry_if_exception(self.is_retryable),
            before_sleep=before_sleep_log(logger, self.config.log_level),
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    result = await operation()
        except Exception as exc:
            attempts = retrying.statistics.get("attempt_number", 1)
            logger.debug(
                f"{name} failed after {attempts} attempt(s): {type(exc).__name__}: {exc}"
            )
            raise
        return result


__all__ = ["RetryConfig", "RetryMechanism"]
