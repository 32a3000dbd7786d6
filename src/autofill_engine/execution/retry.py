"""Retry policy for URL jobs."""

import asyncio
from dataclasses import dataclass
from typing import Optional

from autofill_engine.core.errors import ErrorKind, is_retryable
from autofill_engine.core.models import BackoffStrategy, ExecutionConfig


@dataclass(frozen=True)
class RetryPolicy:
    """
    Decides whether and when a failed attempt is retried.

    A job gets ``retry_attempts + 1`` attempts in total. Rate-limit errors
    always back off exponentially regardless of the configured strategy.
    """
    retry_attempts: int = 3
    backoff: BackoffStrategy = BackoffStrategy.FIXED
    base_delay: float = 1.0
    max_delay: float = 60.0
    captcha_solver: bool = False

    @classmethod
    def from_config(cls, config: ExecutionConfig) -> "RetryPolicy":
        return cls(
            retry_attempts=config.retry_attempts,
            backoff=config.retry_backoff,
            base_delay=config.retry_base_delay,
            captcha_solver=config.captcha_solver,
        )

    @property
    def max_attempts(self) -> int:
        return self.retry_attempts + 1

    def should_retry(self, kind: ErrorKind, attempt: int) -> bool:
        """Whether to retry after ``attempt`` (1-based) failed with ``kind``."""
        if attempt >= self.max_attempts:
            return False
        return is_retryable(kind, captcha_solver=self.captcha_solver)

    def delay(self, attempt: int, kind: Optional[ErrorKind] = None) -> float:
        """Seconds to wait before the attempt following ``attempt``."""
        exponential = self.backoff is BackoffStrategy.EXPONENTIAL or kind is ErrorKind.RATE_LIMIT_EXCEEDED
        if exponential:
            return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return min(self.base_delay, self.max_delay)

    async def sleep(self, attempt: int, kind: Optional[ErrorKind], cancel_event: asyncio.Event) -> bool:
        """
        Wait out the backoff delay.

        Returns:
            False if ``cancel_event`` fired during the wait
        """
        delay = self.delay(attempt, kind)
        if delay <= 0:
            return not cancel_event.is_set()
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False
