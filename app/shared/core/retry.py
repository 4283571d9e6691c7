"""
Retry policies with exponential or linear backoff.

One generic ``RetryPolicy`` (max attempts, backoff schedule, retryable
predicate) is shared by every notification channel; each channel only
supplies its own predicate.
"""

import asyncio
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt

from app.shared.core.exceptions import is_retryable

logger = structlog.get_logger()
T = TypeVar("T")


class BackoffKind(str, Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


def compute_backoff_seconds(
    kind: BackoffKind | str,
    base_seconds: float,
    attempt: int,
    max_seconds: Optional[float] = None,
) -> float:
    """Delay before the retry that follows failed attempt number ``attempt`` (1-based)."""
    attempt = max(1, int(attempt))
    if BackoffKind(kind) == BackoffKind.LINEAR:
        delay = base_seconds * attempt
    else:
        delay = base_seconds * (2 ** (attempt - 1))
    if max_seconds is not None:
        delay = min(delay, max_seconds)
    return max(0.0, delay)


@dataclass(slots=True)
class RetryOutcome(Generic[T]):
    attempts: int
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


async def _sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Attempt budget, backoff schedule and retryable-error predicate."""

    name: str
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: Optional[float] = 30.0
    backoff: BackoffKind = BackoffKind.EXPONENTIAL
    jitter: float = 0.0
    is_retryable: Callable[[BaseException], bool] = field(default=is_retryable)

    def delay_for(self, attempt: int) -> float:
        delay = compute_backoff_seconds(
            self.backoff, self.base_delay, attempt, self.max_delay
        )
        if self.jitter:
            delay += delay * self.jitter * (random.random() * 2 - 1)
        return max(0.0, delay)

    def _before_sleep(self, retry_state: Any) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "operation_failed_will_retry",
            policy=self.name,
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            delay_seconds=round(self.delay_for(retry_state.attempt_number), 3),
            error=str(exc),
            error_type=type(exc).__name__,
        )

    async def run(self, operation: Callable[[], Awaitable[T]]) -> RetryOutcome[T]:
        """Run ``operation`` until it succeeds, fails non-retryably, or the budget runs out.

        Never raises for ``Exception``; the last error is returned on the outcome.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=lambda rs: self.delay_for(rs.attempt_number),
            retry=retry_if_exception(self.is_retryable),
            before_sleep=self._before_sleep,
            sleep=_sleep,
            reraise=True,
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    value = await operation()
        except Exception as exc:
            logger.error(
                "operation_failed",
                policy=self.name,
                attempts=attempts,
                retryable=self.is_retryable(exc),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return RetryOutcome(attempts=attempts, error=exc)

        if attempts > 1:
            logger.info(
                "operation_succeeded_after_retry",
                policy=self.name,
                attempt=attempts,
                max_attempts=self.max_attempts,
            )
        return RetryOutcome(attempts=attempts, value=value)

    def with_predicate(self, predicate: Callable[[BaseException], bool]) -> "RetryPolicy":
        return RetryPolicy(
            name=self.name,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            backoff=self.backoff,
            jitter=self.jitter,
            is_retryable=predicate,
        )


def notification_policy(name: str, settings: Any | None = None) -> RetryPolicy:
    """Default channel policy: exponential 2^n seconds, three attempts."""
    if settings is None:
        from app.shared.core.config import get_settings

        settings = get_settings()
    return RetryPolicy(
        name=name,
        max_attempts=int(settings.NOTIFICATION_MAX_ATTEMPTS),
        base_delay=float(settings.NOTIFICATION_BACKOFF_BASE_SECONDS),
        max_delay=float(settings.NOTIFICATION_BACKOFF_MAX_SECONDS),
        backoff=BackoffKind.EXPONENTIAL,
    )
