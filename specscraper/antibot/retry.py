"""Retry policy and the bounded retry loop used by network-facing code."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ..errors import ScraperError
from ..models import Event, retry_event

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Attempt budget plus delay schedule.

    ``backoff_multiplier == 1.0`` gives a fixed delay; anything larger gives
    capped exponential backoff.
    """

    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff: float = 60.0

    @classmethod
    def fixed(cls, max_attempts: int, delay: float) -> RetryPolicy:
        return cls(max_attempts=max_attempts, backoff_base=delay, backoff_multiplier=1.0, max_backoff=delay)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        delay = self.backoff_base * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_backoff)


@dataclass
class RetryResult(Generic[T]):
    """Outcome of a retried operation: either ``value`` or ``error``."""

    value: Optional[T] = None
    error: Optional[Exception] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ScraperError) and exc.retryable


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    on_retry: Optional[Callable[[Event], None]] = None,
    retryable: Callable[[BaseException], bool] = is_retryable,
    label: str = "operation",
) -> RetryResult[T]:
    """Run ``operation`` until it succeeds, fails permanently or exhausts the budget.

    One retry event is reported per failed attempt that is followed by another
    attempt. The last error is returned, never raised.
    """
    attempts = 0

    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        LOGGER.warning(
            "%s failed (attempt %d/%d), retrying in %.1fs: %s",
            label,
            state.attempt_number,
            policy.max_attempts,
            delay,
            exc,
        )
        if on_retry is not None:
            on_retry(retry_event(state.attempt_number, policy.max_attempts, delay, str(exc)))

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=lambda state: policy.delay_for(state.attempt_number),
        retry=retry_if_exception(retryable),
        before_sleep=_before_sleep,
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                attempts = attempt.retry_state.attempt_number
                value = await operation()
    except Exception as exc:
        LOGGER.error("%s failed after %d attempt(s): %s", label, attempts, exc)
        return RetryResult(error=exc, attempts=attempts)

    return RetryResult(value=value, attempts=attempts)
