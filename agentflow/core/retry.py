from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from . import metrics
from .config import RetrySettings
from .logging import get_logger

logger = get_logger(name=__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[None]]

# Upstream failures may arrive as plain exceptions rather than HTTP responses,
# so classification works on the error text.
RATE_LIMIT_SIGNATURES = ("429", "rate limit", "resource_exhausted")


def is_rate_limited(error: BaseException) -> bool:
    message = str(error).lower()
    return any(signature in message for signature in RATE_LIMIT_SIGNATURES)


@dataclass(slots=True)
class RetryState:
    """Snapshot of one retry decision; ``attempt`` is 0-based."""

    attempt: int = 0
    delay: float = 0.0
    last_error: BaseException | None = None

    @classmethod
    def from_call_state(cls, state: RetryCallState) -> "RetryState":
        error = state.outcome.exception() if state.outcome is not None else None
        delay = state.next_action.sleep if state.next_action is not None else 0.0
        return cls(attempt=state.attempt_number - 1, delay=delay, last_error=error)


class RetryPolicy:
    """Exponential backoff for rate-limited upstream calls.

    Only errors matching :data:`RATE_LIMIT_SIGNATURES` are retried. Everything
    else propagates after the first invocation, and once ``max_attempts`` is
    reached the last error propagates unchanged.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        multiplier: float = 2.0,
        sleep: SleepFunc | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.multiplier = multiplier
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: RetrySettings, *, sleep: SleepFunc | None = None) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay_seconds,
            multiplier=settings.backoff_multiplier,
            sleep=sleep,
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given 0-based failed attempt."""
        return self.base_delay * (self.multiplier**attempt)

    async def run(self, work: Callable[[], Awaitable[T]], *, operation: str = "upstream") -> T:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, exp_base=self.multiplier),
            retry=retry_if_exception(is_rate_limited),
            sleep=self._pause,
            before_sleep=lambda call_state: self._announce(RetryState.from_call_state(call_state), operation),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                result = await work()
        return result

    def _announce(self, state: RetryState, operation: str) -> None:
        delay_ms = int(round(state.delay * 1000))
        logger.warning(
            "upstream_rate_limited",
            message=f"Retrying in {delay_ms}ms... (Attempt {state.attempt + 1}/{self.max_attempts})",
            operation=operation,
            delay_ms=delay_ms,
            attempt=state.attempt + 1,
            max_attempts=self.max_attempts,
            error=str(state.last_error),
        )
        metrics.increment_upstream_retry(operation=operation)

    async def _pause(self, delay: float) -> None:
        if self._sleep is not None:
            await self._sleep(delay)
            return
        await asyncio.sleep(delay)


__all__ = ["RATE_LIMIT_SIGNATURES", "RetryPolicy", "RetryState", "is_rate_limited"]
