"""Retry policy for provider calls."""

import asyncio
from typing import Any, Awaitable, Callable

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from mls_geo.config import settings
from mls_geo.errors import ProviderError, RateLimitError

logger = structlog.get_logger()


class RetryPolicy:
    """
    Bounded exponential backoff around one provider call.

    The wait before attempt n+1 is ``base * multiplier ** (n - 1)`` capped at
    ``max_wait``, unless the provider sent a Retry-After, which is used as is.
    Each attempt is limited to ``attempt_timeout`` seconds; a timeout counts
    as a ProviderError. Once the budget is spent the last error is re-raised.
    """

    def __init__(
        self,
        max_attempts: int,
        base_delay_seconds: float,
        multiplier: float = 2.0,
        attempt_timeout: float | None = None,
        max_wait: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay_seconds = base_delay_seconds
        self.multiplier = multiplier
        self.attempt_timeout = attempt_timeout or settings.provider_timeout_seconds
        self.max_wait = max_wait or settings.retry_max_wait_seconds
        self._sleep = sleep

    def compute_wait(self, attempt_number: int, error: BaseException | None) -> float:
        if isinstance(error, RateLimitError) and error.retry_after is not None:
            return error.retry_after
        delay = self.base_delay_seconds * self.multiplier ** (attempt_number - 1)
        return min(delay, self.max_wait)

    def _wait(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        return self.compute_wait(retry_state.attempt_number, error)

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Provider call failed, retrying",
            provider=getattr(error, "provider", None),
            attempt=retry_state.attempt_number,
            max_attempts=self.max_attempts,
            wait=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(error),
        )

    async def _attempt(self, fn: Callable[[], Awaitable[Any]], name: str | None) -> Any:
        try:
            return await asyncio.wait_for(fn(), timeout=self.attempt_timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"timed out after {self.attempt_timeout:g}s", provider=name
            ) from e

    async def call(self, fn: Callable[[], Awaitable[Any]], name: str | None = None) -> Any:
        """Run ``fn`` until it succeeds or the attempt budget is spent."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(ProviderError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(self._attempt, fn, name)
