import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import NON_RETRYABLE
from .log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

WINDOW_SECONDS = 60.0


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "retry.scheduled",
        attempt=state.attempt_number,
        delay=round(state.next_action.sleep, 3) if state.next_action else None,
        error=str(exc),
    )


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    retry_on: type[BaseException] | tuple[type[BaseException], ...] = Exception,
) -> T:
    """Await fn(), retrying failures with exponential backoff.

    At most max_attempts calls are made; the n-th retry waits
    base_delay * 2**(n-1). Only retry_on errors are retried, and
    data-integrity and validation errors never are. The last error is
    re-raised when attempts run out.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay, exp_base=2, min=0),
        retry=retry_if_exception_type(retry_on) & retry_if_not_exception_type(NON_RETRYABLE),
        before_sleep=_log_retry,
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await fn()
    raise AssertionError("unreachable")  # pragma: no cover


class RateLimiter:
    """Sliding-window throttle: at most max_per_minute admissions in any 60s."""

    def __init__(
        self,
        max_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_per_minute <= 0:
            raise ValueError("max_per_minute must be positive")
        self.max_per_minute = max_per_minute
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= WINDOW_SECONDS:
            self._timestamps.popleft()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                self._prune(now)
                if len(self._timestamps) < self.max_per_minute:
                    self._timestamps.append(now)
                    return
                wait = self._timestamps[0] + WINDOW_SECONDS - now
                logger.debug("rate_limiter.waiting", seconds=round(wait, 3), window=len(self._timestamps))
                await self._sleep(wait)

    @property
    def in_window(self) -> int:
        self._prune(self._clock())
        return len(self._timestamps)

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, *exc) -> None:
        return None
