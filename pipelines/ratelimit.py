"""Request quotas and retry policies for upstream API calls.

``RateLimiter`` enforces a sliding-window quota shared by every caller in the
process, and ``with_retry`` turns any async callable into one that retries with
exponential backoff while a predicate over the raised error holds.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from pipelines.errors import is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class LimiterStats:
    remaining: int
    reset_in: float


class RateLimiter:
    """Sliding-window limiter allowing ``max_requests`` per ``window_seconds``."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._timestamps: deque[float] = deque()
        self._lock: asyncio.Lock | None = None
        self._lock_loop: asyncio.AbstractEventLoop | None = None

    def _cleanup(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def _get_lock(self) -> asyncio.Lock:
        # asyncio locks bind to the loop they first wait on; batch jobs may
        # run several event loops over the life of one process.
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    def try_acquire(self) -> bool:
        now = self._clock()
        self._cleanup(now)
        if len(self._timestamps) < self.max_requests:
            self._timestamps.append(now)
            return True
        return False

    async def acquire(self) -> None:
        """Block until a request slot is available, then take it."""

        async with self._get_lock():
            while not self.try_acquire():
                oldest = self._timestamps[0]
                wait = oldest + self.window_seconds - self._clock()
                await self._sleep(max(wait, 0.001))

    def stats(self) -> LimiterStats:
        now = self._clock()
        self._cleanup(now)
        remaining = max(0, self.max_requests - len(self._timestamps))
        reset_in = (
            max(0.0, self._timestamps[0] + self.window_seconds - now)
            if self._timestamps
            else 0.0
        )
        return LimiterStats(remaining=remaining, reset_in=reset_in)


def with_retry(
    *,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    should_retry: Callable[[BaseException], bool] = is_transient,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate an async callable with exponential-backoff retries.

    The wrapped call is attempted at most ``max_retries + 1`` times. Errors for
    which ``should_retry`` is false propagate immediately; once retries are
    exhausted the last error propagates unchanged.
    """

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(max_retries + 1),
                wait=wait_exponential(multiplier=initial_delay, max=max_delay),
                retry=retry_if_exception(should_retry),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            )
            return await retrying(fn, *args, **kwargs)

        return wrapper

    return decorator


def with_rate_limit(
    fn: Callable[..., Awaitable[T]], limiter: RateLimiter
) -> Callable[..., Awaitable[T]]:
    """Wrap ``fn`` so every call first takes a slot from ``limiter``."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        await limiter.acquire()
        return await fn(*args, **kwargs)

    return wrapper


_SHARED_LIMITERS: dict[str, RateLimiter] = {}


def get_shared_limiter(name: str, max_requests: int, window_seconds: float) -> RateLimiter:
    """Return the process-wide limiter for an upstream, creating it on first use."""

    limiter = _SHARED_LIMITERS.get(name)
    if limiter is None:
        limiter = RateLimiter(max_requests, window_seconds)
        _SHARED_LIMITERS[name] = limiter
    return limiter


__all__ = [
    "RateLimiter",
    "LimiterStats",
    "with_retry",
    "with_rate_limit",
    "get_shared_limiter",
]
