from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Iterable, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")


class Throttle:
    """Spaces out calls to an external API.

    Enforces a minimum delay between calls and exponential backoff
    after the remote side reports rate limiting.
    """

    def __init__(
        self,
        min_delay: float = 0.3,
        max_delay: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._lock = asyncio.Lock()
        self._min_delay = min_delay
        self._current_delay = min_delay
        self._max_delay = max_delay
        self._sleep = sleep
        self._clock = clock
        self._last_call: float | None = None

    @property
    def delay(self) -> float:
        return self._current_delay

    async def acquire(self) -> None:
        """Wait until the current delay has elapsed since the last call."""
        async with self._lock:
            if self._last_call is not None:
                wait = self._current_delay - (self._clock() - self._last_call)
                if wait > 0:
                    log.debug("Throttle: waiting %.2fs", wait)
                    await self._sleep(wait)
            self._last_call = self._clock()

    def backoff(self) -> None:
        """Double the current delay (up to max) after a rate limit response."""
        self._current_delay = min(max(self._current_delay * 2, 1.0), self._max_delay)
        log.warning("Rate limited, backing off to %.1fs between requests", self._current_delay)

    def reset(self) -> None:
        self._current_delay = self._min_delay


async def throttled(items: Iterable[T], throttle: Throttle) -> AsyncIterator[T]:
    """Yield *items* one at a time, acquiring *throttle* before each."""
    for item in items:
        await throttle.acquire()
        yield item
