"""Rate limiting helpers for outbound mail and inbound API writes."""
from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Callable, Deque, Dict, Tuple

from fastapi import HTTPException, status

from newsletter_desk.utils.logger import get_logger

logger = get_logger(__name__)

WINDOW_SECONDS = 60.0


class SendRateLimiter:
    """Sliding 60-second window over recent sends.

    ``acquire`` blocks the calling thread when the window is full, sleeping until
    the oldest send in the window expires. Clock and sleep are injectable so the
    behaviour can be driven deterministically.
    """

    def __init__(
        self,
        emails_per_minute: int,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        window_seconds: float = WINDOW_SECONDS,
    ) -> None:
        if emails_per_minute < 1:
            raise ValueError("emails_per_minute must be at least 1")
        self.emails_per_minute = emails_per_minute
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._sent_at: Deque[float] = deque()

    def _evict(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._sent_at and self._sent_at[0] <= horizon:
            self._sent_at.popleft()

    @property
    def in_window(self) -> int:
        self._evict(self._clock())
        return len(self._sent_at)

    def acquire(self) -> float:
        """Wait for a free slot, record the send and return the seconds waited."""

        now = self._clock()
        self._evict(now)
        waited = 0.0
        if len(self._sent_at) >= self.emails_per_minute:
            waited = self.window_seconds - (now - self._sent_at[0])
            if waited > 0:
                logger.info("Rate limit reached, waiting %.1f seconds", waited)
                self._sleep(waited)
            else:
                waited = 0.0
            now = self._clock()
            self._evict(now)
        self._sent_at.append(now)
        return waited


class RequestRateLimiter:
    """Naive per-client rate limiter for API writes implemented with an in-memory bucket."""

    def __init__(self, max_per_minute: int, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_per_minute = max_per_minute
        self._clock = clock
        self._allowance: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    async def check(self, key: str) -> None:
        now = self._clock()
        async with self._lock:
            current, last_refill = self._allowance.get(key, (self.max_per_minute, now))
            elapsed = now - last_refill
            refill = int(elapsed / WINDOW_SECONDS * self.max_per_minute)
            if refill > 0:
                current = min(self.max_per_minute, current + refill)
                last_refill = now
            if current <= 0:
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail="Rate limit exceeded. Please try again shortly.",
                )
            self._allowance[key] = (current - 1, last_refill)


def create_rate_limiter(max_per_minute: int) -> RequestRateLimiter:
    return RequestRateLimiter(max_per_minute=max_per_minute)
