"""
Throttling — API rate limiting and per-address refresh guards
==============================================================

``RateLimiter`` keeps outbound API traffic under provider limits.
``RefreshGuard`` keeps a caller from re-running the whole pipeline for the
same address too often, and from hammering an upstream right after it
failed. Both are plain objects owned by whoever issues the requests.
"""

import asyncio
import time
from typing import Callable, Dict


class RateLimiter:
    """Token-bucket rate limiter to respect API limits.

    CWE-770: Allocation of Resources Without Limits or Throttling.
    """

    def __init__(self, max_requests: int, period_seconds: float):
        self._max = max_requests
        self._period = period_seconds
        self._timestamps: list[float] = []

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        now = time.monotonic()
        # Purge timestamps outside the current window
        self._timestamps = [t for t in self._timestamps if now - t < self._period]
        if len(self._timestamps) >= self._max:
            # Wait until the oldest request expires
            sleep_time = self._period - (now - self._timestamps[0]) + 0.1
            if sleep_time > 0:
                await asyncio.sleep(sleep_time)
        self._timestamps.append(time.monotonic())


class RefreshGuard:
    """
    Per-address cooldown and failure backoff.

    Usage:
        guard = RefreshGuard(cooldown_seconds=15, fail_backoff_seconds=30)
        if guard.allow(addr):
            guard.record_attempt(addr)
            try:
                ...
            except Exception:
                guard.record_failure(addr)
                raise
    """

    def __init__(
        self,
        cooldown_seconds: float,
        fail_backoff_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cooldown_seconds = cooldown_seconds
        self.fail_backoff_seconds = fail_backoff_seconds
        self._clock = clock
        self._last_attempt: Dict[str, float] = {}
        self._blocked_until: Dict[str, float] = {}

    @staticmethod
    def _key(address: str) -> str:
        return address.lower()

    def remaining(self, address: str) -> float:
        """Seconds until a refresh for ``address`` is allowed (0 if allowed now)."""
        key = self._key(address)
        now = self._clock()
        wait = 0.0
        last = self._last_attempt.get(key)
        if last is not None:
            wait = max(wait, self.cooldown_seconds - (now - last))
        blocked = self._blocked_until.get(key)
        if blocked is not None:
            wait = max(wait, blocked - now)
        return wait

    def allow(self, address: str) -> bool:
        return self.remaining(address) <= 0

    def record_attempt(self, address: str) -> None:
        self._last_attempt[self._key(address)] = self._clock()

    def record_failure(self, address: str) -> None:
        self._blocked_until[self._key(address)] = self._clock() + self.fail_backoff_seconds

    def reset(self, address: str) -> None:
        key = self._key(address)
        self._last_attempt.pop(key, None)
        self._blocked_until.pop(key, None)
