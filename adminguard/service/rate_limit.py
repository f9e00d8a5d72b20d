"""Per-key fixed-window rate limiting.

Each key owns one ``RateWindow`` and one lock. Admission checks and
increments under the key's lock only, so traffic on unrelated keys is
never serialized. Windows idle for several window durations are evicted
by ``purge_stale``, which the app runs periodically.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Protocol

from adminguard.logging import get_logger

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


class LimitClass(str, Enum):
    """Limit classes selected per route by the caller."""

    GENERAL = "general"
    ADMIN = "admin"


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_seconds: int


@dataclass
class RateWindow:
    count: int
    started_at: float
    last_seen: float
    window_seconds: float


class RateLimiter(Protocol):
    async def check(self, key: str, window_seconds: int, limit: int) -> RateDecision: ...

    async def admit(self, key: str, window_seconds: int, limit: int) -> bool: ...

    def purge_stale(self) -> int: ...


class FixedWindowRateLimiter:
    """In-process fixed-window limiter with per-key locking."""

    def __init__(
        self,
        *,
        stale_after_windows: int = 5,
        max_keys: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stale_after_windows = max(1, int(stale_after_windows))
        self._max_keys = max(1, int(max_keys))
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._locks: Dict[str, threading.Lock] = {}

    def __len__(self) -> int:
        return len(self._windows)

    def _lock_for(self, key: str) -> threading.Lock:
        # dict.setdefault is atomic, so concurrent callers agree on one lock
        return self._locks.setdefault(key, threading.Lock())

    async def check(self, key: str, window_seconds: int, limit: int) -> RateDecision:
        """Check and, when admitted, consume one slot for ``key``."""
        return self.check_sync(key, window_seconds, limit)

    async def admit(self, key: str, window_seconds: int, limit: int) -> bool:
        return self.check_sync(key, window_seconds, limit).allowed

    def check_sync(self, key: str, window_seconds: int, limit: int) -> RateDecision:
        if limit <= 0:
            return RateDecision(allowed=True, limit=limit, remaining=0, reset_seconds=0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = DEFAULT_WINDOW_SECONDS

        while True:
            lock = self._lock_for(key)
            with lock:
                # A concurrent purge may have retired this lock; retry with the live one
                if self._locks.get(key) is not lock:
                    continue
                return self._consume(key, float(window_seconds), limit)

    def _consume(self, key: str, window_seconds: float, limit: int) -> RateDecision:
        now = self._clock()
        window = self._windows.get(key)
        if window is None:
            if len(self._windows) >= self._max_keys:
                self.purge_stale(now=now)
            if len(self._windows) >= self._max_keys:
                logger.warning("rate_limit_key_capacity_reached", max_keys=self._max_keys)
                return RateDecision(
                    allowed=False, limit=limit, remaining=0, reset_seconds=int(window_seconds)
                )
            window = RateWindow(count=0, started_at=now, last_seen=now, window_seconds=window_seconds)
            self._windows[key] = window
        elif now - window.started_at >= window.window_seconds or window.window_seconds != window_seconds:
            window.count = 0
            window.started_at = now
            window.window_seconds = window_seconds

        window.last_seen = now
        reset_seconds = max(0, int(window.started_at + window.window_seconds - now + 0.999))
        if window.count >= limit:
            return RateDecision(
                allowed=False, limit=limit, remaining=0, reset_seconds=reset_seconds
            )
        window.count += 1
        return RateDecision(
            allowed=True,
            limit=limit,
            remaining=limit - window.count,
            reset_seconds=reset_seconds,
        )

    def purge_stale(self, now: float | None = None) -> int:
        """Evict windows idle for ``stale_after_windows`` window durations.

        Keys whose lock is currently held are skipped; the next sweep gets them.
        """
        now = self._clock() if now is None else now
        purged = 0
        for key in list(self._windows.keys()):
            window = self._windows.get(key)
            if window is None:
                continue
            if now - window.last_seen < window.window_seconds * self._stale_after_windows:
                continue
            lock = self._locks.get(key)
            if lock is None or not lock.acquire(blocking=False):
                continue
            try:
                window = self._windows.get(key)
                if window is None or now - window.last_seen < window.window_seconds * self._stale_after_windows:
                    continue
                del self._windows[key]
                # Retire the lock while still holding it so waiters re-resolve
                if self._locks.get(key) is lock:
                    del self._locks[key]
                purged += 1
            finally:
                lock.release()
        if purged:
            logger.debug("rate_limit_windows_purged", purged=purged, remaining=len(self._windows))
        return purged
