"""Per-session fixed-window rate limiting for the web chat.

Counters live in process memory; each key gets ``limit`` hits per window,
after which ``check`` refuses until the window resets.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from threading import Lock

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_SECONDS = 60


class FixedWindowRateLimiter:
    def __init__(
        self,
        limit: int,
        window_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        # key -> (count, reset_time)
        self._windows: dict[str, tuple[int, float]] = {}
        self._lock = Lock()
        self._last_cleanup = 0.0

    @property
    def limit(self) -> int:
        return self._limit

    def _cleanup(self, now: float) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL_SECONDS:
            return
        expired = [k for k, (_, reset_time) in self._windows.items() if now >= reset_time]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("Cleaned up %d expired rate limit windows", len(expired))
        self._last_cleanup = now

    def check(self, key: str) -> tuple[bool, int, int]:
        """Count a hit for *key*.

        Returns:
            ``(is_allowed, current_count, seconds_until_reset)``
        """
        now = self._clock()
        with self._lock:
            self._cleanup(now)
            count, reset_time = self._windows.get(key, (0, now + self._window))
            if now >= reset_time:
                count, reset_time = 0, now + self._window

            if count >= self._limit:
                retry_after = max(int(reset_time - now), 0)
                logger.warning("Rate limit exceeded for %s (%d/%d)", key, count, self._limit)
                return False, count, retry_after

            count += 1
            self._windows[key] = (count, reset_time)
            return True, count, int(reset_time - now)
