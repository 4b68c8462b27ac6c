"""
Failed-login throttling.

A fixed window per key (client address or user): after ``max_attempts``
failures inside ``window_seconds`` the key is blocked for ``block_seconds``.
The limiter is an ordinary object owned by the application, so tests build
their own with a fake clock.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    limited: bool
    retry_after: Optional[int] = None


@dataclass
class _Entry:
    attempts: int
    first_attempt: float
    blocked_until: Optional[float] = None


class LoginRateLimiter:

    def __init__(self, max_attempts=5, window_seconds=15 * 60, block_seconds=30 * 60, clock=time.monotonic):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.block_seconds = block_seconds
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def is_rate_limited(self, key):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return RateLimitResult(False)

            now = self._clock()

            if entry.blocked_until is not None and now < entry.blocked_until:
                return RateLimitResult(True, math.ceil(entry.blocked_until - now))

            if now - entry.first_attempt > self.window_seconds:
                del self._entries[key]
                return RateLimitResult(False)

            if entry.attempts >= self.max_attempts:
                entry.blocked_until = now + self.block_seconds
                logger.warning("Blocking login for %s after %d failed attempts", key, entry.attempts)
                return RateLimitResult(True, math.ceil(self.block_seconds))

            return RateLimitResult(False)

    def record_failed_attempt(self, key):
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)

            if entry is None or now - entry.first_attempt > self.window_seconds:
                self._entries[key] = _Entry(attempts=1, first_attempt=now)
            else:
                entry.attempts += 1

    def clear_attempts(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def cleanup(self):
        """Drop entries older than the block duration. Returns how many went."""

        with self._lock:
            now = self._clock()
            self._last_sweep = now
            stale = [
                key for key, entry in self._entries.items()
                if now - entry.first_attempt > self.block_seconds
                and (entry.blocked_until is None or now >= entry.blocked_until)
            ]
            for key in stale:
                del self._entries[key]

        return len(stale)

    def cleanup_if_due(self, interval=10 * 60):
        if self._clock() - self._last_sweep >= interval:
            return self.cleanup()
        return 0
