"""In-memory rate limiter guarding login and password-reset requests."""

from __future__ import annotations

import threading
import time
from collections import defaultdict, deque

from ..exceptions import RateLimitException


class InMemoryRateLimiter:
    """Fixed-window limiter per key (client host + path)."""

    def __init__(self, window_seconds: int = 60):
        self.window_seconds = window_seconds
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()

    def allow(self, key: str, max_requests: int) -> tuple[bool, int]:
        """Record a hit for `key`; return `(allowed, retry_after_seconds)`."""
        now = time.monotonic()
        with self._lock:
            q = self._hits[key]
            cutoff = now - self.window_seconds
            while q and q[0] < cutoff:
                q.popleft()
            if len(q) >= max_requests:
                return False, max(1, int(self.window_seconds - (now - q[0])))
            q.append(now)
        return True, 0

    def enforce(self, key: str, max_requests: int) -> None:
        allowed, retry_after = self.allow(key, max_requests)
        if not allowed:
            raise RateLimitException(retry_after)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
