"""Per-IP sliding-window limiter for the ingestion API."""

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict

WINDOW_SECONDS = 60.0


class IpRateLimiter:
    """Allow at most ``requests_per_minute`` admissions per client IP.

    Hits are kept in memory only and guarded by a lock, so one instance can
    be shared by concurrent request handlers.
    """

    def __init__(
        self,
        *,
        enabled: bool = False,
        requests_per_minute: int = 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.enabled = bool(enabled)
        self.requests_per_minute = int(requests_per_minute or 0)
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def allow(self, ip: str) -> bool:
        """Record a hit for ``ip`` and return whether it is within the limit."""
        if not self.enabled or self.requests_per_minute <= 0:
            return True
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault(ip, deque())
            hits.append(now)
            while hits and now - hits[0] > WINDOW_SECONDS:
                hits.popleft()
            return len(hits) <= self.requests_per_minute

    def forget_idle(self) -> int:
        """Drop IPs whose newest hit fell out of the window; return how many."""
        now = self._clock()
        with self._lock:
            idle = [ip for ip, hits in self._hits.items() if not hits or now - hits[-1] > WINDOW_SECONDS]
            for ip in idle:
                del self._hits[ip]
        return len(idle)
