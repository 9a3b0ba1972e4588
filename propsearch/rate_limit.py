"""Sliding-window request limiter keyed by client identifier."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict

from .config import Settings, settings as default_settings
from .errors import RateLimited

logger = logging.getLogger(__name__)


class RateLimiter:
    """Allows ``max_requests`` per ``window_seconds`` for each client."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + window_seconds

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "RateLimiter":
        config = config or default_settings
        return cls(config.rate_limit_requests, config.rate_limit_window_seconds)

    def check(self, client_id: str) -> None:
        """Record a request for ``client_id`` or raise ``RateLimited``."""

        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            self._sweep(now, cutoff)
            timestamps = self._requests.setdefault(client_id, deque())
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()
            if len(timestamps) >= self.max_requests:
                retry_after = max(0.0, timestamps[0] + self.window_seconds - now)
                logger.warning("Rate limit hit for client %s, retry after %.1fs", client_id, retry_after)
                raise RateLimited(retry_after)
            timestamps.append(now)

    def _sweep(self, now: float, cutoff: float) -> None:
        # Forget clients with no request inside the window, once per window.
        if now < self._next_sweep:
            return
        self._next_sweep = now + self.window_seconds
        idle = [client for client, timestamps in self._requests.items() if not timestamps or timestamps[-1] <= cutoff]
        for client in idle:
            del self._requests[client]
        if idle:
            logger.debug("Rate limiter forgot %s idle clients", len(idle))

    def tracked_clients(self) -> int:
        with self._lock:
            return len(self._requests)

    def remaining(self, client_id: str) -> int:
        cutoff = self._clock() - self.window_seconds
        with self._lock:
            timestamps = self._requests.get(client_id, deque())
            return max(0, self.max_requests - sum(1 for ts in timestamps if ts > cutoff))
