"""Per-client sliding-window rate limiting for the auth endpoints."""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after_seconds: int = 0


class InMemoryRateLimiter:
    """Sliding-window limiter keyed by ``<endpoint>:<client>``, single-node only."""

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: Dict[str, Deque[float]] = {}
        self._sweep_interval = sweep_interval
        self._last_sweep = clock()
        self._max_window = 0

    def _sweep(self, now: float) -> None:
        # Drop clients whose newest hit has left every window.
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        cutoff = now - self._max_window
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[key]

    def _prune(self, key: str, now: float, window_seconds: int) -> Deque[float]:
        hits = self._hits.setdefault(key, deque())
        cutoff = now - window_seconds
        while hits and hits[0] <= cutoff:
            hits.popleft()
        return hits

    def hit(self, key: str, limit: int, window_seconds: int = 60) -> RateLimitDecision:
        """Record one request for ``key`` unless it would exceed ``limit``."""
        now = self._clock()
        with self._lock:
            self._max_window = max(self._max_window, window_seconds)
            self._sweep(now)
            hits = self._prune(key, now, window_seconds)
            if len(hits) >= limit:
                oldest = hits[0] if hits else now
                retry_after = max(1, math.ceil(oldest + window_seconds - now))
                return RateLimitDecision(False, 0, retry_after)
            hits.append(now)
            return RateLimitDecision(True, limit - len(hits))

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


rate_limiter = InMemoryRateLimiter()
