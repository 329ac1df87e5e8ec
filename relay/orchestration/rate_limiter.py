"""Fixed-window request counter, kept in process memory.

Best effort only: nothing is shared between processes, and every client
without an identifying header lands in the single ``unknown`` bucket.
"""
from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

UNKNOWN_CLIENT = "unknown"


@dataclass
class _Window:
    start: float
    count: int


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


class FixedWindowRateLimiter:
    def __init__(
        self,
        max_requests: int,
        window_sec: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        prune_threshold: int = 10_000,
    ) -> None:
        self.max_requests = max_requests
        self.window_sec = window_sec
        self._clock = clock
        self._prune_threshold = prune_threshold
        self._windows: Dict[str, _Window] = {}

    def hit(self, key: Optional[str]) -> RateDecision:
        key = key or UNKNOWN_CLIENT
        now = self._clock()
        win = self._windows.get(key)
        if win is None or now - win.start >= self.window_sec:
            if len(self._windows) >= self._prune_threshold:
                self._prune(now)
            win = _Window(start=now, count=0)
            self._windows[key] = win
        if win.count >= self.max_requests:
            left = win.start + self.window_sec - now
            return RateDecision(allowed=False, retry_after=max(1, math.ceil(left)))
        win.count += 1
        return RateDecision(allowed=True, remaining=self.max_requests - win.count)

    def _prune(self, now: float) -> None:
        stale = [k for k, w in self._windows.items() if now - w.start >= self.window_sec]
        for k in stale:
            del self._windows[k]


def client_key(header_value: Optional[str]) -> str:
    """First hop of a forwarded-for style header, or the shared bucket."""
    if not header_value:
        return UNKNOWN_CLIENT
    first = header_value.split(",", 1)[0].strip()
    return first or UNKNOWN_CLIENT
