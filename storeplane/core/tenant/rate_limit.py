"""
Sliding-window limiter for login and registration attempts (in memory).
Login is keyed by ip:email so a shared IP does not lock everyone out; registration by ip.
"""
from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, List, Tuple


class SlidingWindowLimiter:

    def __init__(self, max_attempts: int, window_sec: float, enabled: bool = True,
                 clock: Callable[[], float] = time.time) -> None:
        self.max_attempts = max_attempts
        self.window_sec = window_sec
        self.enabled = enabled
        self._clock = clock
        self._hits: Dict[str, List[float]] = {}
        self._lock = threading.Lock()

    def _prune(self, ts_list: List[float], now: float) -> List[float]:
        return [t for t in ts_list if now - t < self.window_sec]

    def allow(self, key: str) -> Tuple[bool, int]:
        """Returns (allowed, retry_after_seconds); records the attempt when allowed."""
        if not self.enabled or self.max_attempts <= 0:
            return True, 0
        now = self._clock()
        with self._lock:
            hits = self._prune(self._hits.get(key, []), now)
            if len(hits) >= self.max_attempts:
                self._hits[key] = hits
                retry_after = int(math.ceil(self.window_sec - (now - hits[0])))
                return False, max(1, retry_after)
            hits.append(now)
            self._hits[key] = hits
        return True, 0

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
