"""
Circuit breaker per external dependency (database, provisioner).
Trips after `failure_threshold` consecutive failures; while open, calls fail fast with
DependencyUnavailable. After `reset_timeout_sec` it goes half-open and lets up to
`half_open_max` trial calls through: a success closes it, a failure reopens it.
Thresholds can be overridden by CB_* environment variables.
"""
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional

from ..errors import DependencyUnavailable, PlatformError
from ..log import json_log

logger = logging.getLogger("storeplane.circuit_breaker")

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

_FAILURE_THRESHOLD = 5
_RESET_TIMEOUT_SEC = 30.0
_HALF_OPEN_MAX = 1


def _float_env(key: str, default: float) -> float:
    try:
        return float(os.environ.get(key, default))
    except (TypeError, ValueError):
        return default


def _int_env(key: str, default: int) -> int:
    try:
        return int(os.environ.get(key, default))
    except (TypeError, ValueError):
        return default


def _is_dependency_failure(exc: BaseException) -> bool:
    # Client-side refusals (duplicate, not found, conflict) say nothing about dependency health.
    return not (isinstance(exc, PlatformError) and exc.status < 500)


class CircuitBreaker:
    """Thread-safe breaker for one dependency."""

    def __init__(
        self,
        name: str,
        failure_threshold: Optional[int] = None,
        reset_timeout_sec: Optional[float] = None,
        half_open_max: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold if failure_threshold is not None else _int_env("CB_FAILURE_THRESHOLD", _FAILURE_THRESHOLD)
        self.reset_timeout_sec = reset_timeout_sec if reset_timeout_sec is not None else _float_env("CB_RESET_TIMEOUT_MS", _RESET_TIMEOUT_SEC * 1000) / 1000.0
        self.half_open_max = half_open_max if half_open_max is not None else _int_env("CB_HALF_OPEN_MAX", _HALF_OPEN_MAX)
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0
        self._half_open_in_flight = 0
        self._total_calls = 0
        self._total_failures = 0
        self._total_rejected = 0
        self._last_failure: Optional[str] = None
        self._last_state_change = time.time()

    def _transition(self, new_state: str) -> None:
        if new_state == self._state:
            return
        old = self._state
        self._state = new_state
        self._last_state_change = time.time()
        if new_state == OPEN:
            self._opened_at = self._clock()
        if new_state != HALF_OPEN:
            self._half_open_in_flight = 0
        level = "warning" if new_state == OPEN else "info"
        json_log(logger, level, "circuit_state_change", breaker=self.name, from_state=old, to_state=new_state,
                 consecutive_failures=self._consecutive_failures)

    def allow_request(self) -> bool:
        """True when a call may proceed; reserves a half-open trial slot when one is granted."""
        with self._lock:
            if self._state == OPEN and self._clock() - self._opened_at >= self.reset_timeout_sec:
                self._transition(HALF_OPEN)
            if self._state == CLOSED:
                return True
            if self._state == HALF_OPEN and self._half_open_in_flight < self.half_open_max:
                self._half_open_in_flight += 1
                return True
            self._total_rejected += 1
            return False

    def record(self, success: bool, error: str = "") -> None:
        with self._lock:
            self._total_calls += 1
            if success:
                self._consecutive_failures = 0
                if self._state == HALF_OPEN:
                    self._transition(CLOSED)
                return
            self._total_failures += 1
            self._consecutive_failures += 1
            self._last_failure = error or self._last_failure
            if self._state == HALF_OPEN:
                self._transition(OPEN)
            elif self._state == CLOSED and self._consecutive_failures >= self.failure_threshold:
                self._transition(OPEN)

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if not self.allow_request():
            raise DependencyUnavailable(
                f"{self.name} is unavailable (circuit open).",
                details=self._last_failure or "",
                suggestion="Retry after the dependency recovers.",
            )
        try:
            result = fn(*args, **kwargs)
        except Exception as e:
            if _is_dependency_failure(e):
                self.record(False, error=str(e))
            else:
                self.record(True)
            raise
        self.record(True)
        return result

    def state(self) -> str:
        with self._lock:
            if self._state == OPEN and self._clock() - self._opened_at >= self.reset_timeout_sec:
                self._transition(HALF_OPEN)
            return self._state

    def reset(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._transition(CLOSED)

    def stats(self) -> Dict[str, Any]:
        state = self.state()
        with self._lock:
            return {
                "name": self.name,
                "state": state,
                "consecutiveFailures": self._consecutive_failures,
                "failureThreshold": self.failure_threshold,
                "resetTimeoutMs": int(self.reset_timeout_sec * 1000),
                "totalCalls": self._total_calls,
                "totalFailures": self._total_failures,
                "totalRejected": self._total_rejected,
                "lastFailure": self._last_failure,
                "lastStateChange": self._last_state_change,
            }


class CircuitBreakerRegistry:
    """One breaker per dependency name; defaults applied to breakers created on first use."""

    def __init__(self, failure_threshold: Optional[int] = None, reset_timeout_sec: Optional[float] = None,
                 half_open_max: Optional[int] = None):
        self._defaults = {
            "failure_threshold": failure_threshold,
            "reset_timeout_sec": reset_timeout_sec,
            "half_open_max": half_open_max,
        }
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(name, **self._defaults)
            return self._breakers[name]

    def all_stats(self) -> List[Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.stats() for b in breakers]


__all__ = ["CircuitBreaker", "CircuitBreakerRegistry", "CLOSED", "OPEN", "HALF_OPEN"]
