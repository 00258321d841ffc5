"""
Health monitor: probes each dependency through its circuit breaker and aggregates.
Overall status is "healthy" only when every dependency is up; otherwise "degraded"
(served as 503 so load balancers take the instance out). An optional background
loop probes on an interval so breaker state keeps moving without traffic.
"""
import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from ..errors import DependencyUnavailable
from ..store.models import utcnow_iso

logger = logging.getLogger("storeplane.health")

HEALTHY = "healthy"
DEGRADED = "degraded"


class HealthMonitor:

    def __init__(self, breakers, started_at: Optional[float] = None, concurrency: Optional[Callable[[], Dict]] = None):
        self._breakers = breakers
        self._probes: Dict[str, Callable[[], Any]] = {}
        self._lock = threading.Lock()
        self._concurrency = concurrency
        self.started_at = started_at or time.time()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def register(self, name: str, probe: Callable[[], Any]) -> None:
        """probe() returns truthy when healthy, raises or returns falsy otherwise."""
        with self._lock:
            self._probes[name] = probe
        self._breakers.get(name)

    def _check_one(self, name: str, probe: Callable[[], Any]) -> Dict[str, Any]:
        breaker = self._breakers.get(name)
        started = time.perf_counter()
        error = ""
        try:
            ok = bool(breaker.call(probe))
            if not ok:
                error = "probe reported unhealthy"
        except DependencyUnavailable as e:
            ok, error = False, e.message
        except Exception as e:
            ok, error = False, str(e) or e.__class__.__name__
            logger.warning("health probe failed dependency=%s err=%s", name, error)
        result = {
            "status": HEALTHY if ok else DEGRADED,
            "latencyMs": int((time.perf_counter() - started) * 1000),
            "circuitBreaker": breaker.state(),
        }
        if error:
            result["error"] = error
        return result

    def check(self) -> Dict[str, Any]:
        with self._lock:
            probes = list(self._probes.items())
        checks = {name: self._check_one(name, probe) for name, probe in probes}
        overall = HEALTHY if all(c["status"] == HEALTHY for c in checks.values()) else DEGRADED
        body: Dict[str, Any] = {
            "status": overall,
            "timestamp": utcnow_iso(),
            "uptime": round(time.time() - self.started_at, 3),
            "checks": checks,
        }
        if self._concurrency is not None:
            body["concurrency"] = self._concurrency()
        return body

    def start(self, interval_sec: float) -> Optional[threading.Thread]:
        """Background probing every interval_sec; no-op for interval <= 0."""
        if interval_sec <= 0 or self._thread is not None:
            return None

        def _loop():
            while not self._stop.wait(interval_sec):
                try:
                    body = self.check()
                    if body["status"] != HEALTHY:
                        logger.warning("health degraded checks=%s", body["checks"])
                except Exception as e:
                    logger.warning("health loop error: %s", e)

        self._thread = threading.Thread(target=_loop, name="health-monitor", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop.set()
