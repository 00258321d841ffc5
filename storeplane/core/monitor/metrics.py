"""
Golden metrics for the control plane: traffic, latency, errors, saturation.
Counters, gauges and sum/count summaries kept in process; rendered as Prometheus
text exposition for /metrics and as a dict for /metrics/json.
"""
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

METRIC_HTTP_REQUESTS = "http_requests_total"
METRIC_HTTP_DURATION = "http_request_duration_ms"
METRIC_TRANSITIONS = "stores_transitions_total"
METRIC_PROVISIONING_DURATION = "provisioning_duration_ms"
METRIC_PROVISIONING_FAILURES = "provisioning_failures_total"
METRIC_ACTIVE_OPS = "active_provisioning_ops"
METRIC_UPTIME = "process_uptime_seconds"

_HELP = {
    METRIC_HTTP_REQUESTS: ("counter", "HTTP requests by method and status"),
    METRIC_HTTP_DURATION: ("summary", "HTTP request latency in milliseconds"),
    METRIC_TRANSITIONS: ("counter", "Store state transitions by target status"),
    METRIC_PROVISIONING_DURATION: ("summary", "Time from provisioning start to ready"),
    METRIC_PROVISIONING_FAILURES: ("counter", "Provisioning failures by engine and step"),
    METRIC_ACTIVE_OPS: ("gauge", "Provisioner operations currently running"),
    METRIC_UPTIME: ("gauge", "Seconds since the control plane started"),
}

LabelKey = Tuple[Tuple[str, str], ...]


def _key(labels: Optional[Dict[str, str]]) -> LabelKey:
    return tuple(sorted((k, str(v)) for k, v in (labels or {}).items()))


def _fmt_labels(key: LabelKey) -> str:
    if not key:
        return ""
    inner = ",".join('{}="{}"'.format(k, v.replace("\\", "\\\\").replace('"', '\\"')) for k, v in key)
    return "{" + inner + "}"


class MetricsRegistry:

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Dict[str, Dict[LabelKey, float]] = {}
        self._gauges: Dict[str, Dict[LabelKey, float]] = {}
        self._summaries: Dict[str, Dict[LabelKey, List[float]]] = {}
        self.started_at = time.time()

    def inc(self, name: str, labels: Optional[Dict[str, str]] = None, value: float = 1) -> None:
        with self._lock:
            series = self._counters.setdefault(name, {})
            k = _key(labels)
            series[k] = series.get(k, 0) + value

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            self._gauges.setdefault(name, {})[_key(labels)] = value

    def observe(self, name: str, value: float, labels: Optional[Dict[str, str]] = None) -> None:
        with self._lock:
            series = self._summaries.setdefault(name, {})
            k = _key(labels)
            acc = series.setdefault(k, [0.0, 0])
            acc[0] += float(value)
            acc[1] += 1

    # ---------- domain helpers ----------

    def record_request(self, method: str, status: int, duration_ms: float) -> None:
        self.inc(METRIC_HTTP_REQUESTS, {"method": method, "status": str(status)})
        self.observe(METRIC_HTTP_DURATION, duration_ms, {"method": method})

    def record_transition(self, status: str) -> None:
        self.inc(METRIC_TRANSITIONS, {"status": status})

    def observe_provisioning(self, engine: str, duration_ms: float) -> None:
        self.observe(METRIC_PROVISIONING_DURATION, duration_ms, {"engine": engine})

    def record_provisioning_failure(self, engine: str, step: str) -> None:
        self.inc(METRIC_PROVISIONING_FAILURES, {"engine": engine, "step": step})

    def set_active_ops(self, count: int) -> None:
        self.set_gauge(METRIC_ACTIVE_OPS, count)

    def uptime_seconds(self) -> float:
        return round(time.time() - self.started_at, 3)

    def counter_value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._counters.get(name, {}).get(_key(labels), 0)

    # ---------- exposition ----------

    def render_prometheus(self) -> str:
        self.set_gauge(METRIC_UPTIME, self.uptime_seconds())
        lines: List[str] = []
        with self._lock:
            names = sorted(set(self._counters) | set(self._gauges) | set(self._summaries))
            for name in names:
                kind, help_text = _HELP.get(name, ("untyped", name))
                lines.append(f"# HELP {name} {help_text}")
                lines.append(f"# TYPE {name} {kind}")
                for k, v in sorted(self._counters.get(name, {}).items()):
                    lines.append(f"{name}{_fmt_labels(k)} {v:g}")
                for k, v in sorted(self._gauges.get(name, {}).items()):
                    lines.append(f"{name}{_fmt_labels(k)} {v:g}")
                for k, (total, count) in sorted(self._summaries.get(name, {}).items()):
                    lines.append(f"{name}_sum{_fmt_labels(k)} {total:g}")
                    lines.append(f"{name}_count{_fmt_labels(k)} {count:g}")
        return "\n".join(lines) + "\n"

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        with self._lock:
            for source in (self._counters, self._gauges):
                for name, series in source.items():
                    out[name] = {_fmt_labels(k) or "total": v for k, v in series.items()}
            for name, series in self._summaries.items():
                out[name] = {
                    _fmt_labels(k) or "total": {"sum": s, "count": c, "avg": round(s / c, 2) if c else 0}
                    for k, (s, c) in series.items()
                }
        return out
