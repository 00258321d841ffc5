"""
External provisioner contract: create / inspect / destroy a named workload.
- SimulatedProvisioner: in-process, for local runs and tests (delays and failure injection).
- HttpProvisioner: talks to a workload API over a pooled urllib3 connection.
"""
from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import urllib3

from ..errors import ProvisionerError

logger = logging.getLogger("storeplane.provisioner")

PENDING = "pending"
READY = "ready"
FAILED = "failed"
MISSING = "missing"


@dataclass(frozen=True)
class WorkloadSpec:
    name: str
    engine: str
    owner_id: str
    store_name: str


@dataclass(frozen=True)
class WorkloadStatus:
    name: str
    phase: str
    message: str = ""

    @property
    def ready(self) -> bool:
        return self.phase == READY


def build_urls(store_id: str, engine: str, domain_suffix: str = ".localhost") -> Dict[str, str]:
    storefront = f"http://{store_id}{domain_suffix}"
    admin_path = "/wp-admin" if engine == "woocommerce" else "/admin"
    return {"storefront": storefront, "admin": storefront + admin_path}


class Provisioner(ABC):

    name = "provisioner"

    @abstractmethod
    def create(self, spec: WorkloadSpec) -> Dict[str, str]:
        """Start the workload; returns its urls. Raises ProvisionerError."""

    @abstractmethod
    def inspect(self, name: str) -> WorkloadStatus:
        ...

    @abstractmethod
    def destroy(self, name: str) -> None:
        """Tear the workload down; destroying a missing workload succeeds."""

    @abstractmethod
    def ping(self) -> bool:
        ...


class SimulatedProvisioner(Provisioner):
    """
    In-memory workloads. `ready_after_polls` makes inspect report pending a number of times;
    `fail_create` / `fail_destroy` hold workload names that fail, or "*" for all;
    `gate` (threading.Event) blocks create until set, to hold an operation in flight.
    """

    name = "simulated"

    def __init__(self, domain_suffix: str = ".localhost", create_delay_sec: float = 0.0,
                 ready_after_polls: int = 0, gate: Optional[threading.Event] = None) -> None:
        self.domain_suffix = domain_suffix
        self.create_delay_sec = create_delay_sec
        self.ready_after_polls = ready_after_polls
        self.gate = gate
        self.fail_create: Set[str] = set()
        self.fail_destroy: Set[str] = set()
        self.fail_inspect: Set[str] = set()
        self.healthy = True
        self._workloads: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self.calls: Dict[str, int] = {"create": 0, "inspect": 0, "destroy": 0}

    @staticmethod
    def _matches(names: Set[str], name: str) -> bool:
        return "*" in names or name in names

    def create(self, spec: WorkloadSpec) -> Dict[str, str]:
        with self._lock:
            self.calls["create"] += 1
        if self.gate is not None:
            self.gate.wait()
        if self.create_delay_sec:
            time.sleep(self.create_delay_sec)
        if not self.healthy:
            raise ProvisionerError("Provisioner unreachable.", retryable=True)
        if self._matches(self.fail_create, spec.name):
            raise ProvisionerError(f"Workload {spec.name} failed to install.", retryable=False)
        urls = build_urls(spec.name, spec.engine, self.domain_suffix)
        with self._lock:
            self._workloads[spec.name] = {"spec": spec, "urls": urls, "polls": 0}
        return urls

    def inspect(self, name: str) -> WorkloadStatus:
        with self._lock:
            self.calls["inspect"] += 1
            wl = self._workloads.get(name)
            if wl is None:
                return WorkloadStatus(name, MISSING, "workload not found")
            if self._matches(self.fail_inspect, name):
                return WorkloadStatus(name, FAILED, "workload crashed during startup")
            if wl["polls"] < self.ready_after_polls:
                wl["polls"] += 1
                return WorkloadStatus(name, PENDING, "pods starting")
            return WorkloadStatus(name, READY)

    def destroy(self, name: str) -> None:
        with self._lock:
            self.calls["destroy"] += 1
        if not self.healthy:
            raise ProvisionerError("Provisioner unreachable.", retryable=True)
        if self._matches(self.fail_destroy, name):
            raise ProvisionerError(f"Workload {name} could not be removed.", retryable=False)
        with self._lock:
            self._workloads.pop(name, None)

    def ping(self) -> bool:
        if not self.healthy:
            raise ProvisionerError("Provisioner unreachable.", retryable=True)
        return True

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._workloads


class HttpProvisioner(Provisioner):
    """
    Workload API client:
      POST   /workloads            {name, engine, ownerId, storeName} -> {urls}
      GET    /workloads/{name}     -> {phase, message}
      DELETE /workloads/{name}
      GET    /healthz
    """

    name = "http"

    def __init__(self, base_url: str, timeout_sec: float = 30, pool: Optional[urllib3.PoolManager] = None) -> None:
        if not base_url:
            raise ValueError("PROVISIONER_URL is required for the http provisioner")
        self.base_url = base_url.rstrip("/")
        self.timeout = urllib3.util.Timeout(connect=5, read=timeout_sec)
        self._pool = pool or urllib3.PoolManager(num_pools=4, maxsize=8, block=False)

    def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None):
        url = f"{self.base_url}{path}"
        data = json.dumps(body).encode("utf-8") if body is not None else None
        headers = {"Content-Type": "application/json"} if data is not None else {}
        try:
            r = self._pool.request(method, url, body=data, headers=headers, timeout=self.timeout, retries=False)
        except urllib3.exceptions.HTTPError as e:
            raise ProvisionerError(f"{method} {path} failed: {e}", retryable=True)
        payload: Dict[str, Any] = {}
        if r.data:
            try:
                payload = json.loads(r.data.decode("utf-8"))
            except ValueError:
                payload = {"message": r.data.decode("utf-8", "replace")[:500]}
        return r.status, payload

    def _raise_for(self, method: str, path: str, status: int, payload: Dict[str, Any]) -> None:
        message = payload.get("message") or payload.get("error") or f"HTTP {status}"
        raise ProvisionerError(f"{method} {path} returned {status}: {message}", retryable=status >= 500 or status == 429)

    def create(self, spec: WorkloadSpec) -> Dict[str, str]:
        status, payload = self._request("POST", "/workloads", {
            "name": spec.name, "engine": spec.engine, "ownerId": spec.owner_id, "storeName": spec.store_name,
        })
        if status not in (200, 201, 202):
            self._raise_for("POST", "/workloads", status, payload)
        return payload.get("urls") or {}

    def inspect(self, name: str) -> WorkloadStatus:
        status, payload = self._request("GET", f"/workloads/{name}")
        if status == 404:
            return WorkloadStatus(name, MISSING, "workload not found")
        if status != 200:
            self._raise_for("GET", f"/workloads/{name}", status, payload)
        return WorkloadStatus(name, payload.get("phase") or PENDING, payload.get("message") or "")

    def destroy(self, name: str) -> None:
        status, payload = self._request("DELETE", f"/workloads/{name}")
        if status not in (200, 202, 204, 404):
            self._raise_for("DELETE", f"/workloads/{name}", status, payload)

    def ping(self) -> bool:
        status, payload = self._request("GET", "/healthz")
        if not 200 <= status < 300:
            self._raise_for("GET", "/healthz", status, payload)
        return True


def create_provisioner(kind: str, url: str = "", domain_suffix: str = ".localhost") -> Provisioner:
    kind = (kind or "simulated").lower()
    if kind == "http":
        return HttpProvisioner(url)
    if kind != "simulated":
        raise ValueError(f"unknown provisioner: {kind}")
    return SimulatedProvisioner(domain_suffix=domain_suffix)
