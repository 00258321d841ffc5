"""
Provisioning orchestrator with the simulated provisioner: happy path, failure capture,
retry, delete, per-store exclusivity, idempotent completion, restart recovery, timeout.
"""
from __future__ import annotations

import os
import sys
import threading
import time

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from storeplane.core.errors import (
    ConflictingOperation,
    DependencyUnavailable,
    ProvisionerError,
    RetryLimitReached,
    StateConflict,
)
from storeplane.core.gateway import audit_log as audit_consts
from storeplane.core.gateway.circuit_breaker import CircuitBreaker
from storeplane.core.monitor.metrics import METRIC_TRANSITIONS, MetricsRegistry
from storeplane.core.orchestrator.provisioner import SimulatedProvisioner
from storeplane.core.orchestrator.worker import RESTART_REASON, Orchestrator

WAIT = 5.0


def _build(registry, provisioner, audit_log, **kwargs):
    options = dict(
        metrics=MetricsRegistry(),
        max_concurrent=2,
        timeout_ms=2000,
        poll_interval_ms=0,
        step_retries=0,
        retry_base_delay_ms=0,
        max_retry_count=2,
        sleep=lambda s: None,
    )
    options.update(kwargs)
    breaker = options.pop("breaker", None) or CircuitBreaker("provisioner", failure_threshold=50, reset_timeout_sec=1)
    return Orchestrator(registry, provisioner, audit_log, breaker, **options)


def _wait_for_status(registry, store_id, status):
    deadline = time.monotonic() + WAIT
    while time.monotonic() < deadline:
        if registry.get(store_id).status == status:
            return
        time.sleep(0.01)
    raise AssertionError(f"{store_id} never reached {status}; now {registry.get(store_id).status}")


def _provision(registry, orchestrator, name="alice-shop", owner="u1", engine=None):
    store = registry.create(owner, name, engine)
    orchestrator.enqueue_provision(store.id)
    assert orchestrator.wait_idle(WAIT)
    return registry.get(store.id)


def test_provision_reaches_ready(registry, orchestrator, audit):
    store = _provision(registry, orchestrator, engine="medusa")
    assert store.status == "ready"
    assert store.urls == {
        "storefront": f"http://{store.id}.localhost",
        "admin": f"http://{store.id}.localhost/admin",
    }
    assert store.provisioning_started_at
    assert store.provisioning_completed_at
    assert store.provisioning_duration_ms is not None
    assert store.failure_reason is None

    logs, _ = audit.search(store_id=store.id, action=audit_consts.STORE_TRANSITION)
    steps = [(e["previousStatus"], e["newStatus"]) for e in reversed(logs)]
    assert steps == [("requested", "provisioning"), ("provisioning", "ready")]
    assert all(e["actorId"] == audit_consts.SYSTEM_ACTOR for e in logs)


def test_woocommerce_admin_url(registry, orchestrator):
    store = _provision(registry, orchestrator)
    assert store.urls["admin"].endswith("/wp-admin")


def test_create_failure_is_captured(registry, orchestrator, provisioner):
    provisioner.fail_create.add("*")
    store = _provision(registry, orchestrator)
    assert store.status == "failed"
    assert "failed to install" in store.failure_reason
    assert store.urls is None


def test_workload_crash_is_captured(registry, orchestrator, provisioner):
    provisioner.fail_inspect.add("*")
    store = _provision(registry, orchestrator)
    assert store.status == "failed"
    assert "crashed" in store.failure_reason


def test_timeout_marks_failed(registry, audit):
    ticks = {"now": 0.0}

    def clock():
        ticks["now"] += 1.0
        return ticks["now"]

    slow = SimulatedProvisioner(ready_after_polls=1000)
    orch = _build(registry, slow, audit, timeout_ms=5000, clock=clock)
    try:
        store = _provision(registry, orch)
    finally:
        orch.shutdown()
    assert store.status == "failed"
    assert "timed out" in store.failure_reason


def test_transient_create_error_is_retried(registry, audit):
    class Flaky(SimulatedProvisioner):
        def __init__(self):
            super().__init__()
            self.failures_left = 2

        def create(self, spec):
            if self.failures_left:
                self.failures_left -= 1
                raise ProvisionerError("connection reset", retryable=True)
            return super().create(spec)

    flaky = Flaky()
    orch = _build(registry, flaky, audit, step_retries=2)
    try:
        store = _provision(registry, orch)
    finally:
        orch.shutdown()
    assert store.status == "ready"
    assert flaky.failures_left == 0


def test_open_breaker_fails_fast(registry, audit, provisioner):
    breaker = CircuitBreaker("provisioner", failure_threshold=1, reset_timeout_sec=60)
    orch = _build(registry, provisioner, audit, breaker=breaker)
    try:
        provisioner.fail_create.add("*")
        first = _provision(registry, orch, name="first")
        assert first.status == "failed"
        assert breaker.state() == "open"
        provisioner.fail_create.clear()
        second = _provision(registry, orch, name="second")
    finally:
        orch.shutdown()
    assert second.status == "failed"
    assert "circuit open" in second.failure_reason


def test_retry_after_failure(registry, orchestrator, provisioner):
    provisioner.fail_create.add("*")
    store = _provision(registry, orchestrator)
    provisioner.fail_create.clear()

    accepted = orchestrator.request_retry(store.id, actor_id="u1")
    assert accepted.status == "requested"
    assert accepted.retry_count == 1
    assert accepted.failure_reason is None
    assert orchestrator.wait_idle(WAIT)

    store = registry.get(store.id)
    assert store.status == "ready"
    assert store.retry_count == 1
    assert provisioner.calls["destroy"] >= 1


def test_retry_limit(registry, orchestrator, provisioner):
    provisioner.fail_create.add("*")
    store = _provision(registry, orchestrator)
    for _ in range(2):
        orchestrator.request_retry(store.id)
        assert orchestrator.wait_idle(WAIT)
    assert registry.get(store.id).retry_count == 2
    with pytest.raises(RetryLimitReached):
        orchestrator.request_retry(store.id)
    assert orchestrator.in_flight(store.id) is None
    assert registry.get(store.id).status == "failed"


def test_retry_refused_unless_failed(registry, orchestrator):
    store = _provision(registry, orchestrator)
    with pytest.raises(StateConflict) as exc:
        orchestrator.request_retry(store.id)
    assert "Only failed stores can be retried" in exc.value.message
    assert orchestrator.in_flight(store.id) is None


def test_delete_ready_store(registry, orchestrator, provisioner):
    store = _provision(registry, orchestrator)
    assert provisioner.exists(store.id)
    accepted = orchestrator.request_delete(store.id, actor_id="u1")
    assert accepted.status == "deleting"
    assert orchestrator.wait_idle(WAIT)
    store = registry.get(store.id)
    assert store.status == "deleted"
    assert store.deleted_at
    assert not provisioner.exists(store.id)


def test_delete_failed_store(registry, orchestrator, provisioner):
    provisioner.fail_create.add("*")
    store = _provision(registry, orchestrator)
    orchestrator.request_delete(store.id)
    assert orchestrator.wait_idle(WAIT)
    assert registry.get(store.id).status == "deleted"


def test_delete_failure_is_captured(registry, orchestrator, provisioner):
    store = _provision(registry, orchestrator)
    provisioner.fail_destroy.add(store.id)
    orchestrator.request_delete(store.id)
    assert orchestrator.wait_idle(WAIT)
    store = registry.get(store.id)
    assert store.status == "failed"
    assert store.failure_reason.startswith("Deletion failed:")


def test_delete_refused_while_provisioning(registry, orchestrator):
    store = registry.create("u1", "alice-shop")
    registry.update_status(store.id, "provisioning")
    with pytest.raises(StateConflict) as exc:
        orchestrator.request_delete(store.id)
    assert "Cannot delete while provisioning" in exc.value.message


def test_second_operation_on_busy_store_conflicts(registry, audit):
    gate = threading.Event()
    gated = SimulatedProvisioner(gate=gate)
    orch = _build(registry, gated, audit)
    try:
        store = registry.create("u1", "alice-shop")
        orch.enqueue_provision(store.id)
        _wait_for_status(registry, store.id, "provisioning")
        assert orch.in_flight(store.id) == "provision"
        with pytest.raises(ConflictingOperation):
            orch.request_delete(store.id)
        with pytest.raises(ConflictingOperation):
            orch.enqueue_provision(store.id)
        # Other stores are not blocked by the busy one.
        other = registry.create("u1", "other-shop")
        registry.update_status(other.id, "provisioning")
        registry.update_status(other.id, "failed", failure_reason="x")
        orch.request_delete(other.id)
        gate.set()
        assert orch.wait_idle(WAIT)
    finally:
        gate.set()
        orch.shutdown()
    assert registry.get(store.id).status == "ready"
    assert registry.get(other.id).status == "deleted"


def test_completion_signals_are_idempotent(registry, orchestrator, audit):
    store = _provision(registry, orchestrator)
    _, before = audit.search(store_id=store.id)
    again = orchestrator.mark_ready(store.id, urls={"storefront": "http://elsewhere"})
    assert again.status == "ready"
    assert again.urls["storefront"] == f"http://{store.id}.localhost"
    _, after = audit.search(store_id=store.id)
    assert after == before

    failed = registry.create("u1", "broken")
    registry.update_status(failed.id, "provisioning")
    orchestrator.mark_failed(failed.id, "first reason")
    orchestrator.mark_failed(failed.id, "second reason")
    assert registry.get(failed.id).failure_reason == "first reason"


def test_recover_after_restart(registry, orchestrator, provisioner):
    queued = registry.create("u1", "queued")
    interrupted = registry.create("u1", "interrupted")
    registry.update_status(interrupted.id, "provisioning")
    deleting = registry.create("u1", "deleting")
    for state in ("provisioning", "ready", "deleting"):
        registry.update_status(deleting.id, state)

    report = orchestrator.recover()
    assert report == {"requeued": [queued.id], "failed": [interrupted.id], "resumed_delete": [deleting.id]}
    assert orchestrator.wait_idle(WAIT)

    assert registry.get(queued.id).status == "ready"
    interrupted = registry.get(interrupted.id)
    assert interrupted.status == "failed"
    assert interrupted.failure_reason == RESTART_REASON
    assert registry.get(deleting.id).status == "deleted"
    assert orchestrator.recover() == {"requeued": [], "failed": [], "resumed_delete": []}


def test_transition_metrics(registry, audit, provisioner):
    metrics = MetricsRegistry()
    orch = _build(registry, provisioner, audit, metrics=metrics)
    try:
        _provision(registry, orch)
    finally:
        orch.shutdown()
    assert metrics.counter_value(METRIC_TRANSITIONS, {"status": "provisioning"}) == 1
    assert metrics.counter_value(METRIC_TRANSITIONS, {"status": "ready"}) == 1


def test_stats_and_shutdown(registry, audit, provisioner):
    orch = _build(registry, provisioner, audit, max_concurrent=4)
    stats = orch.stats()
    assert stats == {"maxConcurrent": 4, "active": 0, "queued": 0, "inFlight": 0}
    orch.shutdown()
    store = registry.create("u1", "late")
    with pytest.raises(DependencyUnavailable):
        orch.enqueue_provision(store.id)
    assert orch.in_flight(store.id) is None
