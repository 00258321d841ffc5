"""
Provisioning orchestrator: drives stores through the lifecycle by calling the external
provisioner from a bounded worker pool and persisting each transition via the registry.

- One in-flight operation per store id. The claim is taken on the request thread (so a
  second request gets ConflictingOperation immediately) and released when the worker
  finishes. Different stores proceed independently.
- Provisioner failures are captured into the store's `failed` state with a reason.
- Completion signals (mark_ready / mark_failed / mark_deleted) are idempotent.
- Every transition is audited with the system actor.
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from ..errors import (
    ConflictingOperation,
    DependencyUnavailable,
    NotFound,
    ProvisionerError,
    RetryLimitReached,
    StateConflict,
)
from ..gateway import audit_log as audit
from ..log import json_log
from ..monitor.metrics import MetricsRegistry
from ..store.machine import StoreState, can_delete, can_retry
from ..store.models import Store, utcnow_iso
from .provisioner import FAILED, MISSING, Provisioner, WorkloadSpec
from .retry import retry_with_backoff

logger = logging.getLogger("storeplane.orchestrator")

OP_PROVISION = "provision"
OP_RETRY = "retry"
OP_DELETE = "delete"

RESTART_REASON = "Provisioning interrupted by control-plane restart. Retry to continue."


class Orchestrator:

    def __init__(
        self,
        registry,
        provisioner: Provisioner,
        audit_log,
        breaker,
        metrics: Optional[MetricsRegistry] = None,
        max_concurrent: int = 3,
        timeout_ms: int = 600000,
        poll_interval_ms: int = 3000,
        step_retries: int = 2,
        retry_base_delay_ms: int = 2000,
        max_retry_count: int = 3,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._provisioner = provisioner
        self._audit = audit_log
        self._breaker = breaker
        self._metrics = metrics or MetricsRegistry()
        self.max_concurrent = max(1, int(max_concurrent))
        self.timeout_ms = timeout_ms
        self.poll_interval_ms = poll_interval_ms
        self.step_retries = step_retries
        self.retry_base_delay_ms = retry_base_delay_ms
        self.max_retry_count = max_retry_count
        self._sleep = sleep
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="orchestrator")
        self._in_flight: Dict[str, str] = {}
        self._running = 0
        self._cond = threading.Condition()
        self._shutdown = False

    # ---------- per-store claims ----------

    def _claim(self, store_id: str, operation: str) -> None:
        with self._cond:
            current = self._in_flight.get(store_id)
            if current is not None:
                raise ConflictingOperation(
                    f"Store {store_id} already has a '{current}' operation in progress.",
                    details=f"requested={operation} in_flight={current}",
                )
            self._in_flight[store_id] = operation

    def _release(self, store_id: str) -> None:
        with self._cond:
            self._in_flight.pop(store_id, None)
            self._cond.notify_all()

    def in_flight(self, store_id: str) -> Optional[str]:
        with self._cond:
            return self._in_flight.get(store_id)

    def _dispatch(self, store_id: str, operation: str, fn: Callable[[], None]) -> Future:
        """Run fn on the pool; the claim for store_id must already be held and is released afterwards."""

        def _task() -> None:
            with self._cond:
                self._running += 1
                self._metrics.set_active_ops(self._running)
            try:
                fn()
            except Exception:
                logger.exception("orchestrator task crashed store_id=%s op=%s", store_id, operation)
            finally:
                with self._cond:
                    self._running -= 1
                    self._metrics.set_active_ops(self._running)
                self._release(store_id)

        try:
            if self._shutdown:
                raise RuntimeError("orchestrator is shut down")
            return self._executor.submit(_task)
        except RuntimeError as e:
            self._release(store_id)
            raise DependencyUnavailable("Orchestrator is not accepting work.", details=str(e))

    # ---------- request-side entry points ----------

    def enqueue_provision(self, store_id: str) -> Future:
        """Start provisioning a store that is in `requested`."""
        self._claim(store_id, OP_PROVISION)
        return self._dispatch(store_id, OP_PROVISION, lambda: self._run_provision(store_id))

    def request_retry(self, store_id: str, actor_id: str = audit.SYSTEM_ACTOR) -> Store:
        """failed -> requested (retry count + 1), then provision asynchronously."""
        self._claim(store_id, OP_RETRY)
        try:
            store = self._registry.get(store_id)
            ok, reason = can_retry(store.status)
            if not ok:
                raise StateConflict(reason)
            if (store.retry_count or 0) >= self.max_retry_count:
                raise RetryLimitReached(
                    f"Maximum retry count ({self.max_retry_count}) reached.",
                    details=f"retryCount={store.retry_count}",
                )
            updated = self._transition(
                store, StoreState.REQUESTED, retry_count=(store.retry_count or 0) + 1,
                message=f"Retry #{(store.retry_count or 0) + 1} requested by {actor_id}",
            )
        except Exception:
            self._release(store_id)
            raise
        self._dispatch(store_id, OP_RETRY, lambda: self._run_retry(store_id))
        return updated

    def request_delete(self, store_id: str, actor_id: str = audit.SYSTEM_ACTOR) -> Store:
        """{ready, failed} -> deleting, then destroy asynchronously."""
        self._claim(store_id, OP_DELETE)
        try:
            store = self._registry.get(store_id)
            ok, reason = can_delete(store.status)
            if not ok:
                raise StateConflict(reason)
            updated = self._transition(store, StoreState.DELETING, message=f"Deletion requested by {actor_id}")
        except Exception:
            self._release(store_id)
            raise
        self._dispatch(store_id, OP_DELETE, lambda: self._run_delete(store_id))
        return updated

    # ---------- idempotent completion signals ----------

    def mark_ready(self, store_id: str, urls: Optional[Dict[str, str]] = None,
                   duration_ms: Optional[int] = None) -> Store:
        store = self._registry.get(store_id)
        if store.status == StoreState.READY.value:
            return store
        return self._transition(
            store, StoreState.READY,
            urls=urls or store.urls,
            provisioning_completed_at=utcnow_iso(),
            provisioning_duration_ms=duration_ms,
            message="Store is ready",
        )

    def mark_failed(self, store_id: str, reason: str) -> Store:
        store = self._registry.get(store_id)
        if store.status == StoreState.FAILED.value:
            return store
        return self._transition(store, StoreState.FAILED, failure_reason=reason, message=reason)

    def mark_deleted(self, store_id: str) -> Store:
        store = self._registry.get(store_id)
        if store.status == StoreState.DELETED.value:
            return store
        return self._transition(store, StoreState.DELETED, deleted_at=utcnow_iso(), message="Store deleted")

    # ---------- workers ----------

    def _transition(self, store: Store, target: StoreState, message: str = "", **fields: Any) -> Store:
        previous = store.status
        updated = self._registry.update_status(store.id, target, expected=previous, **fields)
        self._metrics.record_transition(target.value)
        self._audit.record(
            audit.SYSTEM_ACTOR, audit.SYSTEM_ACTOR, audit.STORE_TRANSITION,
            audit.FAILURE if target == StoreState.FAILED else audit.SUCCESS,
            store_id=store.id, owner_id=store.owner_id,
            previous_status=previous, new_status=target.value, message=message,
        )
        return updated

    def _spec(self, store: Store) -> WorkloadSpec:
        return WorkloadSpec(name=store.id, engine=store.engine, owner_id=store.owner_id, store_name=store.name)

    def _guarded(self, operation: str, fn: Callable[[], Any]) -> Any:
        return retry_with_backoff(
            lambda attempt: self._breaker.call(fn),
            max_retries=self.step_retries,
            base_delay_ms=self.retry_base_delay_ms,
            operation_name=operation,
            sleep=self._sleep,
        )

    def _step(self, store: Store, step: str, fn: Callable[[], Any]) -> Any:
        started = self._clock()
        json_log(logger, "info", "[lifecycle] Step started", store_id=store.id, step=step)
        try:
            result = fn()
        except Exception as e:
            json_log(logger, "error", "[lifecycle] Step failed", store_id=store.id, step=step, error=str(e),
                     duration_ms=int((self._clock() - started) * 1000))
            self._metrics.record_provisioning_failure(store.engine, step)
            raise
        json_log(logger, "info", "[lifecycle] Step completed", store_id=store.id, step=step,
                 duration_ms=int((self._clock() - started) * 1000))
        return result

    def _wait_ready(self, store: Store, started: float) -> None:
        deadline = started + self.timeout_ms / 1000.0
        while True:
            status = self._guarded(f"inspect {store.id}", lambda: self._provisioner.inspect(store.id))
            if status.ready:
                return
            if status.phase in (FAILED, MISSING):
                raise ProvisionerError(status.message or f"Workload {status.phase}.", retryable=False)
            if self._clock() >= deadline:
                raise ProvisionerError(
                    f"Provisioning timed out after {self.timeout_ms // 1000}s.", retryable=False,
                )
            self._sleep(self.poll_interval_ms / 1000.0)

    def _run_provision(self, store_id: str) -> None:
        store = self._registry.get(store_id)
        if store.status != StoreState.REQUESTED.value:
            logger.info("skip provisioning store_id=%s status=%s", store_id, store.status)
            return
        started = self._clock()
        store = self._transition(
            store, StoreState.PROVISIONING,
            provisioning_started_at=utcnow_iso(),
            provisioning_completed_at=None,
            provisioning_duration_ms=None,
            urls=None,
            message="Provisioning started",
        )
        try:
            urls = self._step(store, "create", lambda: self._guarded(
                f"create {store.id}", lambda: self._provisioner.create(self._spec(store))))
            self._step(store, "wait_ready", lambda: self._wait_ready(store, started))
        except Exception as e:
            reason = str(e) or e.__class__.__name__
            self.mark_failed(store_id, reason)
            return
        duration_ms = int((self._clock() - started) * 1000)
        self.mark_ready(store_id, urls=urls, duration_ms=duration_ms)
        self._metrics.observe_provisioning(store.engine, duration_ms)
        json_log(logger, "info", "store_ready", store_id=store_id, duration_ms=duration_ms)

    def _run_retry(self, store_id: str) -> None:
        store = self._registry.get(store_id)
        try:
            self._guarded(f"cleanup {store_id}", lambda: self._provisioner.destroy(store_id))
        except Exception as e:
            json_log(logger, "warning", "pre_retry_cleanup_failed", store_id=store_id, error=str(e))
        self._run_provision(store.id)

    def _run_delete(self, store_id: str) -> None:
        store = self._registry.get(store_id)
        try:
            self._step(store, "destroy", lambda: self._guarded(
                f"destroy {store_id}", lambda: self._provisioner.destroy(store_id)))
        except Exception as e:
            self.mark_failed(store_id, f"Deletion failed: {e}")
            return
        self.mark_deleted(store_id)

    # ---------- lifecycle ----------

    def recover(self) -> Dict[str, List[str]]:
        """Resume or close out work left in progress by a previous process."""
        report: Dict[str, List[str]] = {"requeued": [], "failed": [], "resumed_delete": []}
        for store in self._registry.find_in_progress():
            if self.in_flight(store.id):
                continue
            try:
                if store.status == StoreState.REQUESTED.value:
                    self.enqueue_provision(store.id)
                    report["requeued"].append(store.id)
                elif store.status == StoreState.PROVISIONING.value:
                    self.mark_failed(store.id, RESTART_REASON)
                    report["failed"].append(store.id)
                elif store.status == StoreState.DELETING.value:
                    self._claim(store.id, OP_DELETE)
                    self._dispatch(store.id, OP_DELETE, lambda sid=store.id: self._run_delete(sid))
                    report["resumed_delete"].append(store.id)
            except (ConflictingOperation, NotFound) as e:
                logger.warning("recovery skipped store_id=%s: %s", store.id, e)
        if any(report.values()):
            json_log(logger, "info", "orchestrator_recovered", **{k: len(v) for k, v in report.items()})
        return report

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no operation is in flight; False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._in_flight, timeout=timeout)

    def stats(self) -> Dict[str, int]:
        with self._cond:
            in_flight = len(self._in_flight)
            return {
                "maxConcurrent": self.max_concurrent,
                "active": self._running,
                "queued": max(0, in_flight - self._running),
                "inFlight": in_flight,
            }

    def shutdown(self, wait: bool = True) -> None:
        self._shutdown = True
        self._executor.shutdown(wait=wait)
