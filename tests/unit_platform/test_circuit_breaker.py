"""
Circuit breaker unit tests: consecutive-failure trip, half-open trial, client errors, env overrides.
"""
from __future__ import annotations

import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from storeplane.core.errors import DependencyUnavailable, DuplicateStore, ProvisionerError
from storeplane.core.gateway.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _fail():
    raise ProvisionerError("boom")


def test_circuit_breaker_closed_state():
    cb = CircuitBreaker("provisioner", failure_threshold=3, reset_timeout_sec=10)
    assert cb.state() == "closed"
    assert cb.allow_request() is True


def test_circuit_breaker_opens_after_consecutive_failures():
    cb = CircuitBreaker("provisioner", failure_threshold=3, reset_timeout_sec=10)
    for _ in range(3):
        with pytest.raises(ProvisionerError):
            cb.call(_fail)
    assert cb.state() == "open"
    with pytest.raises(DependencyUnavailable) as exc:
        cb.call(lambda: "never")
    assert exc.value.status == 503
    assert cb.stats()["totalRejected"] == 1


def test_success_resets_the_failure_streak():
    cb = CircuitBreaker("provisioner", failure_threshold=3, reset_timeout_sec=10)
    cb.record(False)
    cb.record(False)
    cb.record(True)
    cb.record(False)
    cb.record(False)
    assert cb.state() == "closed"
    assert cb.stats()["consecutiveFailures"] == 2


def test_half_open_after_timeout_then_closes_on_success():
    clock = FakeClock()
    cb = CircuitBreaker("database", failure_threshold=2, reset_timeout_sec=5, half_open_max=1, clock=clock)
    cb.record(False)
    cb.record(False)
    assert cb.state() == "open"
    clock.now += 5
    assert cb.state() == "half_open"
    assert cb.call(lambda: "ok") == "ok"
    assert cb.state() == "closed"


def test_half_open_failure_reopens():
    clock = FakeClock()
    cb = CircuitBreaker("database", failure_threshold=2, reset_timeout_sec=5, half_open_max=1, clock=clock)
    cb.record(False)
    cb.record(False)
    clock.now += 6
    with pytest.raises(ProvisionerError):
        cb.call(_fail)
    assert cb.state() == "open"


def test_half_open_limits_trial_calls():
    clock = FakeClock()
    cb = CircuitBreaker("database", failure_threshold=1, reset_timeout_sec=1, half_open_max=1, clock=clock)
    cb.record(False)
    clock.now += 2
    assert cb.allow_request() is True
    assert cb.allow_request() is False


def test_client_errors_do_not_trip_the_breaker():
    cb = CircuitBreaker("database", failure_threshold=1, reset_timeout_sec=10)

    def _dup():
        raise DuplicateStore("exists")

    with pytest.raises(DuplicateStore):
        cb.call(_dup)
    assert cb.state() == "closed"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("CB_FAILURE_THRESHOLD", "7")
    monkeypatch.setenv("CB_RESET_TIMEOUT_MS", "1500")
    cb = CircuitBreaker("provisioner")
    assert cb.failure_threshold == 7
    assert cb.reset_timeout_sec == 1.5
    stats = cb.stats()
    assert stats["failureThreshold"] == 7
    assert stats["resetTimeoutMs"] == 1500


def test_reset_closes():
    cb = CircuitBreaker("provisioner", failure_threshold=1, reset_timeout_sec=60)
    cb.record(False)
    assert cb.state() == "open"
    cb.reset()
    assert cb.state() == "closed"


def test_circuit_breaker_registry_returns_same_instance():
    reg = CircuitBreakerRegistry(failure_threshold=2)
    a = reg.get("database")
    assert reg.get("database") is a
    assert reg.get("provisioner") is not a
    assert a.failure_threshold == 2
    assert {s["name"] for s in reg.all_stats()} == {"database", "provisioner"}
