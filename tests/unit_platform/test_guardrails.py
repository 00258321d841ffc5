"""
Creation guardrails: store limit, cooldown, engine validation, chain ordering.
"""
from __future__ import annotations

import os
import sys
import threading

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from conftest import fast_settings
from storeplane.core.errors import DuplicateStore, QuotaExceeded, RateLimited, UnsupportedEngine
from storeplane.core.gateway.app import build_control_plane
from storeplane.core.tenant.guardrails import (
    CooldownTracker,
    CreationCooldownGuard,
    EngineGuard,
    StoreLimitGuard,
    build_guardrails,
)
from storeplane.core.tenant.identity import Identity, Role
from storeplane.core.tenant.rate_limit import SlidingWindowLimiter

TENANT = Identity(user_id="u-alice", role=Role.TENANT)
ADMIN = Identity(user_id="u-admin", role=Role.ADMIN)


class Clock:
    def __init__(self):
        self.now = 1_000.0

    def __call__(self):
        return self.now


class CountingRegistry:
    def __init__(self, active=0):
        self.active = active

    def count_active_by_owner(self, owner_id):
        return self.active


def test_store_limit_below_max_passes():
    StoreLimitGuard(CountingRegistry(active=4), max_stores=5).check(TENANT, {})


def test_store_limit_reached():
    with pytest.raises(QuotaExceeded) as exc:
        StoreLimitGuard(CountingRegistry(active=5), max_stores=5).check(TENANT, {})
    body = exc.value.to_dict()
    assert body["code"] == "QUOTA_EXCEEDED"
    assert body["limit"] == 5
    assert body["current"] == 5
    assert exc.value.status == 429


def test_store_limit_applies_to_admin():
    with pytest.raises(QuotaExceeded):
        StoreLimitGuard(CountingRegistry(active=2), max_stores=2).check(ADMIN, {})


def test_cooldown_blocks_until_elapsed():
    clock = Clock()
    tracker = CooldownTracker(60_000, clock=clock)
    guard = CreationCooldownGuard(tracker)
    guard.check(TENANT, {})
    guard.on_accepted(TENANT)
    clock.now += 10
    with pytest.raises(RateLimited) as exc:
        guard.check(TENANT, {})
    assert exc.value.extra["retryAfterSeconds"] == 50
    assert exc.value.code == "RATE_LIMITED"
    clock.now += 50
    guard.check(TENANT, {})


def test_cooldown_is_per_owner():
    tracker = CooldownTracker(60_000, clock=Clock())
    guard = CreationCooldownGuard(tracker)
    guard.on_accepted(TENANT)
    guard.check(Identity(user_id="u-bob", role=Role.TENANT), {})


def test_admin_exempt_from_cooldown():
    tracker = CooldownTracker(60_000, clock=Clock())
    guard = CreationCooldownGuard(tracker)
    guard.on_accepted(ADMIN)
    guard.check(ADMIN, {})
    assert tracker.remaining_ms(ADMIN.user_id) == 0


def test_cooldown_zero_disables():
    tracker = CooldownTracker(0)
    tracker.mark("u-alice")
    assert tracker.remaining_ms("u-alice") == 0


def test_cooldown_reset():
    tracker = CooldownTracker(60_000, clock=Clock())
    tracker.mark("u-alice")
    tracker.reset("u-alice")
    assert tracker.remaining_ms("u-alice") == 0


@pytest.mark.parametrize("body", [{}, {"engine": None}, {"engine": "woocommerce"}, {"engine": "MEDUSA"}])
def test_engine_guard_accepts(body):
    EngineGuard().check(TENANT, body)


@pytest.mark.parametrize("engine", ["shopify", "", 42])
def test_engine_guard_rejects(engine):
    with pytest.raises(UnsupportedEngine) as exc:
        EngineGuard().check(TENANT, {"engine": engine})
    assert exc.value.code == "UNSUPPORTED_ENGINE"
    assert exc.value.status == 400


def test_chain_short_circuits_on_first_failure():
    tracker = CooldownTracker(60_000, clock=Clock())
    tracker.mark(TENANT.user_id)
    chain = build_guardrails(CountingRegistry(active=5), max_stores=5, tracker=tracker)
    # Limit is checked before cooldown and engine.
    with pytest.raises(QuotaExceeded):
        chain.check(TENANT, {"engine": "shopify"})


def test_chain_commit_marks_cooldown():
    tracker = CooldownTracker(60_000, clock=Clock())
    chain = build_guardrails(CountingRegistry(active=0), max_stores=5, tracker=tracker)
    chain.check(TENANT, {})
    chain.commit(TENANT)
    with pytest.raises(RateLimited):
        chain.check(TENANT, {})


def test_reserve_is_test_and_set():
    tracker = CooldownTracker(60_000, clock=Clock())
    assert tracker.reserve("u-alice") == 0
    assert tracker.reserve("u-alice") == 60_000
    assert tracker.reserve("u-bob") == 0


def test_release_restores_previous_timestamp():
    clock = Clock()
    tracker = CooldownTracker(60_000, clock=clock)
    tracker.mark("u-alice")
    clock.now += 61
    assert tracker.reserve("u-alice") == 0
    tracker.release("u-alice")
    assert tracker.remaining_ms("u-alice") == 0
    tracker.release("u-alice")
    assert tracker.reserve("u-alice") == 0
    tracker.confirm("u-alice")
    tracker.release("u-alice")
    assert tracker.remaining_ms("u-alice") == 60_000


def test_later_guard_failure_releases_cooldown():
    tracker = CooldownTracker(60_000, clock=Clock())
    chain = build_guardrails(CountingRegistry(active=0), max_stores=5, tracker=tracker)
    with pytest.raises(UnsupportedEngine):
        chain.check(TENANT, {"engine": "shopify"})
    assert tracker.remaining_ms(TENANT.user_id) == 0
    chain.check(TENANT, {"engine": "medusa"})
    chain.commit(TENANT)
    assert tracker.remaining_ms(TENANT.user_id) == 60_000


def test_cooldown_rejection_keeps_other_reservation():
    tracker = CooldownTracker(60_000, clock=Clock())
    chain = build_guardrails(CountingRegistry(active=0), max_stores=5, tracker=tracker)
    chain.check(TENANT, {})
    with pytest.raises(RateLimited):
        chain.check(TENANT, {})
    chain.commit(TENANT)
    assert tracker.remaining_ms(TENANT.user_id) == 60_000


def test_concurrent_creates_within_cooldown_admit_one(provisioner):
    cp = build_control_plane(settings=fast_settings(creation_cooldown_ms=60_000), provisioner=provisioner,
                             orchestrator_sleep=lambda s: None)
    try:
        n = 4
        barrier = threading.Barrier(n)
        accepted, limited, errors = [], [], []

        def worker(i):
            barrier.wait()
            try:
                accepted.append(cp.stores.create_store(TENANT, {"name": f"shop-{i}"}))
            except RateLimited:
                limited.append(i)
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert errors == []
        assert len(accepted) == 1
        assert len(limited) == n - 1
    finally:
        cp.shutdown()


def test_registry_rejection_releases_cooldown(provisioner):
    cp = build_control_plane(settings=fast_settings(creation_cooldown_ms=60_000), provisioner=provisioner,
                             orchestrator_sleep=lambda s: None)
    try:
        cp.registry.create(TENANT.user_id, "taken")
        with pytest.raises(DuplicateStore):
            cp.stores.create_store(TENANT, {"name": "taken"})
        assert cp.stores.create_store(TENANT, {"name": "fresh"})["status"] == "requested"
        with pytest.raises(RateLimited):
            cp.stores.create_store(TENANT, {"name": "another"})
    finally:
        cp.shutdown()


def test_sliding_window_limiter():
    clock = Clock()
    limiter = SlidingWindowLimiter(max_attempts=2, window_sec=60, clock=clock)
    assert limiter.allow("ip") == (True, 0)
    assert limiter.allow("ip") == (True, 0)
    ok, retry_after = limiter.allow("ip")
    assert not ok
    assert retry_after == 60
    assert limiter.allow("other")[0]
    clock.now += 60
    assert limiter.allow("ip")[0]


def test_sliding_window_disabled():
    limiter = SlidingWindowLimiter(max_attempts=1, window_sec=60, enabled=False)
    assert all(limiter.allow("ip")[0] for _ in range(5))
