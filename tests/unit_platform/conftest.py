"""
Shared fixtures for control-plane unit tests: in-memory SQLite, simulated provisioner,
Flask test client and account helpers.
"""
from __future__ import annotations

import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from storeplane.core.gateway.app import build_control_plane, create_app
from storeplane.core.gateway.audit_log import AuditLog
from storeplane.core.gateway.circuit_breaker import CircuitBreaker
from storeplane.core.gateway.config import load_settings
from storeplane.core.monitor.metrics import MetricsRegistry
from storeplane.core.orchestrator.provisioner import SimulatedProvisioner
from storeplane.core.orchestrator.worker import Orchestrator
from storeplane.core.store.database import Database
from storeplane.core.store.registry import StoreRegistry

PASSWORD = "correct-horse-9"


def fast_settings(**overrides):
    """Settings without waits: no cooldown, no polling delay, no backoff, cheap bcrypt."""
    values = dict(
        bcrypt_rounds=4,
        creation_cooldown_ms=0,
        provisioning_poll_interval_ms=0,
        retry_base_delay_ms=0,
        step_retries=0,
        rate_limit_enabled=False,
    )
    values.update(overrides)
    return load_settings(env={}, path="", **values)


@pytest.fixture
def settings():
    return fast_settings()


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def registry(db):
    return StoreRegistry(db)


@pytest.fixture
def audit(db):
    return AuditLog(db)


@pytest.fixture
def provisioner():
    return SimulatedProvisioner()


@pytest.fixture
def orchestrator(registry, provisioner, audit):
    orch = Orchestrator(
        registry, provisioner, audit,
        CircuitBreaker("provisioner", failure_threshold=50, reset_timeout_sec=1),
        metrics=MetricsRegistry(),
        max_concurrent=2,
        timeout_ms=2000,
        poll_interval_ms=0,
        step_retries=0,
        retry_base_delay_ms=0,
        max_retry_count=2,
        sleep=lambda s: None,
    )
    yield orch
    orch.shutdown(wait=True)


@pytest.fixture
def control_plane(settings, provisioner):
    cp = build_control_plane(settings=settings, provisioner=provisioner, orchestrator_sleep=lambda s: None)
    yield cp
    cp.shutdown()


@pytest.fixture
def app(control_plane):
    application = create_app(control_plane)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app):
    with app.test_client() as c:
        yield c


@pytest.fixture
def register(client):
    """register(email) -> (token, user). The first account registered in a test is the admin."""
    def _register(email, password=PASSWORD, username=None):
        body = {"email": email, "password": password}
        if username:
            body["username"] = username
        r = client.post("/auth/register", json=body)
        assert r.status_code == 201, r.get_json()
        data = r.get_json()
        return data["token"], data["user"]
    return _register


@pytest.fixture
def accounts(register):
    """admin, alice and bob, registered in that order."""
    admin_token, admin = register("admin@example.com")
    alice_token, alice = register("alice@example.com")
    bob_token, bob = register("bob@example.com")
    return {
        "admin": (admin_token, admin),
        "alice": (alice_token, alice),
        "bob": (bob_token, bob),
    }


def auth(token):
    return {"Authorization": f"Bearer {token}"}
