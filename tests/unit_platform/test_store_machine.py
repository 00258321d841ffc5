"""
Store lifecycle state machine: transition table, predicates, delete/retry eligibility.
"""
from __future__ import annotations

import itertools
import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from storeplane.core.errors import InvalidTransition
from storeplane.core.store.machine import (
    StoreState,
    assert_transition,
    can_delete,
    can_retry,
    is_active,
    is_in_progress,
    is_terminal,
    validate_transition,
)

ALLOWED = {
    ("requested", "provisioning"),
    ("provisioning", "ready"),
    ("provisioning", "failed"),
    ("ready", "deleting"),
    ("failed", "requested"),
    ("failed", "deleting"),
    ("deleting", "deleted"),
    ("deleting", "failed"),
}


@pytest.mark.parametrize("src,dst", list(itertools.product([s.value for s in StoreState], repeat=2)))
def test_transition_table(src, dst):
    ok, reason = validate_transition(src, dst)
    assert ok is ((src, dst) in ALLOWED)
    if ok:
        assert reason == ""
    else:
        assert src in reason and dst in reason


def test_deleted_is_a_dead_end():
    for target in StoreState:
        ok, _ = validate_transition(StoreState.DELETED, target)
        assert not ok


def test_assert_transition_raises_with_states():
    with pytest.raises(InvalidTransition) as exc:
        assert_transition("requested", "ready")
    err = exc.value
    assert err.from_state == "requested"
    assert err.to_state == "ready"
    assert err.code == "INVALID_STATE_TRANSITION"
    assert "provisioning" in err.message


def test_unknown_state_is_rejected():
    ok, reason = validate_transition("paused", "ready")
    assert not ok
    assert "Unknown state" in reason
    with pytest.raises(InvalidTransition):
        is_active("paused")


def test_predicates():
    assert is_terminal("deleted")
    assert not is_terminal("failed")
    assert {s for s in StoreState if is_active(s)} == {
        StoreState.REQUESTED, StoreState.PROVISIONING, StoreState.READY,
    }
    assert {s for s in StoreState if is_in_progress(s)} == {
        StoreState.REQUESTED, StoreState.PROVISIONING, StoreState.DELETING,
    }


@pytest.mark.parametrize("state", ["ready", "failed"])
def test_can_delete_allowed(state):
    assert can_delete(state) == (True, "")


@pytest.mark.parametrize("state,fragment", [
    ("provisioning", "Cannot delete while provisioning"),
    ("deleting", "already being deleted"),
    ("deleted", "already deleted"),
    ("requested", "requested"),
])
def test_can_delete_refused_with_reason(state, fragment):
    ok, reason = can_delete(state)
    assert not ok
    assert fragment in reason


def test_can_retry_only_failed():
    assert can_retry("failed") == (True, "")
    for state in ("requested", "provisioning", "ready", "deleting", "deleted"):
        ok, reason = can_retry(state)
        assert not ok
        assert "Only failed stores can be retried" in reason
        assert state in reason
