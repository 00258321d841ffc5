"""
Store lifecycle state machine: the single authority on which transitions are legal.

    requested --> provisioning --> ready --> deleting --> deleted
                       |                        |
                       +--> failed <------------+
                              |
                              +--> requested (retry), deleting

Pure functions only; the registry calls assert_transition before every status write.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, FrozenSet, Tuple

from ..errors import InvalidTransition

logger = logging.getLogger("storeplane.state_machine")


class StoreState(str, Enum):
    REQUESTED = "requested"
    PROVISIONING = "provisioning"
    READY = "ready"
    FAILED = "failed"
    DELETING = "deleting"
    DELETED = "deleted"


TRANSITIONS: Dict[StoreState, FrozenSet[StoreState]] = {
    StoreState.REQUESTED: frozenset({StoreState.PROVISIONING}),
    StoreState.PROVISIONING: frozenset({StoreState.READY, StoreState.FAILED}),
    StoreState.READY: frozenset({StoreState.DELETING}),
    StoreState.FAILED: frozenset({StoreState.REQUESTED, StoreState.DELETING}),
    StoreState.DELETING: frozenset({StoreState.DELETED, StoreState.FAILED}),
    StoreState.DELETED: frozenset(),
}

# Counted against the per-tenant store limit.
ACTIVE_STATES = frozenset({StoreState.REQUESTED, StoreState.PROVISIONING, StoreState.READY})
TERMINAL_STATES = frozenset({StoreState.DELETED})
# Work the orchestrator owns; recovered on startup.
IN_PROGRESS_STATES = frozenset({StoreState.REQUESTED, StoreState.PROVISIONING, StoreState.DELETING})


def parse_state(value) -> StoreState:
    if isinstance(value, StoreState):
        return value
    try:
        return StoreState(value)
    except ValueError:
        raise InvalidTransition(str(value), str(value), f"Unknown state: {value}")


def validate_transition(from_state, to_state) -> Tuple[bool, str]:
    try:
        src = StoreState(from_state)
    except ValueError:
        return False, f"Unknown state: {from_state}"
    try:
        dst = StoreState(to_state)
    except ValueError:
        return False, f"Unknown target state: {to_state}"
    allowed = TRANSITIONS[src]
    if dst not in allowed:
        valid = ", ".join(sorted(s.value for s in allowed))
        return False, f"Transition from '{src.value}' to '{dst.value}' is not allowed. Valid transitions: [{valid}]"
    return True, ""


def assert_transition(from_state, to_state) -> None:
    ok, reason = validate_transition(from_state, to_state)
    if not ok:
        logger.warning("invalid state transition attempted from=%s to=%s reason=%s", from_state, to_state, reason)
        raise InvalidTransition(str(getattr(from_state, "value", from_state)),
                                str(getattr(to_state, "value", to_state)), reason)


def is_terminal(state) -> bool:
    return parse_state(state) in TERMINAL_STATES


def is_active(state) -> bool:
    return parse_state(state) in ACTIVE_STATES


def is_in_progress(state) -> bool:
    return parse_state(state) in IN_PROGRESS_STATES


def can_delete(state) -> Tuple[bool, str]:
    state = parse_state(state)
    if state in (StoreState.READY, StoreState.FAILED):
        return True, ""
    if state == StoreState.DELETED:
        return False, "Store is already deleted."
    if state == StoreState.DELETING:
        return False, "Store is already being deleted."
    if state == StoreState.PROVISIONING:
        return False, "Cannot delete while provisioning. Wait for completion or failure before deleting."
    return False, f"Cannot delete store in '{state.value}' state."


def can_retry(state) -> Tuple[bool, str]:
    state = parse_state(state)
    if state != StoreState.FAILED:
        return False, f"Only failed stores can be retried. Current status: '{state.value}'."
    return True, ""


__all__ = [
    "StoreState",
    "TRANSITIONS",
    "ACTIVE_STATES",
    "TERMINAL_STATES",
    "IN_PROGRESS_STATES",
    "parse_state",
    "validate_transition",
    "assert_transition",
    "is_terminal",
    "is_active",
    "is_in_progress",
    "can_delete",
    "can_retry",
]
