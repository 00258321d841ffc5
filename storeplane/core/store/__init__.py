"""
Store entity, lifecycle state machine and registry.
"""
from .machine import StoreState, assert_transition, can_delete, can_retry, is_active, is_terminal
from .models import Engine, Store
from .registry import StoreRegistry

__all__ = [
    "StoreState",
    "assert_transition",
    "can_delete",
    "can_retry",
    "is_active",
    "is_terminal",
    "Engine",
    "Store",
    "StoreRegistry",
]
