"""
Tenant authorization and creation guardrails. Every check is keyed by the
authenticated owner id; nothing here trusts an owner supplied by the client.
"""
from .identity import Identity, Role, authenticate
from .guardrails import CooldownTracker, GuardrailChain, build_guardrails
from .rate_limit import SlidingWindowLimiter

__all__ = [
    "Identity",
    "Role",
    "authenticate",
    "CooldownTracker",
    "GuardrailChain",
    "build_guardrails",
    "SlidingWindowLimiter",
]
