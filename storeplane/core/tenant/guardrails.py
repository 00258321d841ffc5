"""
Guardrails applied to store-creation requests before anything is persisted:
store limit -> creation cooldown -> engine validation. The first failing guard
short-circuits the rest. The cooldown map is owned by a CooldownTracker that is
injected, so it can be reset in tests or swapped for a shared store.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..errors import QuotaExceeded, RateLimited, UnsupportedEngine
from ..log import json_log
from ..store.models import SUPPORTED_ENGINES, parse_engine
from .identity import Identity

logger = logging.getLogger("storeplane.guardrails")

_CLEANUP_THRESHOLD = 10000


class CooldownTracker:
    """Per-owner timestamp of the last accepted creation. Process-local."""

    def __init__(self, cooldown_ms: int, clock: Callable[[], float] = time.time) -> None:
        self.cooldown_ms = max(0, int(cooldown_ms))
        self._clock = clock
        self._last: Dict[str, float] = {}
        # owner -> (reserved_at, previous timestamp) for reservations not yet confirmed
        self._pending: Dict[str, Tuple[float, Optional[float]]] = {}
        self._lock = threading.Lock()

    def _remaining_locked(self, owner_id: str, now: float) -> int:
        last = self._last.get(owner_id)
        if last is None:
            return 0
        return max(0, int(math.ceil(self.cooldown_ms - (now - last) * 1000.0)))

    def remaining_ms(self, owner_id: str) -> int:
        if self.cooldown_ms <= 0:
            return 0
        with self._lock:
            return self._remaining_locked(owner_id, self._clock())

    def reserve(self, owner_id: str) -> int:
        """
        Test-and-set: claim the window for owner_id.
        Returns 0 when the claim succeeded, otherwise the milliseconds left.
        """
        if self.cooldown_ms <= 0:
            return 0
        with self._lock:
            now = self._clock()
            remaining = self._remaining_locked(owner_id, now)
            if remaining > 0:
                return remaining
            self._pending[owner_id] = (now, self._last.get(owner_id))
            self._set_locked(owner_id, now)
        return 0

    def confirm(self, owner_id: str) -> None:
        with self._lock:
            self._pending.pop(owner_id, None)

    def release(self, owner_id: str) -> None:
        """Undo an unconfirmed reservation, restoring the previous timestamp."""
        with self._lock:
            pending = self._pending.pop(owner_id, None)
            if pending is None:
                return
            reserved_at, previous = pending
            if self._last.get(owner_id) != reserved_at:
                return
            if previous is None:
                del self._last[owner_id]
            else:
                self._last[owner_id] = previous

    def mark(self, owner_id: str) -> None:
        with self._lock:
            self._set_locked(owner_id, self._clock())

    def _set_locked(self, owner_id: str, now: float) -> None:
        self._last[owner_id] = now
        if len(self._last) > _CLEANUP_THRESHOLD:
            cutoff = now - (self.cooldown_ms * 2) / 1000.0
            for uid in [u for u, ts in self._last.items() if ts < cutoff]:
                del self._last[uid]

    def reset(self, owner_id: Optional[str] = None) -> None:
        with self._lock:
            if owner_id is None:
                self._last.clear()
                self._pending.clear()
            else:
                self._last.pop(owner_id, None)
                self._pending.pop(owner_id, None)


class Guard:
    name = "guard"

    def check(self, identity: Identity, body: Dict[str, Any]) -> None:
        raise NotImplementedError

    def on_accepted(self, identity: Identity) -> None:
        """Called once the store row exists."""

    def on_rejected(self, identity: Identity) -> None:
        """Called when this guard passed but the request was rejected afterwards."""


class StoreLimitGuard(Guard):
    name = "store_limit"

    def __init__(self, registry, max_stores: int) -> None:
        self._registry = registry
        self.max_stores = max_stores

    def check(self, identity: Identity, body: Dict[str, Any]) -> None:
        active = self._registry.count_active_by_owner(identity.user_id)
        if active >= self.max_stores:
            json_log(logger, "warning", "store_limit_exceeded", owner_id=identity.user_id,
                     active_count=active, limit=self.max_stores)
            raise QuotaExceeded(
                f"Store limit reached. You can have at most {self.max_stores} active stores.",
                details=f"active={active} limit={self.max_stores}",
                limit=self.max_stores,
                current=active,
            )


class CreationCooldownGuard(Guard):
    """Reserves the owner's window at check time; the reservation is confirmed or released later."""
    name = "creation_cooldown"

    def __init__(self, tracker: CooldownTracker) -> None:
        self.tracker = tracker

    def check(self, identity: Identity, body: Dict[str, Any]) -> None:
        if identity.is_admin:
            return
        remaining_ms = self.tracker.reserve(identity.user_id)
        if remaining_ms > 0:
            remaining_sec = int(math.ceil(remaining_ms / 1000.0))
            json_log(logger, "warning", "creation_cooldown_active", owner_id=identity.user_id,
                     remaining_sec=remaining_sec)
            raise RateLimited(
                f"Please wait {remaining_sec} seconds before creating another store.",
                suggestion=f"Wait {remaining_sec} seconds before retrying.",
                retryAfterSeconds=remaining_sec,
            )

    def on_accepted(self, identity: Identity) -> None:
        if not identity.is_admin:
            self.tracker.confirm(identity.user_id)

    def on_rejected(self, identity: Identity) -> None:
        if not identity.is_admin:
            self.tracker.release(identity.user_id)


class EngineGuard(Guard):
    name = "engine"

    def check(self, identity: Identity, body: Dict[str, Any]) -> None:
        if "engine" not in body or body.get("engine") is None:
            return
        engine = body.get("engine")
        if not isinstance(engine, str) or parse_engine(engine) is None:
            json_log(logger, "warning", "unsupported_engine", owner_id=identity.user_id, engine=str(engine))
            raise UnsupportedEngine(
                f"Engine '{engine}' is not supported. Supported engines: {', '.join(SUPPORTED_ENGINES)}",
            )


class GuardrailChain:
    """
    Ordered guards. `check` raises the first failure after rolling back the guards
    that already passed; once it returns, the caller must end with `commit` or `release`.
    """

    def __init__(self, guards: Iterable[Guard]) -> None:
        self.guards: List[Guard] = list(guards)

    def check(self, identity: Identity, body: Dict[str, Any]) -> None:
        passed: List[Guard] = []
        try:
            for guard in self.guards:
                guard.check(identity, body)
                passed.append(guard)
        except Exception:
            for guard in reversed(passed):
                guard.on_rejected(identity)
            raise

    def commit(self, identity: Identity) -> None:
        for guard in self.guards:
            guard.on_accepted(identity)

    def release(self, identity: Identity) -> None:
        for guard in reversed(self.guards):
            guard.on_rejected(identity)


def build_guardrails(registry, max_stores: int, tracker: CooldownTracker) -> GuardrailChain:
    return GuardrailChain([
        StoreLimitGuard(registry, max_stores),
        CreationCooldownGuard(tracker),
        EngineGuard(),
    ])
