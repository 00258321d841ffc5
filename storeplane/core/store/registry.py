"""
Store registry: the only component that persists store state.
Every status write goes through assert_transition and a compare-and-set on the
current status, so an out-of-order or concurrent write cannot corrupt a row.
Duplicate (owner_id, name) among live stores is rejected by the partial unique
index, not by a pre-check.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictingOperation, DuplicateStore, NotFound
from ..log import json_log
from .database import Database
from .machine import ACTIVE_STATES, IN_PROGRESS_STATES, StoreState, assert_transition, parse_state
from .models import DEFAULT_ENGINE, Store, generate_store_id, utcnow_iso

logger = logging.getLogger("storeplane.registry")

_UPDATABLE = (
    "failure_reason",
    "urls",
    "retry_count",
    "provisioning_started_at",
    "provisioning_completed_at",
    "provisioning_duration_ms",
    "deleted_at",
)
_MAX_LIST_LIMIT = 100
_ID_ATTEMPTS = 3


class StoreRegistry:
    """SQL-backed store registry. `breaker` (optional) guards every database round trip."""

    def __init__(self, db: Database, breaker=None) -> None:
        self._db = db
        self._breaker = breaker

    def _run(self, fn):
        if self._breaker is not None:
            return self._breaker.call(fn)
        return fn()

    # ---------- writes ----------

    def create(self, owner_id: str, name: str, engine: Optional[str] = None) -> Store:
        """Insert a store in `requested`. DuplicateStore when a live store with the same name exists for the owner."""
        engine = engine or DEFAULT_ENGINE.value

        def _insert() -> Store:
            with self._db.lock:
                for _ in range(_ID_ATTEMPTS):
                    now = utcnow_iso()
                    store = Store(
                        id=generate_store_id(),
                        owner_id=owner_id,
                        name=name,
                        engine=engine,
                        status=StoreState.REQUESTED.value,
                        retry_count=0,
                        created_at=now,
                        updated_at=now,
                    )
                    with self._db.session() as s:
                        s.add(store)
                        try:
                            s.commit()
                            return store
                        except IntegrityError:
                            s.rollback()
                            if self._live_name_exists(s, owner_id, name):
                                raise DuplicateStore(
                                    f"A store named '{name}' already exists.",
                                    details=f"owner={owner_id}",
                                )
                # Only an id collision on every attempt lands here.
                raise ConflictingOperation("Could not allocate a unique store id.")

        store = self._run(_insert)
        json_log(logger, "info", "store_created", store_id=store.id, owner_id=owner_id, engine=engine)
        return store

    @staticmethod
    def _live_name_exists(session, owner_id: str, name: str) -> bool:
        q = select(func.count()).select_from(Store).where(
            Store.owner_id == owner_id,
            Store.name == name,
            Store.status != StoreState.DELETED.value,
        )
        return (session.execute(q).scalar() or 0) > 0

    def update_status(self, store_id: str, new_state, expected=None, **extra: Any) -> Store:
        """
        Transition a store to `new_state`, persisting any of the bookkeeping fields in `extra`.
        `expected` pins the source state; otherwise the current persisted state is used.
        Raises InvalidTransition for a pair outside the table, ConflictingOperation when the
        row moved underneath the caller.
        """
        target = parse_state(new_state)
        unknown = set(extra) - set(_UPDATABLE)
        if unknown:
            raise ValueError(f"unknown store fields: {sorted(unknown)}")

        def _write() -> Store:
            with self._db.lock, self._db.session() as s:
                current = s.get(Store, store_id)
                if current is None:
                    raise NotFound(f"Store {store_id} not found.")
                source = parse_state(expected) if expected is not None else parse_state(current.status)
                if source.value != current.status:
                    raise ConflictingOperation(
                        f"Store {store_id} is '{current.status}', expected '{source.value}'.",
                    )
                assert_transition(source, target)
                values: Dict[str, Any] = {"status": target.value, "updated_at": utcnow_iso()}
                values.update(extra)
                if target != StoreState.FAILED:
                    values["failure_reason"] = None
                result = s.execute(
                    update(Store)
                    .where(Store.id == store_id, Store.status == source.value)
                    .values(**values)
                )
                if result.rowcount == 0:
                    s.rollback()
                    raise ConflictingOperation(f"Store {store_id} changed state concurrently.")
                s.commit()
                s.refresh(current)
                return current

        store = self._run(_write)
        json_log(logger, "info", "store_transition", store_id=store_id, status=target.value)
        return store

    def soft_delete(self, store_id: str) -> Store:
        """deleting -> deleted; the row is kept for history."""
        return self.update_status(
            store_id, StoreState.DELETED, expected=StoreState.DELETING, deleted_at=utcnow_iso(),
        )

    # ---------- reads ----------

    def find(self, store_id: str) -> Optional[Store]:
        def _read():
            with self._db.session() as s:
                return s.get(Store, store_id)
        return self._run(_read)

    def get(self, store_id: str) -> Store:
        store = self.find(store_id)
        if store is None:
            raise NotFound(f"Store {store_id} not found.", suggestion="Check the store id.")
        return store

    def list_by_owner(self, owner_id: str, **filters: Any) -> Tuple[List[Store], int]:
        return self._list(owner_id=owner_id, **filters)

    def list_all(self, owner_id: Optional[str] = None, **filters: Any) -> Tuple[List[Store], int]:
        """Unscoped listing; callers enforce that only admins reach it."""
        return self._list(owner_id=owner_id, **filters)

    def _list(self, owner_id: Optional[str] = None, status: Optional[str] = None,
              engine: Optional[str] = None, limit: int = 50, offset: int = 0) -> Tuple[List[Store], int]:
        limit = max(1, min(int(limit or 50), _MAX_LIST_LIMIT))
        offset = max(0, int(offset or 0))
        conditions = []
        if owner_id:
            conditions.append(Store.owner_id == owner_id)
        if status:
            conditions.append(Store.status == parse_state(status).value)
        else:
            conditions.append(Store.status != StoreState.DELETED.value)
        if engine:
            conditions.append(Store.engine == engine)

        def _read():
            with self._db.session() as s:
                total = s.execute(select(func.count()).select_from(Store).where(*conditions)).scalar() or 0
                rows = s.execute(
                    select(Store)
                    .where(*conditions)
                    .order_by(Store.created_at.desc(), Store.id.desc())
                    .limit(limit)
                    .offset(offset)
                ).scalars().all()
                return list(rows), int(total)
        return self._run(_read)

    def count_active_by_owner(self, owner_id: str) -> int:
        active = [s.value for s in ACTIVE_STATES]

        def _count():
            with self._db.session() as s:
                q = select(func.count()).select_from(Store).where(
                    Store.owner_id == owner_id, Store.status.in_(active),
                )
                return int(s.execute(q).scalar() or 0)
        return self._run(_count)

    def find_in_progress(self) -> List[Store]:
        states = [s.value for s in IN_PROGRESS_STATES]

        def _read():
            with self._db.session() as s:
                q = select(Store).where(Store.status.in_(states)).order_by(Store.created_at.asc())
                return list(s.execute(q).scalars().all())
        return self._run(_read)

    def ping(self) -> bool:
        """Round trip to the database; raises on failure."""
        with self._db.session() as s:
            s.execute(text("SELECT 1"))
        return True
