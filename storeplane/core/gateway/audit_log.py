"""
Append-only audit log of privileged actions and store state transitions.
Entries land in the `audit_logs` table and, when a mirror path is configured, are also
appended to a JSONL file. Each entry carries lineHash (first 16 hex of SHA-256 over the
entry) so tampering can be detected afterwards. There is no update or delete path.
A failed audit write is logged and never breaks the action being audited.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import JSON, Column, Integer, String, Text, func, select

from ..store.database import Base, Database
from ..store.models import utcnow_iso

logger = logging.getLogger("storeplane.audit")

# action kinds
STORE_CREATE = "store.create"
STORE_DELETE = "store.delete"
STORE_RETRY = "store.retry"
STORE_TRANSITION = "store.transition"
STORE_READ = "store.read"
STORE_LOGS_READ = "store.logs.read"
AUTH_REGISTER = "auth.register"
AUTH_LOGIN = "auth.login"

# outcomes
ACCEPTED = "accepted"
REJECTED = "rejected"
SUCCESS = "success"
FAILURE = "failure"

SYSTEM_ACTOR = "system"
ANONYMOUS_ACTOR = "anonymous"

_MAX_LIMIT = 500


class AuditEntry(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(String(64), nullable=False)
    actor_role = Column(String(16), nullable=False)
    action = Column(String(64), nullable=False, index=True)
    store_id = Column(String(32), nullable=True, index=True)
    owner_id = Column(String(64), nullable=True, index=True)
    outcome = Column(String(16), nullable=False)
    previous_status = Column(String(16), nullable=True)
    new_status = Column(String(16), nullable=True)
    message = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)
    request_id = Column(String(64), nullable=True)
    created_at = Column(String(32), nullable=False, index=True)
    line_hash = Column(String(16), nullable=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "actorId": self.actor_id,
            "actorRole": self.actor_role,
            "action": self.action,
            "storeId": self.store_id,
            "ownerId": self.owner_id,
            "outcome": self.outcome,
            "previousStatus": self.previous_status,
            "newStatus": self.new_status,
            "message": self.message,
            "metadata": self.metadata_ or {},
            "ipAddress": self.ip_address,
            "requestId": self.request_id,
            "createdAt": self.created_at,
            "lineHash": self.line_hash,
        }


def _line_hash(record: Dict[str, Any]) -> str:
    """Hash over the record content (without lineHash itself)."""
    payload = json.dumps(record, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def verify_line(record: Dict[str, Any]) -> bool:
    """True when a mirrored record still matches its lineHash."""
    body = {k: v for k, v in record.items() if k not in ("lineHash", "id")}
    return _line_hash(body) == record.get("lineHash")


class AuditLog:

    def __init__(self, db: Database, mirror_path: str = "") -> None:
        self._db = db
        self._mirror_path = mirror_path or ""
        self._mirror_lock = threading.Lock()

    def record(
        self,
        actor_id: str,
        actor_role: str,
        action: str,
        outcome: str,
        store_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        message: str = "",
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip_address: str = "",
        request_id: str = "",
    ) -> Optional[Dict[str, Any]]:
        """Append one entry; returns it as a dict, or None when the write failed."""
        record = {
            "actorId": actor_id or SYSTEM_ACTOR,
            "actorRole": getattr(actor_role, "value", actor_role) or SYSTEM_ACTOR,
            "action": action,
            "storeId": store_id,
            "ownerId": owner_id,
            "outcome": outcome,
            "previousStatus": previous_status,
            "newStatus": new_status,
            "message": message or "",
            "metadata": metadata or {},
            "ipAddress": ip_address or None,
            "requestId": request_id or None,
            "createdAt": utcnow_iso(),
        }
        record["lineHash"] = _line_hash(record)
        try:
            with self._db.lock, self._db.session() as s:
                entry = AuditEntry(
                    actor_id=record["actorId"],
                    actor_role=record["actorRole"],
                    action=action,
                    store_id=store_id,
                    owner_id=owner_id,
                    outcome=outcome,
                    previous_status=previous_status,
                    new_status=new_status,
                    message=record["message"],
                    metadata_=record["metadata"],
                    ip_address=record["ipAddress"],
                    request_id=record["requestId"],
                    created_at=record["createdAt"],
                    line_hash=record["lineHash"],
                )
                s.add(entry)
                s.commit()
                record["id"] = entry.id
        except Exception:
            logger.exception("audit write failed action=%s store_id=%s", action, store_id)
            return None
        self._mirror(record)
        return record

    def _mirror(self, record: Dict[str, Any]) -> None:
        if not self._mirror_path:
            return
        line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
        try:
            with self._mirror_lock:
                parent = os.path.dirname(self._mirror_path)
                if parent:
                    os.makedirs(parent, exist_ok=True)
                with open(self._mirror_path, "a", encoding="utf-8") as f:
                    f.write(line)
        except OSError:
            logger.exception("audit mirror append failed path=%s", self._mirror_path)

    def list_for_store(self, store_id: str, limit: int = 100, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        """Entries targeting one store, newest first."""
        return self.search(store_id=store_id, limit=limit, offset=offset)

    def search(self, store_id: Optional[str] = None, owner_id: Optional[str] = None,
               action: Optional[str] = None, actor_id: Optional[str] = None,
               limit: int = 100, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        limit = max(1, min(int(limit or 100), _MAX_LIMIT))
        offset = max(0, int(offset or 0))
        conditions = []
        if store_id:
            conditions.append(AuditEntry.store_id == store_id)
        if owner_id:
            conditions.append(AuditEntry.owner_id == owner_id)
        if action:
            conditions.append(AuditEntry.action == action)
        if actor_id:
            conditions.append(AuditEntry.actor_id == actor_id)
        with self._db.session() as s:
            total = s.execute(select(func.count()).select_from(AuditEntry).where(*conditions)).scalar() or 0
            rows = s.execute(
                select(AuditEntry)
                .where(*conditions)
                .order_by(AuditEntry.id.desc())
                .limit(limit)
                .offset(offset)
            ).scalars().all()
            return [r.to_dict() for r in rows], int(total)


__all__ = ["AuditLog", "AuditEntry", "verify_line"]
