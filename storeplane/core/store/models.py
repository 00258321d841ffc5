"""
Store entity. Rows are never removed; `deleted` is a status, and the
(owner_id, name) pair is unique only among rows that are not deleted.
"""
from __future__ import annotations

import secrets
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, Index, Integer, String, Text, text

from .database import Base


class Engine(str, Enum):
    WOOCOMMERCE = "woocommerce"
    MEDUSA = "medusa"


SUPPORTED_ENGINES = tuple(e.value for e in Engine)
DEFAULT_ENGINE = Engine.WOOCOMMERCE


def generate_store_id() -> str:
    """store-{8 hex}: DNS-safe, usable directly as a workload name."""
    return f"store-{secrets.token_hex(4)}"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Store(Base):
    __tablename__ = "stores"

    id = Column(String(32), primary_key=True, default=generate_store_id)
    owner_id = Column(String(64), nullable=False, index=True)
    name = Column(String(63), nullable=False)
    engine = Column(String(32), nullable=False, default=DEFAULT_ENGINE.value)
    status = Column(String(16), nullable=False, default="requested", index=True)
    failure_reason = Column(Text, nullable=True)
    urls = Column(JSON, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    provisioning_started_at = Column(String(32), nullable=True)
    provisioning_completed_at = Column(String(32), nullable=True)
    provisioning_duration_ms = Column(Integer, nullable=True)
    created_at = Column(String(32), nullable=False, default=utcnow_iso)
    updated_at = Column(String(32), nullable=False, default=utcnow_iso)
    deleted_at = Column(String(32), nullable=True)

    __table_args__ = (
        Index(
            "uq_stores_owner_name_live",
            "owner_id",
            "name",
            unique=True,
            sqlite_where=text("status != 'deleted'"),
            postgresql_where=text("status != 'deleted'"),
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        urls = self.urls or {}
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "name": self.name,
            "engine": self.engine,
            "status": self.status,
            "failureReason": self.failure_reason or None,
            "urls": {
                "storefront": urls.get("storefront"),
                "admin": urls.get("admin"),
            },
            "retryCount": self.retry_count or 0,
            "provisioningStartedAt": self.provisioning_started_at,
            "provisioningCompletedAt": self.provisioning_completed_at,
            "provisioningDurationMs": self.provisioning_duration_ms,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "deletedAt": self.deleted_at,
        }

    def __repr__(self) -> str:
        return f"<Store {self.id} owner={self.owner_id} name={self.name} status={self.status}>"


def parse_engine(value: Optional[str]) -> Optional[Engine]:
    if value is None:
        return None
    try:
        return Engine(str(value).strip().lower())
    except ValueError:
        return None
