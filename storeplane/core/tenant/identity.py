"""
Tenant authorization: resolves the acting identity from a Bearer token and decides
ownership-scoped visibility. A tenant sees and mutates only stores it owns; an admin
sees everything. Existence is not hidden: a foreign store yields Forbidden, not NotFound.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import Forbidden, Unauthenticated

OWNER_FIELDS = ("ownerId", "owner_id", "userId", "user_id")


class Role(str, Enum):
    TENANT = "tenant"
    ADMIN = "admin"


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: Role
    email: str = ""
    username: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.user_id, "role": self.role.value, "email": self.email, "username": self.username}

    @classmethod
    def from_session(cls, info: Dict[str, Any]) -> "Identity":
        try:
            role = Role(info.get("role") or Role.TENANT.value)
        except ValueError:
            raise Unauthenticated("Token carries an unknown role.")
        user_id = info.get("userId") or ""
        if not user_id:
            raise Unauthenticated("Token carries no user.")
        return cls(user_id=user_id, role=role, email=info.get("email") or "", username=info.get("username") or "")


def bearer_token(authorization: Optional[str]) -> str:
    auth = authorization or ""
    if not auth.startswith("Bearer "):
        return ""
    return auth[7:].strip()


def authenticate(token_store, authorization: Optional[str]) -> Identity:
    """Authorization header -> Identity; Unauthenticated when missing, unknown or expired."""
    token = bearer_token(authorization)
    if not token:
        raise Unauthenticated("Authentication required.", details="Missing Bearer token.")
    info = token_store.get(token)
    if not info:
        raise Unauthenticated("Invalid or expired token.", suggestion="Log in again to obtain a new token.")
    return Identity.from_session(info)


def can_access(identity: Identity, store) -> bool:
    return identity.is_admin or store.owner_id == identity.user_id


def authorize_store(identity: Identity, store, action: str = "access") -> None:
    if not can_access(identity, store):
        raise Forbidden(
            f"You do not have permission to {action} this store.",
            suggestion="You can only manage stores you own.",
        )


def require_admin(identity: Identity) -> None:
    if not identity.is_admin:
        raise Forbidden("Admin role required.")


def is_cross_tenant(identity: Identity, store) -> bool:
    """Admin touching a store it does not own; such reads are audited."""
    return identity.is_admin and store.owner_id != identity.user_id


def strip_owner_fields(body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop any client-supplied owner field; the owner always comes from the identity."""
    return {k: v for k, v in (body or {}).items() if k not in OWNER_FIELDS}


def list_scope(identity: Identity, requested_owner: Optional[str] = None) -> Optional[str]:
    """Owner filter for listings: tenants are pinned to themselves, admins may narrow or see all."""
    if identity.is_admin:
        return requested_owner or None
    return identity.user_id
