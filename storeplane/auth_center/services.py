"""
Account service: registration, credential check, token issuance.
The first account ever registered becomes admin; everyone after is a tenant.
Tokens are opaque random strings mapped to {userId, role, email, username} in the token store.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional, Tuple

import bcrypt
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from ..core.errors import InvalidCredentials, UserExists
from ..core.store.models import utcnow_iso
from ..core.tenant.identity import Role
from .models.user import User

logger = logging.getLogger("storeplane.auth")


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


class AccountService:

    def __init__(self, db, token_store, session_ttl_sec: int = 86400, bcrypt_rounds: int = 12) -> None:
        self._db = db
        self._tokens = token_store
        self.session_ttl_sec = session_ttl_sec
        self.bcrypt_rounds = bcrypt_rounds
        # Compared against when the email is unknown.
        self._dummy_hash: Optional[str] = None

    def register(self, email: str, password: str, username: Optional[str] = None) -> Tuple[Dict[str, Any], str]:
        email = email.strip().lower()
        pw_hash = hash_password(password, self.bcrypt_rounds)
        with self._db.lock, self._db.session() as s:
            existing = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
            if existing is not None:
                raise UserExists("An account with this email already exists.", suggestion="Log in instead.")
            count = s.execute(select(func.count()).select_from(User)).scalar() or 0
            role = Role.ADMIN if count == 0 else Role.TENANT
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=(username or email.split("@", 1)[0])[:128],
                password_hash=pw_hash,
                role=role.value,
            )
            s.add(user)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                raise UserExists("An account with this email already exists.")
        logger.info("user registered id=%s role=%s", user.id, user.role)
        return user.to_dict(), self.issue_token(user)

    def authenticate(self, email: str, password: str) -> Tuple[Dict[str, Any], str]:
        email = email.strip().lower()
        with self._db.session() as s:
            user = s.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if user is None or not user.is_active:
            # Same cost as a real check so response time does not reveal unknown emails.
            verify_password(password, self._dummy())
            raise InvalidCredentials("Invalid email or password.")
        if not verify_password(password, user.password_hash):
            raise InvalidCredentials("Invalid email or password.")
        with self._db.lock, self._db.session() as s:
            row = s.get(User, user.id)
            row.last_login_at = utcnow_iso()
            s.commit()
        return user.to_dict(), self.issue_token(user)

    def _dummy(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = hash_password(uuid.uuid4().hex, self.bcrypt_rounds)
        return self._dummy_hash

    def issue_token(self, user: User) -> str:
        token = uuid.uuid4().hex
        self._tokens.set(token, {
            "userId": user.id,
            "role": user.role,
            "email": user.email,
            "username": user.username,
        }, ttl_sec=self.session_ttl_sec)
        return token

    def revoke(self, token: str) -> None:
        self._tokens.delete(token)

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._db.session() as s:
            user = s.get(User, user_id)
            return user.to_dict() if user else None
