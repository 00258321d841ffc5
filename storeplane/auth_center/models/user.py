"""
User accounts. Passwords are never stored in clear text, only bcrypt hashes.
"""
from __future__ import annotations

from sqlalchemy import Boolean, Column, String

from ...core.store.database import Base
from ...core.store.models import utcnow_iso


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    username = Column(String(128), nullable=False)
    password_hash = Column(String(128), nullable=False)
    role = Column(String(16), nullable=False, default="tenant")
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(String(32), nullable=False, default=utcnow_iso)
    last_login_at = Column(String(32), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "role": self.role,
            "createdAt": self.created_at,
        }
