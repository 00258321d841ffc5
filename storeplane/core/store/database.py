"""
SQLAlchemy engine/session factory shared by the registry, audit log and user accounts.
In-memory SQLite uses one shared connection so every thread sees the same database;
on SQLite every session holds `lock` for its lifetime, since a session returning the
shared connection rolls back whatever is open on it.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


class Database:
    """Engine + session factory; `lock` serializes work on SQLite."""

    def __init__(self, url: str = "sqlite://") -> None:
        self.url = url or "sqlite://"
        self.is_sqlite = self.url.startswith("sqlite")
        kwargs = {}
        if self.is_sqlite:
            kwargs["connect_args"] = {"check_same_thread": False}
            if self.url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True
        self.engine = create_engine(self.url, future=True, **kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.lock = threading.RLock()

    def create_all(self) -> None:
        # Model modules register their tables on Base at import time.
        from . import models  # noqa: F401
        from ..gateway import audit_log  # noqa: F401
        from ...auth_center.models import user  # noqa: F401
        with self.lock:
            Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self):
        if self.is_sqlite:
            with self.lock:
                with self.session_factory() as s:
                    yield s
        else:
            with self.session_factory() as s:
                yield s

    def dispose(self) -> None:
        self.engine.dispose()
