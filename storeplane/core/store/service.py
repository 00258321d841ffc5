"""
Request-side coordination for store operations:
authorization -> guardrails -> registry -> orchestrator signal -> audit.
Accept/reject decisions of privileged actions are audited synchronously, including
rejections raised by guardrails or authorization.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..errors import PlatformError
from ..gateway import audit_log as audit
from ..log import json_log
from ..tenant.guardrails import GuardrailChain
from ..tenant.identity import (
    Identity,
    authorize_store,
    can_access,
    is_cross_tenant,
    list_scope,
    strip_owner_fields,
)
from .models import DEFAULT_ENGINE, parse_engine
from .schemas import AuditQuery, CreateStoreRequest, ListStoresQuery, PageQuery, parse_model

logger = logging.getLogger("storeplane.stores")


class StoreService:

    def __init__(self, registry, orchestrator, guardrails: GuardrailChain, audit_log,
                 default_engine: str = DEFAULT_ENGINE.value) -> None:
        self._registry = registry
        self._orchestrator = orchestrator
        self._guardrails = guardrails
        self._audit = audit_log
        self.default_engine = parse_engine(default_engine) or DEFAULT_ENGINE

    def _record(self, identity: Identity, action: str, outcome: str, store=None, store_id: Optional[str] = None,
                message: str = "", ctx: Optional[Dict[str, str]] = None, **metadata: Any) -> None:
        ctx = ctx or {}
        self._audit.record(
            identity.user_id, identity.role.value, action, outcome,
            store_id=store.id if store is not None else store_id,
            owner_id=store.owner_id if store is not None else None,
            message=message,
            metadata=metadata or None,
            ip_address=ctx.get("ip", ""),
            request_id=ctx.get("request_id", ""),
        )

    # ---------- create ----------

    def create_store(self, identity: Identity, body: Optional[Dict[str, Any]],
                     ctx: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        body = strip_owner_fields(body if isinstance(body, dict) else {})
        try:
            req = parse_model(CreateStoreRequest, body)
            self._guardrails.check(identity, body)
            engine = parse_engine(req.engine) if req.engine is not None else self.default_engine
            try:
                store = self._registry.create(identity.user_id, req.name, engine.value)
            except Exception:
                self._guardrails.release(identity)
                raise
        except PlatformError as e:
            self._record(identity, audit.STORE_CREATE, audit.REJECTED, message=e.message, ctx=ctx,
                         code=e.code, name=body.get("name"))
            raise
        self._guardrails.commit(identity)
        self._record(identity, audit.STORE_CREATE, audit.ACCEPTED, store=store, ctx=ctx,
                     message=f"Store '{store.name}' requested", engine=store.engine)
        self._orchestrator.enqueue_provision(store.id)
        json_log(logger, "info", "store_create_accepted", store_id=store.id, owner_id=identity.user_id,
                 request_id=(ctx or {}).get("request_id", ""))
        return store.to_dict()

    # ---------- reads ----------

    def list_stores(self, identity: Identity, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        q = parse_model(ListStoresQuery, args)
        owner = list_scope(identity, q.owner_id)
        filters = {
            "status": q.status.value if q.status else None,
            "engine": q.engine.value if q.engine else None,
            "limit": q.limit,
            "offset": q.offset,
        }
        if identity.is_admin:
            stores, total = self._registry.list_all(owner_id=owner, **filters)
        else:
            stores, total = self._registry.list_by_owner(owner, **filters)
        return {
            "total": total,
            "limit": q.limit,
            "offset": q.offset,
            "stores": [s.to_dict() for s in stores],
        }

    def _load_authorized(self, identity: Identity, store_id: str, action: str, verb: str,
                         ctx: Optional[Dict[str, str]] = None):
        store = self._registry.get(store_id)
        if not can_access(identity, store):
            self._record(identity, action, audit.REJECTED, store=store, ctx=ctx, message="forbidden")
            authorize_store(identity, store, verb)
        return store

    def get_store(self, identity: Identity, store_id: str, ctx: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        store = self._load_authorized(identity, store_id, audit.STORE_READ, "view", ctx)
        if is_cross_tenant(identity, store):
            self._record(identity, audit.STORE_READ, audit.SUCCESS, store=store, ctx=ctx,
                         message="admin cross-tenant read")
        return store.to_dict()

    def get_store_logs(self, identity: Identity, store_id: str, args: Optional[Dict[str, Any]] = None,
                       ctx: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        page = parse_model(PageQuery, args)
        store = self._load_authorized(identity, store_id, audit.STORE_LOGS_READ, "view logs of", ctx)
        if is_cross_tenant(identity, store):
            self._record(identity, audit.STORE_LOGS_READ, audit.SUCCESS, store=store, ctx=ctx,
                         message="admin cross-tenant log read")
        logs, total = self._audit.list_for_store(store.id, limit=page.limit, offset=page.offset)
        return {"storeId": store.id, "status": store.status, "total": total, "logs": logs}

    # ---------- mutations ----------

    def delete_store(self, identity: Identity, store_id: str, ctx: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        store = self._load_authorized(identity, store_id, audit.STORE_DELETE, "delete", ctx)
        try:
            updated = self._orchestrator.request_delete(store.id, actor_id=identity.user_id)
        except PlatformError as e:
            self._record(identity, audit.STORE_DELETE, audit.REJECTED, store=store, ctx=ctx,
                         message=e.message, code=e.code, status=store.status)
            raise
        self._record(identity, audit.STORE_DELETE, audit.ACCEPTED, store=store, ctx=ctx,
                     message="Deletion accepted")
        return updated.to_dict()

    def retry_store(self, identity: Identity, store_id: str, ctx: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        store = self._load_authorized(identity, store_id, audit.STORE_RETRY, "retry", ctx)
        try:
            updated = self._orchestrator.request_retry(store.id, actor_id=identity.user_id)
        except PlatformError as e:
            self._record(identity, audit.STORE_RETRY, audit.REJECTED, store=store, ctx=ctx,
                         message=e.message, code=e.code, status=store.status)
            raise
        self._record(identity, audit.STORE_RETRY, audit.ACCEPTED, store=store, ctx=ctx,
                     message=f"Retry #{updated.retry_count} accepted")
        return updated.to_dict()

    # ---------- audit ----------

    def list_audit(self, identity: Identity, args: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        q = parse_model(AuditQuery, args)
        owner = None if identity.is_admin else identity.user_id
        logs, total = self._audit.search(store_id=q.store_id, owner_id=owner, action=q.action,
                                         limit=q.limit, offset=q.offset)
        return {"total": total, "limit": q.limit, "offset": q.offset, "logs": logs}
