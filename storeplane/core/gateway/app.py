"""
Control-plane HTTP gateway (Flask).
create_app wires the collaborators (registry, orchestrator, audit log, breakers, token store,
health monitor, metrics) and registers the routes. Collaborators can be injected for tests.
Request id, latency and security headers are added in before/after_request hooks; every
error leaves as {"requestId", "error": {code, message, details, suggestion, retryable}}.
"""
import json
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from ..errors import InvalidTransition, PlatformError, ValidationFailed
from ..log import json_log
from ..monitor.health import HealthMonitor
from ..monitor.metrics import MetricsRegistry
from ..orchestrator.provisioner import Provisioner, create_provisioner
from ..orchestrator.worker import Orchestrator
from ..store.database import Database
from ..store.registry import StoreRegistry
from ..store.service import StoreService
from ..tenant.guardrails import CooldownTracker, build_guardrails
from ..tenant.identity import Identity, authenticate
from ..tenant.rate_limit import SlidingWindowLimiter
from .audit_log import AuditLog
from .circuit_breaker import CircuitBreakerRegistry
from .config import Settings, load_settings
from .session_store import create_token_store

logger = logging.getLogger("storeplane.gateway")

DB_DEPENDENCY = "database"
PROVISIONER_DEPENDENCY = "provisioner"

_HTTP_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    413: "PAYLOAD_TOO_LARGE",
    415: "UNSUPPORTED_MEDIA_TYPE",
}


@dataclass
class ControlPlane:
    """Everything a request handler needs; one instance per app."""
    settings: Settings
    db: Database
    registry: StoreRegistry
    audit: AuditLog
    breakers: CircuitBreakerRegistry
    provisioner: Provisioner
    orchestrator: Orchestrator
    cooldown: CooldownTracker
    stores: StoreService
    accounts: Any
    token_store: Any
    health: HealthMonitor
    metrics: MetricsRegistry
    login_limiter: SlidingWindowLimiter
    register_limiter: SlidingWindowLimiter

    def shutdown(self) -> None:
        self.health.stop()
        self.orchestrator.shutdown(wait=True)


def _request_id() -> str:
    rid = getattr(request, "request_id", None)
    if rid:
        return rid
    return (request.headers.get("X-Request-ID") or "").strip() if request else ""


def _new_request_id() -> str:
    return "req_" + uuid.uuid4().hex[:12]


def _error_response(code: str, message: str, status: int, details: str = "", suggestion: str = "",
                    retryable: bool = False, **extra: Any) -> Response:
    err = {
        "code": code,
        "message": message,
        "details": details,
        "suggestion": suggestion,
        "retryable": retryable,
        **extra,
    }
    body = {"requestId": _request_id(), "error": err}
    return Response(json.dumps(body, ensure_ascii=False), status=status,
                    mimetype="application/json; charset=utf-8")


def json_body() -> Dict[str, Any]:
    """Request JSON as a dict; anything else is a validation error."""
    if not request.data:
        return {}
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise ValidationFailed("Request body must be a JSON object.")
    return body


def request_ctx() -> Dict[str, str]:
    return {"request_id": _request_id(), "ip": request.remote_addr or ""}


def reply(payload: Dict[str, Any], status: int = 200):
    return jsonify({"requestId": _request_id(), **payload}), status


def build_control_plane(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    provisioner: Optional[Provisioner] = None,
    token_store: Any = None,
    breakers: Optional[CircuitBreakerRegistry] = None,
    metrics: Optional[MetricsRegistry] = None,
    cooldown: Optional[CooldownTracker] = None,
    orchestrator_sleep=None,
) -> ControlPlane:
    from ...auth_center.services import AccountService

    settings = settings or load_settings()
    db = db or Database(settings.database_url)
    db.create_all()
    breakers = breakers or CircuitBreakerRegistry(
        failure_threshold=settings.cb_failure_threshold,
        reset_timeout_sec=settings.cb_reset_timeout_ms / 1000.0,
        half_open_max=settings.cb_half_open_max,
    )
    metrics = metrics or MetricsRegistry()
    registry = StoreRegistry(db, breaker=breakers.get(DB_DEPENDENCY))
    audit = AuditLog(db, mirror_path=settings.audit_mirror_path)
    provisioner = provisioner or create_provisioner(
        settings.provisioner, settings.provisioner_url, settings.store_domain_suffix,
    )
    orchestrator_kwargs = {}
    if orchestrator_sleep is not None:
        orchestrator_kwargs["sleep"] = orchestrator_sleep
    orchestrator = Orchestrator(
        registry, provisioner, audit, breakers.get(PROVISIONER_DEPENDENCY),
        metrics=metrics,
        max_concurrent=settings.provisioning_max_concurrent,
        timeout_ms=settings.provisioning_timeout_ms,
        poll_interval_ms=settings.provisioning_poll_interval_ms,
        step_retries=settings.step_retries,
        retry_base_delay_ms=settings.retry_base_delay_ms,
        max_retry_count=settings.max_retry_count,
        **orchestrator_kwargs,
    )
    cooldown = cooldown or CooldownTracker(settings.creation_cooldown_ms)
    guardrails = build_guardrails(registry, settings.max_stores_per_user, cooldown)
    token_store = token_store if token_store is not None else create_token_store(settings.session_store_url)
    accounts = AccountService(db, token_store, session_ttl_sec=settings.session_ttl_sec,
                              bcrypt_rounds=settings.bcrypt_rounds)
    health = HealthMonitor(breakers, started_at=metrics.started_at, concurrency=orchestrator.stats)
    health.register(DB_DEPENDENCY, registry.ping)
    health.register(PROVISIONER_DEPENDENCY, provisioner.ping)
    return ControlPlane(
        settings=settings,
        db=db,
        registry=registry,
        audit=audit,
        breakers=breakers,
        provisioner=provisioner,
        orchestrator=orchestrator,
        cooldown=cooldown,
        stores=StoreService(registry, orchestrator, guardrails, audit, default_engine=settings.default_engine),
        accounts=accounts,
        token_store=token_store,
        health=health,
        metrics=metrics,
        login_limiter=SlidingWindowLimiter(settings.login_rate_limit_max, settings.login_rate_limit_window_sec,
                                           enabled=settings.rate_limit_enabled),
        register_limiter=SlidingWindowLimiter(settings.register_rate_limit_max,
                                              settings.register_rate_limit_window_sec,
                                              enabled=settings.rate_limit_enabled),
    )


def create_app(control_plane: Optional[ControlPlane] = None, settings: Optional[Settings] = None,
               start_background: bool = False, **collaborators: Any) -> Flask:
    """
    Build the Flask app.
    - control_plane: prebuilt collaborators; otherwise built from settings (+ injected collaborators).
    - start_background: run startup recovery and the periodic health loop (bootstrap only).
    """
    cp = control_plane or build_control_plane(settings=settings, **collaborators)
    app = Flask(__name__)
    app.json.sort_keys = False
    app.extensions["storeplane"] = cp

    def current_identity() -> Identity:
        return authenticate(cp.token_store, request.headers.get("Authorization"))

    @app.before_request
    def before():
        request.request_id = (request.headers.get("X-Request-ID") or "").strip()[:64] or _new_request_id()
        request.start_time = time.perf_counter()

    @app.after_request
    def after(resp):
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["X-Request-ID"] = _request_id()
        started = getattr(request, "start_time", None)
        if started is not None:
            duration_ms = int((time.perf_counter() - started) * 1000)
            resp.headers["X-Response-Time"] = f"{duration_ms}ms"
            cp.metrics.record_request(request.method, resp.status_code, duration_ms)
            if cp.settings.apm_log:
                json_log(logger, "info", "apm_span", trace_id=_request_id(), method=request.method,
                         path=request.path, status=resp.status_code, duration_ms=duration_ms)
        return resp

    @app.errorhandler(PlatformError)
    def handle_platform_error(e: PlatformError):
        if e.status >= 500 or isinstance(e, InvalidTransition):
            json_log(logger, "error", "request_failed", trace_id=_request_id(), code=e.code, error=e.message,
                     path=request.path)
        return _error_response(e.code, e.message, e.status, details=e.details, suggestion=e.suggestion,
                               retryable=e.retryable, **e.extra)

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        status = e.code or 500
        code = _HTTP_CODES.get(status, "HTTP_ERROR")
        message = f"Route {request.method} {request.path} not found." if status == 404 else (e.description or e.name)
        return _error_response(code, message, status)

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        logger.exception("unhandled error path=%s request_id=%s", request.path, _request_id())
        return _error_response("INTERNAL_ERROR", "An unexpected error occurred.", 500,
                               suggestion="Retry the request; contact support if it persists.", retryable=True)

    from .routes_auth import register_auth_routes
    from .routes_ops import register_ops_routes
    from .routes_stores import register_store_routes

    prefix = cp.settings.api_prefix
    register_auth_routes(app, cp, prefix, current_identity)
    register_store_routes(app, cp, prefix, current_identity)
    register_ops_routes(app, cp, current_identity)

    if start_background:
        if cp.settings.recover_on_start:
            cp.orchestrator.recover()
        cp.health.start(cp.settings.health_interval_sec)
    return app


__all__ = ["create_app", "build_control_plane", "ControlPlane", "reply", "json_body", "request_ctx"]
