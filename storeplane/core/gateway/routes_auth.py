"""
Auth routes: register, login, me, logout.
Login is throttled per ip:email, registration per ip.
"""
from flask import request

from ..errors import InvalidCredentials, RateLimited
from ..store.schemas import LoginRequest, RegisterRequest, parse_model
from ..tenant.identity import bearer_token
from . import audit_log as audit
from .app import json_body, reply


def register_auth_routes(app, cp, prefix, current_identity):

    def _throttle(limiter, key: str, message: str) -> None:
        ok, retry_after = limiter.allow(key)
        if not ok:
            raise RateLimited(message, suggestion="Wait before retrying.", retryAfterSeconds=retry_after)

    @app.route(f"{prefix}/auth/register", methods=["POST"])
    def auth_register():
        ip = request.remote_addr or "0.0.0.0"
        _throttle(cp.register_limiter, ip, "Too many registration attempts. Try again later.")
        req = parse_model(RegisterRequest, json_body())
        user, token = cp.accounts.register(req.email, req.password, req.username)
        cp.audit.record(user["id"], user["role"], audit.AUTH_REGISTER, audit.SUCCESS,
                        message="Account registered", ip_address=ip, request_id=request.request_id)
        return reply({"message": "Registration successful.", "user": user, "token": token}, 201)

    @app.route(f"{prefix}/auth/login", methods=["POST"])
    def auth_login():
        ip = request.remote_addr or "0.0.0.0"
        body = json_body()
        email = str(body.get("email") or "").strip().lower()
        _throttle(cp.login_limiter, f"{ip}:{email or 'unknown'}",
                  "Too many login attempts. Try again later.")
        req = parse_model(LoginRequest, body)
        try:
            user, token = cp.accounts.authenticate(req.email, req.password)
        except InvalidCredentials as e:
            cp.audit.record(audit.ANONYMOUS_ACTOR, audit.ANONYMOUS_ACTOR, audit.AUTH_LOGIN, audit.FAILURE,
                            message=e.message, metadata={"email": email}, ip_address=ip,
                            request_id=request.request_id)
            raise
        cp.audit.record(user["id"], user["role"], audit.AUTH_LOGIN, audit.SUCCESS,
                        message="Login succeeded", ip_address=ip, request_id=request.request_id)
        return reply({"message": "Login successful.", "user": user, "token": token})

    @app.route(f"{prefix}/auth/me", methods=["GET"])
    def auth_me():
        identity = current_identity()
        return reply({"user": cp.accounts.get(identity.user_id) or identity.to_dict()})

    @app.route(f"{prefix}/auth/logout", methods=["POST"])
    def auth_logout():
        current_identity()
        cp.accounts.revoke(bearer_token(request.headers.get("Authorization")))
        return reply({"message": "Logged out."})
