"""
Control-plane error taxonomy.
Each error carries its HTTP status, a machine-readable code and a suggestion for the caller;
the gateway renders them as {"requestId", "error": {...}} without inspecting the type further.
Guardrail and authorization errors are raised before any state mutation, so none need rollback.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class PlatformError(Exception):
    status = 500
    code = "INTERNAL_ERROR"
    retryable = False
    suggestion = ""

    def __init__(self, message: str, details: str = "", suggestion: Optional[str] = None,
                 retryable: Optional[bool] = None, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        if suggestion is not None:
            self.suggestion = suggestion
        if retryable is not None:
            self.retryable = retryable
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "suggestion": self.suggestion,
            "retryable": self.retryable,
        }
        body.update(self.extra)
        return body


class Unauthenticated(PlatformError):
    status = 401
    code = "UNAUTHORIZED"
    suggestion = "Provide a valid Bearer token."


class InvalidCredentials(PlatformError):
    status = 401
    code = "INVALID_CREDENTIALS"


class Forbidden(PlatformError):
    status = 403
    code = "FORBIDDEN"


class NotFound(PlatformError):
    status = 404
    code = "NOT_FOUND"


class ValidationFailed(PlatformError):
    status = 400
    code = "VALIDATION_ERROR"
    suggestion = "Check the request body and try again."


class UnsupportedEngine(PlatformError):
    status = 400
    code = "UNSUPPORTED_ENGINE"
    suggestion = "Use one of the supported engines."


class DuplicateStore(PlatformError):
    status = 409
    code = "DUPLICATE_STORE"
    suggestion = "Use a different name or delete the existing store first."


class UserExists(PlatformError):
    status = 409
    code = "USER_EXISTS"


class StateConflict(PlatformError):
    """Operation refused by the lifecycle rules (canDelete / canRetry)."""
    status = 409
    code = "INVALID_STATE"
    suggestion = "Wait for the current operation to complete."


class RetryLimitReached(PlatformError):
    status = 409
    code = "RETRY_LIMIT_REACHED"
    suggestion = "Delete and recreate the store."


class ConflictingOperation(PlatformError):
    status = 409
    code = "CONFLICTING_OPERATION"
    retryable = True
    suggestion = "Another operation is running for this store; poll its status and try again."


class InvalidTransition(PlatformError):
    """Integrity error: a write tried to leave the transition table."""
    status = 409
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, from_state: str, to_state: str, reason: str = "") -> None:
        super().__init__(reason or f"Cannot transition store from '{from_state}' to '{to_state}'.")
        self.from_state = from_state
        self.to_state = to_state


class QuotaExceeded(PlatformError):
    status = 429
    code = "QUOTA_EXCEEDED"
    suggestion = "Delete an existing store before creating a new one."


class RateLimited(PlatformError):
    status = 429
    code = "RATE_LIMITED"
    retryable = True


class DependencyUnavailable(PlatformError):
    status = 503
    code = "DEPENDENCY_UNAVAILABLE"
    retryable = True


class ProvisionerError(PlatformError):
    status = 502
    code = "PROVISIONER_ERROR"
    retryable = True


__all__ = [
    "PlatformError",
    "Unauthenticated",
    "InvalidCredentials",
    "Forbidden",
    "NotFound",
    "ValidationFailed",
    "UnsupportedEngine",
    "DuplicateStore",
    "UserExists",
    "StateConflict",
    "RetryLimitReached",
    "ConflictingOperation",
    "InvalidTransition",
    "QuotaExceeded",
    "RateLimited",
    "DependencyUnavailable",
    "ProvisionerError",
]
