from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Top-level fault classes used to pick a recovery strategy."""

    SECURITY = "SECURITY"
    PERFORMANCE = "PERFORMANCE"
    COMPLIANCE = "COMPLIANCE"
    NETWORK = "NETWORK"
    SYSTEM = "SYSTEM"


class ServiceError(Exception):
    """Base class for service-layer faults mapped to HTTP responses.

    ``message`` and ``detail`` are internal: they are logged but never sent to
    clients. What reaches the wire is ``public_message`` (after sanitisation),
    the optional machine-readable ``error_code``, ``fail_safe`` and whatever
    is placed in ``extra``. Each subclass fixes the taxonomy ``kind``, the
    HTTP status and the ``category`` consulted by the error responder.
    """

    status_code: int = 500
    error_code: Optional[str] = None
    kind: str = "InternalFailure"
    category: ErrorCategory = ErrorCategory.SYSTEM
    fail_safe: bool = False
    public_message: str = "An error occurred while processing your request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        fail_safe: Optional[bool] = None,
        public_message: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        message = message or self.public_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if fail_safe is not None:
            self.fail_safe = fail_safe
        if public_message is not None:
            self.public_message = public_message
        self.detail = detail or {}
        self.extra = extra or {}
        self.headers = headers or {}


class InvalidInputError(ServiceError):
    """Request body or parameters are malformed (400)."""
    status_code = 400
    error_code = "INVALID_INPUT"
    kind = "InvalidInput"
    category = ErrorCategory.SYSTEM
    public_message = "Invalid request"


class AuthRequiredError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    kind = "AuthRequired"
    category = ErrorCategory.SECURITY
    public_message = "Authentication required"


class AuthExpiredError(AuthRequiredError):
    """Credential or session has expired (401)."""
    error_code = "TOKEN_EXPIRED"
    kind = "AuthExpired"
    public_message = "Session has expired, please sign in again"


class AuthRevokedError(AuthRequiredError):
    """Credential was revoked by the identity provider (401)."""
    error_code = "TOKEN_REVOKED"
    kind = "AuthRevoked"
    public_message = "Sign-in has been revoked, please sign in again"


class ReplayDetectedError(AuthRequiredError):
    """Credential was already consumed inside the replay window (401)."""
    kind = "ReplayDetected"
    fail_safe = True
    public_message = "Authentication failed"


class EmailNotVerifiedError(ServiceError):
    """Subject has not verified its email address (403)."""
    status_code = 403
    error_code = "EMAIL_VERIFICATION_REQUIRED"
    kind = "EmailNotVerified"
    category = ErrorCategory.SECURITY
    public_message = "Email verification required"

    def __init__(self, message: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.extra.setdefault("emailVerified", False)


class BehavioralAnomalyError(ServiceError):
    """Risk scorer recommended blocking the request (403)."""
    status_code = 403
    error_code = "BEHAVIORAL_ANOMALY"
    kind = "BehavioralAnomaly"
    category = ErrorCategory.SECURITY
    fail_safe = True
    public_message = "Request blocked by security policy"


class PermissionDeniedError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    kind = "PermissionDenied"
    category = ErrorCategory.SECURITY
    public_message = "Access denied"


class ComplianceError(ServiceError):
    """Request violates a compliance policy such as strong authentication (403)."""
    status_code = 403
    error_code = "COMPLIANCE_VIOLATION"
    kind = "PermissionDenied"
    category = ErrorCategory.COMPLIANCE
    fail_safe = True
    public_message = "Request not permitted by compliance policy"


class UsageExceededError(ServiceError):
    """Subscription usage limit reached (429, or 403 on the free tier)."""
    status_code = 429
    error_code = "USAGE_LIMIT_REACHED"
    kind = "UsageExceeded"
    category = ErrorCategory.SYSTEM
    public_message = "Usage limit reached for the current plan"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"
    kind = "RateLimited"
    category = ErrorCategory.SECURITY
    public_message = "Too many requests"

    def __init__(
        self, message: Optional[str] = None, *, retry_after: int = 60, **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))
        self.headers.setdefault("Retry-After", str(self.retry_after))
        self.extra.setdefault("retryAfter", self.retry_after)


class OperationTimeoutError(ServiceError):
    """An operation exceeded its time budget (408)."""
    status_code = 408
    error_code = "REQUEST_TIMEOUT"
    kind = "Timeout"
    category = ErrorCategory.PERFORMANCE
    fail_safe = True
    public_message = "Request timed out"


class InternalFailureError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    kind = "InternalFailure"
    category = ErrorCategory.SYSTEM
    public_message = "An error occurred while processing your request"


class CircuitOpenError(ServiceError):
    """Operation short-circuited while its breaker is open (500)."""
    status_code = 500
    error_code = "SERVICE_UNAVAILABLE"
    kind = "CircuitOpen"
    category = ErrorCategory.SYSTEM
    fail_safe = True
    public_message = "Service temporarily unavailable"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"
    kind = "InvalidInput"
    category = ErrorCategory.SYSTEM
    public_message = "Resource not found"


class MethodNotAllowedError(ServiceError):
    """HTTP method not allowed on this endpoint (405)."""
    status_code = 405
    kind = "InvalidInput"
    category = ErrorCategory.SYSTEM
    public_message = "Method not allowed"


class ConflictError(ServiceError):
    """Concurrent modification or duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"
    kind = "InvalidInput"
    category = ErrorCategory.SYSTEM
    public_message = "Request conflicts with current state"


__all__ = [
    "ErrorCategory",
    "ServiceError",
    "InvalidInputError",
    "AuthRequiredError",
    "AuthExpiredError",
    "AuthRevokedError",
    "ReplayDetectedError",
    "EmailNotVerifiedError",
    "BehavioralAnomalyError",
    "PermissionDeniedError",
    "ComplianceError",
    "UsageExceededError",
    "RateLimitedError",
    "OperationTimeoutError",
    "InternalFailureError",
    "CircuitOpenError",
    "NotFoundError",
    "MethodNotAllowedError",
    "ConflictError",
]
