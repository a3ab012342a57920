from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can switch on:
    - validation_error (400)
    - unauthorized / invalid_credentials / mfa_challenge_invalid / token_invalid (401)
    - forbidden (403)
    - not_found (404)
    - conflict / duplicate_email (409)
    - rate_limited (429)
    - server_error (500)
    - delivery_failed (502)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"
    default_message = "invalid request"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "authentication required"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email, wrong password or disabled account; all share one response."""
    error_code = "invalid_credentials"
    default_message = "Invalid credentials"


class MfaChallengeInvalidError(AuthenticationError):
    """MFA challenge unknown, consumed, or verified with a wrong code.

    ``reason`` is for logs only; every variant shares one client message.
    """
    error_code = "mfa_challenge_invalid"
    default_message = "MFA challenge invalid or expired"

    def __init__(self, message: Optional[str] = None, *, reason: str = "invalid", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class MfaChallengeExpiredError(MfaChallengeInvalidError):
    """MFA challenge expired or exhausted its attempts."""

    def __init__(self, message: Optional[str] = None, *, reason: str = "expired", **kwargs) -> None:
        super().__init__(message, reason=reason, **kwargs)


class TokenInvalidError(AuthenticationError):
    """Refresh or access token unknown, expired, reused, or from another domain."""
    error_code = "token_invalid"
    default_message = "Token invalid or expired"

    def __init__(self, message: Optional[str] = None, *, reason: str = "invalid", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "conflict"


class DuplicateEmailError(ConflictError):
    """Email already registered in the domain (409)."""
    error_code = "duplicate_email"
    default_message = "Email already registered"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many requests"

    def __init__(self, message: Optional[str] = None, *, retry_after_ms: int = 0, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("retry_after_ms", retry_after_ms)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after_ms = retry_after_ms


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "internal server error"


class DeliveryFailedError(ServiceError):
    """SMS or email provider rejected the message (502)."""
    status_code = 502
    error_code = "delivery_failed"
    default_message = "Could not deliver the verification code"


class StoreUnavailableError(ServiceError):
    """Backing store unreachable; the only retryable class (503)."""
    status_code = 503
    error_code = "service_unavailable"
    default_message = "Service temporarily unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "MfaChallengeInvalidError",
    "MfaChallengeExpiredError",
    "TokenInvalidError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "RateLimitedError",
    "ServerError",
    "DeliveryFailedError",
    "StoreUnavailableError",
]
