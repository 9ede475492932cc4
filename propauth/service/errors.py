from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass carries a fixed HTTP ``status_code`` and a stable
    ``error_code`` that clients can switch on:

    - validation_error (400)
    - invalid_credentials, token_*, otp_* (401)
    - forbidden, account_inactive, account_not_verified (403)
    - not_found (404)
    - conflict (409)
    - account_locked (423)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown identifier or wrong secret; the two are never distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpired(AuthenticationError):
    error_code = "token_expired"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalid(AuthenticationError):
    error_code = "token_invalid"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRevoked(AuthenticationError):
    error_code = "token_revoked"

    def __init__(self, message: str = "token revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OTPExpired(AuthenticationError):
    error_code = "otp_expired"

    def __init__(self, message: str = "verification code expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OTPInvalid(AuthenticationError):
    error_code = "otp_invalid"

    def __init__(self, message: str = "invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class OTPAttemptsExhausted(AuthenticationError):
    error_code = "otp_attempts_exhausted"

    def __init__(self, message: str = "too many incorrect codes; request a new one", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class PermissionDenied(ForbiddenError):
    def __init__(self, message: str = "permission denied", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountInactive(ForbiddenError):
    error_code = "account_inactive"

    def __init__(self, message: str = "account is not active", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountNotVerified(ForbiddenError):
    error_code = "account_not_verified"

    def __init__(self, message: str = "account is not verified", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ServiceError):
    """Too many failed logins; carries ``locked_until`` in detail (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, message: str = "account temporarily locked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class TooManyAttempts(RateLimitedError):
    def __init__(self, message: str = "too many attempts; try again later", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class AuthenticationUnavailable(ServiceError):
    """A collaborator timed out or failed; the caller may retry (503).

    Never counted as a failed login attempt.
    """
    status_code = 503
    error_code = "service_unavailable"

    def __init__(self, message: str = "authentication temporarily unavailable", **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("retryable", True)
        super().__init__(message, detail=detail, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "TokenExpired",
    "TokenInvalid",
    "TokenRevoked",
    "OTPExpired",
    "OTPInvalid",
    "OTPAttemptsExhausted",
    "ForbiddenError",
    "PermissionDenied",
    "AccountInactive",
    "AccountNotVerified",
    "AccountLocked",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "TooManyAttempts",
    "ServerError",
    "AuthenticationUnavailable",
]
