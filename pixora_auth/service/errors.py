from __future__ import annotations

from typing import Optional

from pixora_auth.storage.errors import StorageUnavailable


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    so callers can map failures without parsing messages. Client-facing
    messages are deliberately generic; which check failed is only logged.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Request could not be processed"

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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "Authentication required"


class InvalidCredentials(AuthenticationError):
    """Unknown email or wrong password; deliberately indistinguishable."""
    error_code = "invalid_credentials"
    default_message = "Invalid email or password"


class AccountLocked(ServiceError):
    """Too many failed logins; retry after the lock expires (423)."""
    status_code = 423
    error_code = "account_locked"
    default_message = (
        "Account is temporarily locked due to too many failed login attempts. "
        "Please try again later."
    )


class AccountDisabled(ServiceError):
    """Account has been deactivated (403)."""
    status_code = 403
    error_code = "account_disabled"
    default_message = "Account is deactivated"


class InvalidTwoFactorCode(AuthenticationError):
    error_code = "invalid_two_factor_code"
    default_message = "Invalid two-factor code"


class InvalidOrExpiredToken(ServiceError):
    """Single-use token did not match the stored one or has expired (400)."""
    status_code = 400
    error_code = "invalid_or_expired_token"
    default_message = "Invalid or expired token"


class InvalidToken(AuthenticationError):
    """Malformed token, bad signature, or issuer/audience mismatch."""
    error_code = "invalid_token"
    default_message = "Invalid token"


class ExpiredToken(AuthenticationError):
    error_code = "token_expired"
    default_message = "Token expired"


class WrongTokenKind(AuthenticationError):
    """Validly signed token presented where another kind is expected."""
    error_code = "wrong_token_kind"
    default_message = "Invalid token"


class TokenRevoked(AuthenticationError):
    error_code = "token_revoked"
    default_message = "Token has been revoked"


class SessionInvalid(AuthenticationError):
    error_code = "session_invalid"
    default_message = "Session is invalid or expired"


class AccountInactive(AuthenticationError):
    error_code = "account_inactive"
    default_message = "Account is inactive"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "Insufficient permissions"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "Not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmail(ConflictError):
    error_code = "duplicate_email"
    default_message = "An account with this email already exists"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many requests, please try again later"


class InsecureConfiguration(RuntimeError):
    """Signing secrets missing, shared, or too short; raised at startup."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentials",
    "AccountLocked",
    "AccountDisabled",
    "InvalidTwoFactorCode",
    "InvalidOrExpiredToken",
    "InvalidToken",
    "ExpiredToken",
    "WrongTokenKind",
    "TokenRevoked",
    "SessionInvalid",
    "AccountInactive",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmail",
    "RateLimitedError",
    "InsecureConfiguration",
    "StorageUnavailable",
]
