from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass pins an HTTP ``status_code`` and a stable, machine-readable
    ``error_code`` that clients can branch on. The taxonomy is closed: the
    HTTP layer only ever renders these codes, plus the storage and request
    validation failures handled in ``lettera.api.error_handling``.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
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
    error_code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"
    default_message = "Authentication required"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"
    default_message = "Resource already exists"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"
    default_message = "Too many requests, please try again later"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_SERVER_ERROR"
    default_message = "Internal server error"


class DispatchError(ServiceError):
    """An outbound delivery (email) failed (502)."""
    status_code = 502
    error_code = "DISPATCH_FAILED"
    default_message = "Message could not be delivered"


class DependencyError(ServiceError):
    """A required backing service is unavailable (503)."""
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"
    default_message = "Service temporarily unavailable"


class DatabaseUnavailableError(DependencyError):
    """The durable identity store could not be reached."""
    error_code = "DATABASE_UNAVAILABLE"
    default_message = "Database is unavailable"


# Registration and verification


class EmailExistsError(ConflictError):
    error_code = "EMAIL_ALREADY_EXISTS"
    default_message = "User with this email already exists"


class WeakPasswordError(ValidationError):
    """Password failed the strength policy; ``detail["violations"]`` lists every rule."""
    error_code = "WEAK_PASSWORD"
    default_message = "Password validation failed"


class UserNotFoundError(NotFoundError):
    error_code = "USER_NOT_FOUND"
    default_message = "User not found"


class AlreadyVerifiedError(ValidationError):
    error_code = "EMAIL_ALREADY_VERIFIED"
    default_message = "Email is already verified"


class CodeExpiredError(ValidationError):
    error_code = "CODE_EXPIRED"
    default_message = "Verification code has expired"


class InvalidCodeError(ValidationError):
    error_code = "INVALID_CODE"
    default_message = "Invalid verification code"


class EmailDispatchError(DispatchError):
    error_code = "EMAIL_DISPATCH_FAILED"
    default_message = "Failed to send verification email"


class HashingError(ServerError):
    error_code = "HASHING_FAILED"
    default_message = "Password could not be processed"


# Tokens and sessions


class AccessTokenRequiredError(AuthenticationError):
    error_code = "ACCESS_TOKEN_REQUIRED"
    default_message = "Access token required"


class TokenError(AuthenticationError):
    """Base for structural token failures raised by the token issuer."""
    error_code = "INVALID_TOKEN"
    default_message = "Invalid token"


class InvalidTokenError(TokenError):
    error_code = "INVALID_TOKEN"
    default_message = "Invalid token"


class TokenExpiredError(TokenError):
    error_code = "TOKEN_EXPIRED"
    default_message = "Token has expired"


class WrongTokenTypeError(TokenError):
    error_code = "INVALID_TOKEN_TYPE"
    default_message = "Invalid token type"


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid refresh token"


class EmailNotVerifiedError(AuthenticationError):
    error_code = "EMAIL_NOT_VERIFIED"
    default_message = "Email not verified"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DispatchError",
    "DependencyError",
    "DatabaseUnavailableError",
    "EmailExistsError",
    "WeakPasswordError",
    "UserNotFoundError",
    "AlreadyVerifiedError",
    "CodeExpiredError",
    "InvalidCodeError",
    "EmailDispatchError",
    "HashingError",
    "AccessTokenRequiredError",
    "TokenError",
    "InvalidTokenError",
    "TokenExpiredError",
    "WrongTokenTypeError",
    "InvalidRefreshTokenError",
    "EmailNotVerifiedError",
]
