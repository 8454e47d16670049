"""Error types surfaced by the API.

Every client-facing failure is an ``ApiError``: an HTTPException carrying a
stable ``kind`` plus optional per-field ``errors``. Handlers in ``main`` turn
them into the standard error envelope.
"""
from typing import Any, List, Optional

from fastapi import HTTPException, status


class ApiError(HTTPException):
    status_code = status.HTTP_400_BAD_REQUEST
    kind = "BadRequest"
    default_message = "Bad request"

    def __init__(
        self,
        message: Optional[str] = None,
        errors: Optional[List[Any]] = None,
        headers: Optional[dict] = None,
    ):
        super().__init__(
            status_code=self.status_code,
            detail=message or self.default_message,
            headers=headers,
        )
        self.message = self.detail
        self.errors = errors or []


class MissingField(ApiError):
    kind = "MissingField"
    default_message = "Missing required fields"


class InvalidField(ApiError):
    kind = "InvalidField"
    default_message = "Invalid input"


class WeakPassword(ApiError):
    kind = "WeakPassword"
    default_message = (
        "Password must be at least 8 characters and contain an uppercase letter, "
        "a lowercase letter, a number and a special character (@$!%*?&)"
    )


class BadRole(ApiError):
    kind = "BadRole"
    default_message = "Invalid role"


class MismatchedConfirm(ApiError):
    kind = "MismatchedConfirm"
    default_message = "Passwords do not match"


class BadToken(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    kind = "BadToken"
    default_message = "Invalid or expired token"


class AlreadyVerified(ApiError):
    kind = "AlreadyVerified"
    default_message = "Email is already verified"


class BadCredentials(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    kind = "BadCredentials"
    default_message = "Invalid credentials"


class Unauthorized(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    kind = "Unauthorized"
    default_message = "Authentication required"


class ExpiredToken(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    kind = "ExpiredToken"
    default_message = "Token has expired"


class Forbidden(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    kind = "Forbidden"
    default_message = "Insufficient permissions"


class EmailNotVerified(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    kind = "EmailNotVerified"
    default_message = "Please verify your email before logging in"


class AccountInactive(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    kind = "AccountInactive"
    default_message = "Account is deactivated"


class NotFound(ApiError):
    status_code = status.HTTP_404_NOT_FOUND
    kind = "NotFound"
    default_message = "Resource not found"


class Duplicate(ApiError):
    status_code = status.HTTP_409_CONFLICT
    kind = "Duplicate"
    default_message = "Resource already exists"


class AccountLocked(ApiError):
    status_code = status.HTTP_423_LOCKED
    kind = "AccountLocked"
    default_message = "Account is temporarily locked"


class Cooldown(ApiError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    kind = "Cooldown"
    default_message = "Please wait before requesting another email"


class InfrastructureError(ApiError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    kind = "InfrastructureError"
    default_message = "Internal server error"


class TokenError(Exception):
    """Raised by the token service; never leaves the service layer as-is."""

    EXPIRED = "expired"
    MALFORMED = "malformed"
    WRONG_KIND = "wrong_kind"
    REUSED = "reused"
    REVOKED = "revoked"
    INVALID = "invalid"

    def __init__(self, reason: str, message: Optional[str] = None):
        super().__init__(message or reason)
        self.reason = reason


class ChannelError(Exception):
    """A single delivery channel failed for one recipient."""
