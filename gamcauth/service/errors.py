from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Machine-readable error discriminants surfaced in the ``error`` field."""

    VALIDATION = "validation_error"
    INVALID_CREDENTIALS = "invalid_credentials"
    MISSING_TOKEN = "missing_token"
    TOKEN_INVALID = "token_invalid"
    TOKEN_REVOKED = "token_revoked"
    SESSION_EXPIRED = "session_expired"
    SESSION_INCONSISTENT = "session_inconsistent"
    USER_INACTIVE = "user_inactive"
    USER_NOT_FOUND = "user_not_found"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    RESTRICTED_TO_ORG_UNIT = "restricted_to_org_unit"
    NOT_OWNER = "not_owner"
    EMAIL_NOT_ALLOWED = "email_not_allowed"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_USED = "token_used"
    CHALLENGE_REQUIRED = "challenge_required"
    INVALID_ANSWER = "invalid_answer"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    SERVER_ERROR = "server_error"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and an ``error_code`` taken from
    :class:`ErrorKind`. The HTTP layer reads both in one place
    (``gamcauth.api.error_handling``); nothing else decides status codes.
    """

    status_code: int = 400
    error_code: str = ErrorKind.VALIDATION.value

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

    @property
    def kind(self) -> ErrorKind:
        return ErrorKind(self.error_code)


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = ErrorKind.VALIDATION.value


class NotFoundError(ServiceError):
    status_code = 404
    error_code = ErrorKind.NOT_FOUND.value


class ConflictError(ServiceError):
    status_code = 409
    error_code = ErrorKind.CONFLICT.value


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = ErrorKind.SERVER_ERROR.value


# --- authentication (401) ---------------------------------------------------


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = ErrorKind.INVALID_CREDENTIALS.value


class InvalidCredentialsError(AuthenticationError):
    error_code = ErrorKind.INVALID_CREDENTIALS.value


class MissingTokenError(AuthenticationError):
    error_code = ErrorKind.MISSING_TOKEN.value


class TokenInvalidError(AuthenticationError):
    """Malformed, forged, expired or wrong-kind token.

    Raised with one fixed message whatever check failed.
    """
    error_code = ErrorKind.TOKEN_INVALID.value


class TokenRevokedError(AuthenticationError):
    error_code = ErrorKind.TOKEN_REVOKED.value


class SessionExpiredError(AuthenticationError):
    error_code = ErrorKind.SESSION_EXPIRED.value


class SessionInconsistentError(AuthenticationError):
    error_code = ErrorKind.SESSION_INCONSISTENT.value


class UserInactiveError(AuthenticationError):
    error_code = ErrorKind.USER_INACTIVE.value


class UserNotFoundError(AuthenticationError):
    error_code = ErrorKind.USER_NOT_FOUND.value


# --- authorization (403) ----------------------------------------------------


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = ErrorKind.INSUFFICIENT_PERMISSIONS.value


class InsufficientPermissionsError(ForbiddenError):
    error_code = ErrorKind.INSUFFICIENT_PERMISSIONS.value


class RestrictedToOrgUnitError(ForbiddenError):
    error_code = ErrorKind.RESTRICTED_TO_ORG_UNIT.value


class NotOwnerError(ForbiddenError):
    error_code = ErrorKind.NOT_OWNER.value


class EmailNotAllowedError(ForbiddenError):
    error_code = ErrorKind.EMAIL_NOT_ALLOWED.value


# --- throttling (429) -------------------------------------------------------


class RateLimitExceededError(ServiceError):
    """Rate limit exceeded (429); ``retry_after`` is in whole seconds."""
    status_code = 429
    error_code = ErrorKind.RATE_LIMIT_EXCEEDED.value

    def __init__(self, message: str, *, retry_after: int, detail: Optional[dict] = None) -> None:
        self.retry_after = max(int(retry_after), 1)
        super().__init__(message, detail={**(detail or {}), "retry_after": self.retry_after})


# --- password reset (400) ---------------------------------------------------


class PasswordResetError(ServiceError):
    status_code = 400


class TokenExpiredError(PasswordResetError):
    error_code = ErrorKind.TOKEN_EXPIRED.value


class TokenUsedError(PasswordResetError):
    error_code = ErrorKind.TOKEN_USED.value


class ChallengeRequiredError(PasswordResetError):
    error_code = ErrorKind.CHALLENGE_REQUIRED.value


class InvalidAnswerError(PasswordResetError):
    error_code = ErrorKind.INVALID_ANSWER.value

    def __init__(self, message: str, *, attempts_remaining: int) -> None:
        self.attempts_remaining = max(attempts_remaining, 0)
        super().__init__(message, detail={"attempts_remaining": self.attempts_remaining})


class AttemptsExceededError(PasswordResetError):
    error_code = ErrorKind.ATTEMPTS_EXCEEDED.value


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "MissingTokenError",
    "TokenInvalidError",
    "TokenRevokedError",
    "SessionExpiredError",
    "SessionInconsistentError",
    "UserInactiveError",
    "UserNotFoundError",
    "ForbiddenError",
    "InsufficientPermissionsError",
    "RestrictedToOrgUnitError",
    "NotOwnerError",
    "EmailNotAllowedError",
    "RateLimitExceededError",
    "PasswordResetError",
    "TokenExpiredError",
    "TokenUsedError",
    "ChallengeRequiredError",
    "InvalidAnswerError",
    "AttemptsExceededError",
]
