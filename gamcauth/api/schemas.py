from __future__ import annotations

import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from gamcauth.service.passwords import MAX_PASSWORD_LENGTH


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _normalize_unicode(value: str) -> str:
    """Normalize a string using NFKC after stripping invisible characters.

    Zero-width characters and bidi overrides are removed first so that two
    addresses that render identically compare equal.
    """
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class Envelope(BaseModel):
    """Response body shared by every endpoint, success or failure."""

    success: bool
    message: str
    data: Optional[Any] = None
    error: Optional[str] = None
    details: Optional[Any] = None
    timestamp: str = Field(default_factory=_utc_timestamp)

    def to_content(self) -> dict:
        return self.model_dump(exclude_none=True)


def ok(message: str, data: Any = None) -> dict:
    return Envelope(success=True, message=message, data=data).to_content()


class CamelModel(BaseModel):
    """Request bodies arrive in camelCase; snake_case is accepted too."""

    model_config = ConfigDict(alias_generator=_to_camel, populate_by_name=True)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RefreshRequest(CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class LogoutRequest(CamelModel):
    logout_all: bool = False


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class ForgotPasswordRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifySecurityQuestionRequest(CamelModel):
    email: str
    question_id: int = Field(..., ge=1)
    answer: str = Field(..., min_length=1, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_challenge_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)


class SecurityAnswer(CamelModel):
    question_id: int = Field(..., ge=1)
    answer: str = Field(..., min_length=1, max_length=200)


class SecurityQuestionsSetupRequest(CamelModel):
    questions: List[SecurityAnswer] = Field(..., min_length=1, max_length=10)

    @model_validator(mode="after")
    def _reject_duplicates(self):
        ids = [item.question_id for item in self.questions]
        if len(set(ids)) != len(ids):
            raise ValueError("each security question may appear only once")
        return self


class SecurityAnswerUpdateRequest(CamelModel):
    answer: str = Field(..., min_length=1, max_length=200)


__all__ = [
    "Envelope",
    "ok",
    "LoginRequest",
    "RefreshRequest",
    "LogoutRequest",
    "ChangePasswordRequest",
    "ForgotPasswordRequest",
    "VerifySecurityQuestionRequest",
    "ResetPasswordRequest",
    "SecurityAnswer",
    "SecurityQuestionsSetupRequest",
    "SecurityAnswerUpdateRequest",
]
