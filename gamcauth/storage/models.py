from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Role(str, Enum):
    """Intranet roles. ``input`` units send messages, ``output`` units read them."""

    ADMIN = "admin"
    INPUT = "input"
    OUTPUT = "output"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class ResetState(str, Enum):
    """Lifecycle of a password reset token.

    ``REQUESTED`` tokens are reset-capable immediately; tokens that need a
    security answer sit in ``CHALLENGE_PENDING`` until it is verified.
    ``SUPERSEDED`` marks tokens deactivated by a newer request.
    """

    REQUESTED = "requested"
    CHALLENGE_PENDING = "challenge_pending"
    CHALLENGE_VERIFIED = "challenge_verified"
    CONSUMED = "consumed"
    EXPIRED = "expired"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"
    SUPERSEDED = "superseded"

    @property
    def is_terminal(self) -> bool:
        return self in {
            ResetState.CONSUMED,
            ResetState.EXPIRED,
            ResetState.ATTEMPTS_EXCEEDED,
            ResetState.SUPERSEDED,
        }


class QuestionCategory(str, Enum):
    PERSONAL = "personal"
    EDUCATION = "education"
    PROFESSIONAL = "professional"
    PREFERENCES = "preferences"
    GENERAL = "general"


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str
    role: Role = Role.OUTPUT
    org_unit_id: Optional[int] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "role": self.role.value,
            "organizationalUnitId": self.org_unit_id,
            "isActive": self.is_active,
            "lastLogin": _format_dt(self.last_login),
            "passwordChangedAt": _format_dt(self.password_changed_at),
            "createdAt": _format_dt(self.created_at),
        }


@dataclass
class SessionRecord:
    """Server-side login record stored in the key-value backend."""

    session_id: str
    user_id: str
    email: str
    role: Role
    org_unit_id: Optional[int]
    created_at: datetime
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    access_jti: Optional[str] = None
    access_expires_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user: User,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "SessionRecord":
        now = utcnow()
        return cls(
            session_id=str(uuid.uuid4()),
            user_id=user.id,
            email=user.email,
            role=user.role,
            org_unit_id=user.org_unit_id,
            created_at=now,
            last_activity=now,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "email": self.email,
            "role": self.role.value,
            "organizationalUnitId": self.org_unit_id,
            "createdAt": _format_dt(self.created_at),
            "lastActivity": _format_dt(self.last_activity),
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "accessJti": self.access_jti,
            "accessExpiresAt": _format_dt(self.access_expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            session_id=data["sessionId"],
            user_id=data["userId"],
            email=data["email"],
            role=Role(data["role"]),
            org_unit_id=data.get("organizationalUnitId"),
            created_at=_parse_dt(data["createdAt"]),
            last_activity=_parse_dt(data["lastActivity"]),
            ip_address=data.get("ipAddress"),
            user_agent=data.get("userAgent"),
            access_jti=data.get("accessJti"),
            access_expires_at=_parse_dt(data.get("accessExpiresAt")),
        )


@dataclass
class SecurityQuestion:
    id: int
    text: str
    category: QuestionCategory = QuestionCategory.GENERAL
    is_active: bool = True
    sort_order: int = 0

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "questionText": self.text,
            "category": self.category.value,
            "sortOrder": self.sort_order,
        }


@dataclass
class UserSecurityQuestion:
    id: str
    user_id: str
    question_id: int
    answer_hash: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PasswordResetToken:
    id: str
    token: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    used_at: Optional[datetime] = None
    requires_security_question: bool = False
    security_question_verified: bool = False
    security_question_id: Optional[int] = None
    security_question_attempts: int = 0
    max_security_question_attempts: int = 3
    attempts_exhausted: bool = False
    request_ip: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        ttl_minutes: int,
        requires_security_question: bool = False,
        security_question_id: Optional[int] = None,
        max_security_question_attempts: int = 3,
        request_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "PasswordResetToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            token=secrets.token_hex(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            requires_security_question=requires_security_question,
            security_question_verified=not requires_security_question,
            security_question_id=security_question_id,
            max_security_question_attempts=max_security_question_attempts,
            request_ip=request_ip,
            user_agent=user_agent,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def state(self, now: Optional[datetime] = None) -> ResetState:
        if self.used_at is not None:
            return ResetState.CONSUMED
        if self.attempts_exhausted or self.attempts_capped:
            return ResetState.ATTEMPTS_EXCEEDED
        if self.is_expired(now):
            return ResetState.EXPIRED
        if not self.is_active:
            return ResetState.SUPERSEDED
        if self.requires_security_question and not self.security_question_verified:
            return ResetState.CHALLENGE_PENDING
        if self.requires_security_question:
            return ResetState.CHALLENGE_VERIFIED
        return ResetState.REQUESTED

    @property
    def attempts_capped(self) -> bool:
        return self.security_question_attempts >= self.max_security_question_attempts

    def is_usable_for_challenge(self) -> bool:
        return self.is_active and not self.attempts_exhausted and not self.attempts_capped

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return (
            self.is_active
            and not self.is_expired(now)
            and self.used_at is None
            and not self.attempts_exhausted
            and not self.attempts_capped
            and (not self.requires_security_question or self.security_question_verified)
        )

    def to_summary(self) -> Dict[str, Any]:
        """History view; never includes the token value."""
        return {
            "id": self.id,
            "createdAt": _format_dt(self.created_at),
            "expiresAt": _format_dt(self.expires_at),
            "usedAt": _format_dt(self.used_at),
            "state": self.state().value,
            "requiresSecurityQuestion": self.requires_security_question,
            "requestIp": self.request_ip,
        }


__all__ = [
    "utcnow",
    "Role",
    "TokenKind",
    "ResetState",
    "QuestionCategory",
    "User",
    "SessionRecord",
    "SecurityQuestion",
    "UserSecurityQuestion",
    "PasswordResetToken",
]
