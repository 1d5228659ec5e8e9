from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from gamcauth.config import Settings
from gamcauth.logging import get_logger
from gamcauth.service.errors import (
    AuthenticationError,
    MissingTokenError,
    SessionExpiredError,
    SessionInconsistentError,
    TokenRevokedError,
    UserInactiveError,
    UserNotFoundError,
)
from gamcauth.service.tokens import TokenClaims, TokenCodec
from gamcauth.storage.blacklist import BlacklistStore
from gamcauth.storage.models import Role, SessionRecord, TokenKind, User, utcnow
from gamcauth.storage.sessions import SessionStore

logger = get_logger(__name__)


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


class FailureStrategy(str, Enum):
    """What the pipeline does with an authentication failure."""

    REJECT = "reject"
    IGNORE = "ignore"


@dataclass
class AuthContext:
    """Identity resolved for one request."""

    user: User
    session: SessionRecord
    claims: TokenClaims

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def role(self) -> Role:
        return self.user.role

    @property
    def org_unit_id(self) -> Optional[int]:
        return self.user.org_unit_id


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthPipeline:
    """Ordered checks run for every protected request.

    1. bearer token present
    2. signature, expiry and kind
    3. jti not blacklisted (skipped for tokens without a jti)
    4. session still exists
    5. session and token agree on user id and email
    6. user exists and is active
    7. session last-activity bumped and re-saved, unless revoked meanwhile

    The first failing check raises its specific error. Optional
    authentication is the same sequence run with ``FailureStrategy.IGNORE``.
    """

    def __init__(
        self,
        codec: TokenCodec,
        blacklist: BlacklistStore,
        sessions: SessionStore,
        users: UserLookup,
        settings: Settings,
    ) -> None:
        self.codec = codec
        self.blacklist = blacklist
        self.sessions = sessions
        self.users = users
        self.session_ttl = settings.session_ttl_minutes * 60

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        strategy: FailureStrategy = FailureStrategy.REJECT,
    ) -> Optional[AuthContext]:
        try:
            return await self._run(authorization)
        except AuthenticationError as exc:
            if strategy is FailureStrategy.IGNORE:
                logger.debug("optional_auth_ignored", error_code=exc.error_code)
                return None
            raise

    async def _run(self, authorization: Optional[str]) -> AuthContext:
        token = extract_bearer(authorization)
        if token is None:
            raise MissingTokenError("authorization token required")

        claims = self.codec.verify(token, TokenKind.ACCESS)

        if claims.jti and await self.blacklist.is_revoked(claims.jti):
            logger.info("access_token_revoked", jti=claims.jti, user_id=claims.user_id)
            raise TokenRevokedError("token has been revoked")

        session = await self.sessions.get(claims.session_id)
        if session is None:
            raise SessionExpiredError("session expired or not found")

        if session.user_id != claims.user_id or session.email != claims.email:
            logger.warning(
                "session_inconsistent",
                session_id=session.session_id,
                session_user_id=session.user_id,
                token_user_id=claims.user_id,
            )
            raise SessionInconsistentError("session does not match token")

        user = self.users.get_user(claims.user_id)
        if user is None:
            raise UserNotFoundError("user not found")
        if not user.is_active:
            raise UserInactiveError("user account is inactive")

        session.last_activity = utcnow()
        if not await self.sessions.update(session.session_id, session, self.session_ttl):
            # revoked while this request was in flight
            logger.info("session_revoked_during_request", session_id=session.session_id)
            raise SessionExpiredError("session expired or not found")
        return AuthContext(user=user, session=session, claims=claims)


__all__ = [
    "UserLookup",
    "FailureStrategy",
    "AuthContext",
    "extract_bearer",
    "AuthPipeline",
]
