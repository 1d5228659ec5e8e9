from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from gamcauth.config import Settings
from gamcauth.logging import get_logger, hash_email
from gamcauth.service.errors import (
    InvalidCredentialsError,
    SessionExpiredError,
    SessionInconsistentError,
    TokenRevokedError,
    UserInactiveError,
    UserNotFoundError,
    ValidationError,
)
from gamcauth.service.passwords import PasswordService, validate_password_strength
from gamcauth.service.pipeline import AuthContext
from gamcauth.service.tokens import TokenClaims, TokenCodec
from gamcauth.storage.blacklist import BlacklistStore
from gamcauth.storage.models import SessionRecord, TokenKind, User
from gamcauth.storage.sessions import RefreshTokenStore, SessionStore

logger = get_logger(__name__)


class AuthStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def record_login(self, user_id: str) -> None: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_claims: TokenClaims
    refresh_claims: TokenClaims
    expires_in: int

    def to_public(self) -> Dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenType": "Bearer",
            "expiresIn": self.expires_in,
        }


@dataclass
class LoginResult:
    user: User
    session: SessionRecord
    tokens: TokenPair


class AuthService:
    """Login, token refresh, logout and password change.

    Request authentication itself lives in :class:`AuthPipeline`; this class
    owns the writes that create, rotate and end sessions.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        codec: TokenCodec,
        sessions: SessionStore,
        refresh_tokens: RefreshTokenStore,
        blacklist: BlacklistStore,
        passwords: Optional[PasswordService] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.codec = codec
        self.sessions = sessions
        self.refresh_tokens = refresh_tokens
        self.blacklist = blacklist
        self.passwords = passwords or PasswordService()
        self.session_ttl = settings.session_ttl_minutes * 60
        self.logger = logger

    # -- credentials -------------------------------------------------------

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        return self.passwords.verify(stored_hash, algo, password, user_id=user_id)

    def set_password(self, user_id: str, password: str) -> None:
        password_hash, algo = self.passwords.hash(password)
        self.store.save_password(user_id, password_hash, algo)

    # -- token issuance ----------------------------------------------------

    def _issue_pair(self, user: User, session: SessionRecord, *, token_version: int = 1) -> TokenPair:
        access_claims = TokenClaims(
            sub=user.id,
            sid=session.session_id,
            kind=TokenKind.ACCESS,
            email=user.email,
            role=user.role,
            org_unit_id=user.org_unit_id,
        )
        refresh_claims = TokenClaims(
            sub=user.id,
            sid=session.session_id,
            kind=TokenKind.REFRESH,
            token_version=token_version,
        )
        access_token = self.codec.issue(access_claims, TokenKind.ACCESS)
        refresh_token = self.codec.issue(refresh_claims, TokenKind.REFRESH)
        session.access_jti = access_claims.jti
        session.access_expires_at = datetime.fromtimestamp(access_claims.exp, tz=timezone.utc)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_claims=access_claims,
            refresh_claims=refresh_claims,
            expires_in=self.codec.lifetime_seconds(TokenKind.ACCESS),
        )

    async def _revoke_previous_access(self, session: SessionRecord) -> None:
        if not session.access_jti or not session.access_expires_at:
            return
        remaining = int((session.access_expires_at - datetime.now(timezone.utc)).total_seconds())
        await self.blacklist.revoke(session.access_jti, remaining)

    # -- operations --------------------------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(email)
        if user is None:
            self.passwords.burn_verify(password)
        if user is None or not self.verify_password(user.id, password):
            self.logger.info("login_failed", email_hash=hash_email(email), reason="credentials")
            raise InvalidCredentialsError("invalid credentials")
        if not user.is_active:
            self.logger.info("login_failed", user_id=user.id, reason="inactive")
            raise InvalidCredentialsError("invalid credentials")

        session = SessionRecord.new(user, ip_address=ip_address, user_agent=user_agent)
        tokens = self._issue_pair(user, session)
        await self.sessions.create(session.session_id, session, self.session_ttl)
        await self.refresh_tokens.store(
            user.id,
            session.session_id,
            tokens.refresh_claims.jti,
            self.codec.lifetime_seconds(TokenKind.REFRESH),
        )
        self.store.record_login(user.id)
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.session_id)
        return LoginResult(user=user, session=session, tokens=tokens)

    async def refresh(self, refresh_token: str) -> LoginResult:
        """Rotate a refresh token; the presented token and the old access token die.

        The presented jti is consumed atomically before anything is issued, so
        two requests racing with the same token cannot both rotate it.
        """
        claims = self.codec.verify(refresh_token, TokenKind.REFRESH)
        if not await self.refresh_tokens.consume(claims.user_id, claims.session_id, claims.jti):
            current = await self.refresh_tokens.current(claims.user_id, claims.session_id)
            if current is not None:
                # An older token of this session came back: treat the family as stolen.
                self.logger.warning(
                    "refresh_token_reuse_detected",
                    user_id=claims.user_id,
                    session_id=claims.session_id,
                )
                await self.refresh_tokens.delete(claims.user_id, claims.session_id)
                await self.sessions.delete(claims.session_id, user_id=claims.user_id)
            raise TokenRevokedError("refresh token has been revoked")
        if claims.jti and await self.blacklist.is_revoked(claims.jti):
            raise TokenRevokedError("refresh token has been revoked")

        session = await self.sessions.get(claims.session_id)
        if session is None:
            raise SessionExpiredError("session expired or not found")
        if session.user_id != claims.user_id:
            self.logger.warning(
                "session_inconsistent",
                session_id=session.session_id,
                session_user_id=session.user_id,
                token_user_id=claims.user_id,
            )
            raise SessionInconsistentError("session does not match token")
        user = self.store.get_user(claims.user_id)
        if user is None:
            raise UserNotFoundError("user not found")
        if not user.is_active:
            raise UserInactiveError("user account is inactive")

        await self._revoke_previous_access(session)
        await self.blacklist.revoke(claims.jti, self.codec.remaining_seconds(claims))

        tokens = self._issue_pair(user, session, token_version=claims.token_version + 1)
        if not await self.sessions.update(session.session_id, session, self.session_ttl):
            raise SessionExpiredError("session expired or not found")
        await self.refresh_tokens.store(
            user.id,
            session.session_id,
            tokens.refresh_claims.jti,
            self.codec.lifetime_seconds(TokenKind.REFRESH),
        )
        self.logger.info("tokens_refreshed", user_id=user.id, session_id=session.session_id)
        return LoginResult(user=user, session=session, tokens=tokens)

    async def logout(self, identity: AuthContext, *, logout_all: bool = False) -> int:
        """End the current session, or every session of the user. Returns sessions removed."""
        claims = identity.claims
        if claims.jti:
            await self.blacklist.revoke(claims.jti, self.codec.remaining_seconds(claims))

        if logout_all:
            removed = await self.sessions.delete_all_for_user(identity.user_id)
            await self.refresh_tokens.delete_all_for_user(identity.user_id)
        else:
            removed = int(await self.sessions.delete(identity.session_id, user_id=identity.user_id))
            await self.refresh_tokens.delete(identity.user_id, identity.session_id)
        self.logger.info(
            "logout",
            user_id=identity.user_id,
            session_id=identity.session_id,
            logout_all=logout_all,
            sessions_removed=removed,
        )
        return removed

    def profile(self, identity: AuthContext) -> Dict[str, Any]:
        data = identity.user.to_public()
        data["session"] = {
            "sessionId": identity.session.session_id,
            "createdAt": identity.session.created_at.isoformat(),
            "lastActivity": identity.session.last_activity.isoformat(),
            "ipAddress": identity.session.ip_address,
        }
        return data

    async def change_password(
        self, identity: AuthContext, current_password: str, new_password: str
    ) -> int:
        """Rotate the password and end every other session. Returns sessions removed."""
        if not self.verify_password(identity.user_id, current_password):
            raise ValidationError(
                "current password is incorrect", detail={"field": "currentPassword"}
            )
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current one", detail={"field": "newPassword"}
            )
        validate_password_strength(new_password)
        self.set_password(identity.user_id, new_password)

        removed = await self.sessions.delete_all_for_user(
            identity.user_id, except_session_id=identity.session_id
        )
        await self.refresh_tokens.delete_all_for_user(
            identity.user_id, except_session_id=identity.session_id
        )
        self.logger.info("password_changed", user_id=identity.user_id, sessions_removed=removed)
        return removed


__all__ = ["AuthStore", "TokenPair", "LoginResult", "AuthService"]
