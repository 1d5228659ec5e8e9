from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from gamcauth.config import Settings
from gamcauth.logging import get_logger, hash_email
from gamcauth.service.email import EmailService
from gamcauth.service.errors import (
    AttemptsExceededError,
    ChallengeRequiredError,
    EmailNotAllowedError,
    InvalidAnswerError,
    TokenExpiredError,
    TokenInvalidError,
    TokenUsedError,
)
from gamcauth.service.passwords import PasswordService, validate_password_strength
from gamcauth.service.rate_limit import RateLimiter
from gamcauth.service.security_questions import SecurityQuestionService
from gamcauth.storage.models import PasswordResetToken, ResetState, User
from gamcauth.storage.sessions import RefreshTokenStore, SessionStore

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = (
    "If the email is registered, you will receive instructions to reset your password."
)
RESET_COMPLETED_MESSAGE = "Password updated. All open sessions were closed."
INVALID_ANSWER_MESSAGE = "incorrect answer"
INVALID_RESET_TOKEN_MESSAGE = "invalid reset token"
RESET_RATE_SCOPE = "password_reset"


class PasswordResetStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def issue_reset_token(self, token: PasswordResetToken) -> int: ...

    def get_reset_token(self, token_value: str) -> Optional[PasswordResetToken]: ...

    def get_latest_active_reset_token(
        self, user_id: str, *, requires_security_question: Optional[bool] = None
    ) -> Optional[PasswordResetToken]: ...

    def list_reset_tokens(self, user_id: str, limit: int = 5) -> List[PasswordResetToken]: ...

    def increment_security_attempts(self, token_id: str, max_attempts: int) -> int: ...

    def mark_security_verified(self, token_id: str) -> bool: ...

    def deactivate_reset_token(self, token_id: str) -> None: ...

    def consume_reset_token(self, token_id: str) -> bool: ...

    def delete_stale_reset_tokens(self) -> int: ...


@dataclass
class ResetRequestResult:
    message: str
    # Only set when a token was actually issued; never sent to the client.
    issued: Optional[PasswordResetToken] = None


@dataclass
class ChallengeResult:
    reset_token: str
    attempts_remaining: int


class PasswordResetManager:
    """Single-use reset tokens with an optional security-question gate.

    ``REQUESTED`` (no question configured) or ``CHALLENGE_PENDING`` →
    ``CHALLENGE_VERIFIED`` → ``CONSUMED``; ``EXPIRED`` and
    ``ATTEMPTS_EXCEEDED`` are terminal. Issuing a token supersedes every other
    active token of the same user.
    """

    def __init__(
        self,
        store: PasswordResetStore,
        settings: Settings,
        *,
        questions: SecurityQuestionService,
        passwords: PasswordService,
        rate_limiter: RateLimiter,
        sessions: SessionStore,
        refresh_tokens: RefreshTokenStore,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.questions = questions
        self.passwords = passwords
        self.rate_limiter = rate_limiter
        self.sessions = sessions
        self.refresh_tokens = refresh_tokens
        self.email = email
        self.ttl_minutes = settings.reset_token_ttl_minutes
        self.max_attempts = settings.max_security_question_attempts
        self.allowed_domain = settings.reset_allowed_domain

    async def _deliver(self, method: str, *args: Any) -> None:
        if self.email is None:
            return
        try:
            await asyncio.to_thread(getattr(self.email, method), *args)
        except Exception as exc:
            # delivery is fire-and-forget; the response must not change
            logger.error("reset_email_failed", error=str(exc), error_type=type(exc).__name__)

    def _email_allowed(self, email: str) -> bool:
        local, sep, domain = email.rpartition("@")
        return bool(local and sep and domain == self.allowed_domain)

    async def request_reset(
        self,
        email: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ResetRequestResult:
        normalized = (email or "").strip().lower()
        if not self._email_allowed(normalized):
            raise EmailNotAllowedError(
                f"only @{self.allowed_domain} addresses can request a password reset"
            )
        await self.rate_limiter.check(
            RESET_RATE_SCOPE,
            normalized,
            1,
            self.settings.reset_cooldown_seconds,
            message="a reset was requested recently; please wait before trying again",
        )

        user = self.store.get_user_by_email(normalized)
        if user is None or not user.is_active:
            logger.info("password_reset_unknown_account", email_hash=hash_email(normalized))
            return ResetRequestResult(message=GENERIC_RESET_MESSAGE)

        question = self.questions.challenge_question(user.id)
        token = PasswordResetToken.new(
            user.id,
            ttl_minutes=self.ttl_minutes,
            requires_security_question=question is not None,
            security_question_id=question.id if question else None,
            max_security_question_attempts=self.max_attempts,
            request_ip=ip,
            user_agent=user_agent,
        )
        superseded = self.store.issue_reset_token(token)
        logger.info(
            "reset_token_issued",
            user_id=user.id,
            requires_security_question=token.requires_security_question,
            superseded=superseded,
        )
        if question is not None:
            await self._deliver(
                "send_security_challenge",
                user.email,
                question.id,
                question.text,
                self.ttl_minutes,
            )
        else:
            await self._deliver(
                "send_password_reset",
                user.email,
                token.token,
                self.ttl_minutes,
            )
        return ResetRequestResult(message=GENERIC_RESET_MESSAGE, issued=token)

    async def verify_security_answer(
        self, email: str, question_id: int, answer: str
    ) -> ChallengeResult:
        """Check the answer for the user's pending challenge.

        Every call counts as an attempt, right or wrong. A missing account,
        missing challenge and expired challenge all answer like a wrong
        answer with no attempts left.
        """
        normalized = (email or "").strip().lower()
        user = self.store.get_user_by_email(normalized)
        token = None
        if user is not None and user.is_active:
            token = self.store.get_latest_active_reset_token(
                user.id, requires_security_question=True
            )
        if token is None:
            logger.info("security_answer_no_challenge", email_hash=hash_email(normalized))
            raise InvalidAnswerError(INVALID_ANSWER_MESSAGE, attempts_remaining=0)
        if token.is_expired():
            self.store.deactivate_reset_token(token.id)
            logger.info("security_answer_token_expired", user_id=user.id)
            raise InvalidAnswerError(INVALID_ANSWER_MESSAGE, attempts_remaining=0)

        attempts = self.store.increment_security_attempts(token.id, self.max_attempts)
        if attempts >= self.max_attempts:
            # the call that reaches the cap locks the token whatever the answer
            logger.warning("security_question_locked", user_id=user.id, attempts=attempts)
            raise AttemptsExceededError("too many attempts; request a new password reset")

        correct = question_id == token.security_question_id and self.questions.verify_answer(
            user.id, question_id, answer
        )
        remaining = self.max_attempts - attempts
        if not correct:
            logger.info("security_answer_incorrect", user_id=user.id, attempts=attempts)
            raise InvalidAnswerError(INVALID_ANSWER_MESSAGE, attempts_remaining=remaining)

        if not self.store.mark_security_verified(token.id):
            # lost a race with a concurrent lockout or supersede
            raise InvalidAnswerError(INVALID_ANSWER_MESSAGE, attempts_remaining=0)
        logger.info("security_question_verified", user_id=user.id, attempts=attempts)
        return ChallengeResult(reset_token=token.token, attempts_remaining=remaining)

    def _check_usable(self, token: Optional[PasswordResetToken]) -> PasswordResetToken:
        if token is None:
            raise TokenInvalidError(INVALID_RESET_TOKEN_MESSAGE, status_code=400)
        state = token.state()
        if state is ResetState.CONSUMED:
            raise TokenUsedError("reset token has already been used")
        if state is ResetState.ATTEMPTS_EXCEEDED:
            raise AttemptsExceededError("too many attempts; request a new password reset")
        if state is ResetState.EXPIRED:
            self.store.deactivate_reset_token(token.id)
            raise TokenExpiredError("reset token has expired")
        if state is ResetState.SUPERSEDED:
            raise TokenInvalidError(INVALID_RESET_TOKEN_MESSAGE, status_code=400)
        if state is ResetState.CHALLENGE_PENDING:
            raise ChallengeRequiredError("answer the security question before resetting")
        return token

    async def confirm_reset(self, token_value: str, new_password: str) -> User:
        token = self._check_usable(self.store.get_reset_token(token_value) if token_value else None)
        validate_password_strength(new_password)

        user = self.store.get_user(token.user_id)
        if user is None or not user.is_active:
            raise TokenInvalidError(INVALID_RESET_TOKEN_MESSAGE, status_code=400)
        if not self.store.consume_reset_token(token.id):
            raise TokenUsedError("reset token has already been used")

        password_hash, algo = self.passwords.hash(new_password)
        self.store.save_password(user.id, password_hash, algo)

        # Every session goes, including the one that asked for the reset.
        try:
            sessions_removed = await self.sessions.delete_all_for_user(user.id)
            refresh_removed = await self.refresh_tokens.delete_all_for_user(user.id)
        except Exception as exc:
            logger.error(
                "reset_session_cleanup_failed",
                user_id=user.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        else:
            logger.info(
                "password_reset_completed",
                user_id=user.id,
                sessions_removed=sessions_removed,
                refresh_tokens_removed=refresh_removed,
            )
        await self._deliver("send_password_changed", user.email)
        return user

    def reset_status(self, token_value: str) -> Dict[str, Any]:
        token = self.store.get_reset_token(token_value) if token_value else None
        if token is None:
            return {"tokenValid": False, "state": None}
        state = token.state()
        question = None
        if token.security_question_id is not None:
            q = self.questions.store.get_security_question(token.security_question_id)
            if q is not None:
                question = {"questionId": q.id, "questionText": q.text}
        return {
            "tokenValid": token.is_usable() or state is ResetState.CHALLENGE_PENDING,
            "state": state.value,
            "tokenExpired": state is ResetState.EXPIRED,
            "tokenUsed": token.used_at is not None,
            "requiresSecurityQuestion": token.requires_security_question,
            "securityQuestionVerified": token.security_question_verified,
            "canProceedToReset": token.is_usable(),
            "attemptsRemaining": max(0, self.max_attempts - token.security_question_attempts),
            "expiresAt": token.expires_at.isoformat(),
            "securityQuestion": question,
        }

    def reset_history(self, user_id: str) -> List[Dict[str, Any]]:
        limit = self.settings.reset_history_limit
        return [token.to_summary() for token in self.store.list_reset_tokens(user_id, limit=limit)]

    def cleanup_expired(self) -> int:
        removed = self.store.delete_stale_reset_tokens()
        logger.info("reset_tokens_cleaned", removed=removed)
        return removed


__all__ = [
    "GENERIC_RESET_MESSAGE",
    "RESET_COMPLETED_MESSAGE",
    "PasswordResetStore",
    "ResetRequestResult",
    "ChallengeResult",
    "PasswordResetManager",
]
