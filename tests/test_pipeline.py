"""The ordered authentication checks run for every protected request."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from gamcauth.service import pipeline as pipeline_module
from gamcauth.service.errors import (
    MissingTokenError,
    SessionExpiredError,
    SessionInconsistentError,
    TokenInvalidError,
    TokenRevokedError,
    UserInactiveError,
    UserNotFoundError,
)
from gamcauth.service.pipeline import AuthPipeline, FailureStrategy, extract_bearer
from gamcauth.service.tokens import TokenClaims, TokenCodec
from gamcauth.storage.blacklist import BlacklistStore
from gamcauth.storage.models import Role, SessionRecord, TokenKind
from gamcauth.storage.sessions import SessionStore


class Harness:
    def __init__(self, settings, store, kv):
        self.store = store
        self.codec = TokenCodec(settings)
        self.sessions = SessionStore(kv)
        self.blacklist = BlacklistStore(kv)
        self.pipeline = AuthPipeline(self.codec, self.blacklist, self.sessions, store, settings)

    async def login(self, user):
        session = SessionRecord.new(user, ip_address="10.1.1.1")
        await self.sessions.create(session.session_id, session, 3600)
        claims = TokenClaims(
            sub=user.id,
            sid=session.session_id,
            kind=TokenKind.ACCESS,
            email=user.email,
            role=user.role,
            org_unit_id=user.org_unit_id,
        )
        token = self.codec.issue(claims, TokenKind.ACCESS)
        return session, claims, f"Bearer {token}"


@pytest.fixture
def harness(settings, store, kv):
    return Harness(settings, store, kv)


@pytest.fixture
def user(store):
    return store.create_user(
        "luis.vargas@gamc.gov.bo", "Luis", "Vargas", role=Role.OUTPUT, org_unit_id=4
    )


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer abc", "abc"),
            ("BEARER   abc  ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract(self, header, expected):
        assert extract_bearer(header) == expected


class TestAuthPipeline:
    async def test_success_returns_context_and_bumps_activity(self, harness, user):
        session, _, header = await harness.login(user)

        ctx = await harness.pipeline.authenticate(header)

        assert ctx.user_id == user.id
        assert ctx.session_id == session.session_id
        assert ctx.role is Role.OUTPUT
        assert ctx.org_unit_id == 4
        stored = await harness.sessions.get(session.session_id)
        assert stored.last_activity >= session.last_activity

    async def test_missing_token(self, harness):
        with pytest.raises(MissingTokenError):
            await harness.pipeline.authenticate(None)
        with pytest.raises(MissingTokenError):
            await harness.pipeline.authenticate("Token abc")

    async def test_invalid_token(self, harness):
        with pytest.raises(TokenInvalidError):
            await harness.pipeline.authenticate("Bearer not-a-jwt")

    async def test_revoked_token(self, harness, user):
        _, claims, header = await harness.login(user)
        await harness.blacklist.revoke(claims.jti, 600)

        with pytest.raises(TokenRevokedError):
            await harness.pipeline.authenticate(header)

    async def test_token_without_jti_skips_blacklist(self, harness, user):
        session, claims, _ = await harness.login(user)
        claims.jti = ""
        token = harness.codec.issue(claims, TokenKind.ACCESS)
        harness.blacklist.is_revoked = AsyncMock(return_value=True)

        ctx = await harness.pipeline.authenticate(f"Bearer {token}")

        assert ctx.session_id == session.session_id
        harness.blacklist.is_revoked.assert_not_awaited()

    async def test_session_gone(self, harness, user):
        session, _, header = await harness.login(user)
        await harness.sessions.delete(session.session_id, user_id=user.id)

        with pytest.raises(SessionExpiredError):
            await harness.pipeline.authenticate(header)

    async def test_session_user_mismatch_is_hard_failure(self, harness, user, store):
        session, _, header = await harness.login(user)
        intruder = store.create_user("intruso@gamc.gov.bo", "I", "X")
        session.user_id = intruder.id
        await harness.sessions.save(session.session_id, session, 3600)

        with patch.object(pipeline_module, "logger") as mock_logger:
            with pytest.raises(SessionInconsistentError):
                await harness.pipeline.authenticate(header)

        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args.args[0] == "session_inconsistent"
        stored = await harness.sessions.get(session.session_id)
        assert stored.user_id == intruder.id

    async def test_session_email_mismatch(self, harness, user):
        session, _, header = await harness.login(user)
        session.email = "otra.persona@gamc.gov.bo"
        await harness.sessions.save(session.session_id, session, 3600)

        with pytest.raises(SessionInconsistentError):
            await harness.pipeline.authenticate(header)

    async def test_user_not_found(self, harness, user, store):
        _, _, header = await harness.login(user)
        del store.users[user.id]

        with pytest.raises(UserNotFoundError):
            await harness.pipeline.authenticate(header)

    async def test_inactive_user(self, harness, user, store):
        _, _, header = await harness.login(user)
        store.set_user_active(user.id, False)

        with pytest.raises(UserInactiveError):
            await harness.pipeline.authenticate(header)

    async def test_revocation_checked_before_session(self, harness, user):
        session, claims, header = await harness.login(user)
        await harness.blacklist.revoke(claims.jti, 600)
        await harness.sessions.delete(session.session_id, user_id=user.id)

        with pytest.raises(TokenRevokedError):
            await harness.pipeline.authenticate(header)

    async def test_success_resaves_with_full_ttl(self, harness, user, settings):
        session, _, header = await harness.login(user)
        session.last_activity -= timedelta(hours=1)
        await harness.sessions.save(session.session_id, session, 10)
        harness.sessions.update = AsyncMock(wraps=harness.sessions.update)

        await harness.pipeline.authenticate(header)

        args = harness.sessions.update.await_args.args
        assert args[0] == session.session_id
        assert args[2] == settings.session_ttl_minutes * 60

    async def test_session_revoked_mid_request_stays_revoked(self, harness, user):
        session, _, header = await harness.login(user)
        original_get = harness.sessions.get

        async def get_then_revoke(session_id):
            record = await original_get(session_id)
            await harness.sessions.delete_all_for_user(user.id)
            return record

        harness.sessions.get = get_then_revoke
        with pytest.raises(SessionExpiredError):
            await harness.pipeline.authenticate(header)

        harness.sessions.get = original_get
        assert await harness.sessions.get(session.session_id) is None
        assert await harness.sessions.list_for_user(user.id) == []
        with pytest.raises(SessionExpiredError):
            await harness.pipeline.authenticate(header)


class TestOptionalStrategy:
    async def test_ignore_turns_auth_failures_into_none(self, harness, user):
        assert await harness.pipeline.authenticate(None, strategy=FailureStrategy.IGNORE) is None
        assert (
            await harness.pipeline.authenticate("Bearer junk", strategy=FailureStrategy.IGNORE)
            is None
        )

        session, _, header = await harness.login(user)
        await harness.sessions.delete(session.session_id, user_id=user.id)
        assert await harness.pipeline.authenticate(header, strategy=FailureStrategy.IGNORE) is None

    async def test_ignore_still_authenticates_valid_tokens(self, harness, user):
        _, _, header = await harness.login(user)
        ctx = await harness.pipeline.authenticate(header, strategy=FailureStrategy.IGNORE)
        assert ctx is not None and ctx.user_id == user.id

    async def test_infrastructure_errors_propagate(self, harness, user):
        _, _, header = await harness.login(user)
        harness.sessions.get = AsyncMock(side_effect=ConnectionError("kv down"))

        with pytest.raises(ConnectionError):
            await harness.pipeline.authenticate(header, strategy=FailureStrategy.IGNORE)
