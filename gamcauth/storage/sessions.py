from __future__ import annotations

import json
from typing import List, Optional

from gamcauth.logging import get_logger
from gamcauth.storage.kv import KeyValueStore
from gamcauth.storage.models import SessionRecord

logger = get_logger(__name__)


class SessionStore:
    """Live login sessions keyed by session id.

    Each session is a JSON document under ``session:{id}``. A per-user set
    ``user_sessions:{user_id}`` indexes the ids so that all of a user's
    sessions can be dropped on logout-all or password reset.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    @staticmethod
    def _key(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def _index_key(user_id: str) -> str:
        return f"user_sessions:{user_id}"

    async def create(self, session_id: str, session: SessionRecord, ttl: int) -> None:
        await self.save(session_id, session, ttl)
        logger.info("session_created", session_id=session_id, user_id=session.user_id)

    async def save(self, session_id: str, session: SessionRecord, ttl: int) -> None:
        await self.kv.set(self._key(session_id), json.dumps(session.to_dict()), ttl_seconds=ttl)
        await self.kv.add_to_set(self._index_key(session.user_id), session_id, ttl_seconds=ttl)

    async def update(self, session_id: str, session: SessionRecord, ttl: int) -> bool:
        """Re-save an existing session; ``False`` if it was deleted meanwhile.

        A revoked session is never written back, so a request that loaded it
        just before logout-all or a password reset cannot resurrect it.
        """
        payload = json.dumps(session.to_dict())
        if not await self.kv.replace(self._key(session_id), payload, ttl_seconds=ttl):
            return False
        await self.kv.add_to_set(self._index_key(session.user_id), session_id, ttl_seconds=ttl)
        return True

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self.kv.get(self._key(session_id))
        if raw is None:
            return None
        try:
            return SessionRecord.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            # unreadable record is treated as absent
            logger.warning("session_record_corrupt", session_id=session_id, error=str(exc))
            return None

    async def delete(self, session_id: str, *, user_id: Optional[str] = None) -> bool:
        removed = await self.kv.delete(self._key(session_id))
        if user_id:
            await self.kv.remove_from_set(self._index_key(user_id), session_id)
        return bool(removed)

    async def list_for_user(self, user_id: str) -> List[SessionRecord]:
        sessions = []
        for session_id in await self.kv.set_members(self._index_key(user_id)):
            record = await self.get(session_id)
            if record is not None:
                sessions.append(record)
        return sessions

    async def delete_all_for_user(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        """Remove every indexed session of ``user_id``; returns how many existed.

        Best effort: the index is read once, then its members are deleted. A
        session created for the same user after the read is not in that
        snapshot and survives this call. Callers that need a hard cut-off
        (password reset) rely on the accompanying refresh-token purge and on
        the short access-token lifetime to close the window.
        """
        index_key = self._index_key(user_id)
        session_ids = await self.kv.set_members(index_key)
        session_ids.discard(except_session_id)
        if not session_ids:
            return 0
        removed = await self.kv.delete(*(self._key(sid) for sid in session_ids))
        await self.kv.remove_from_set(index_key, *session_ids)
        logger.info("user_sessions_revoked", user_id=user_id, count=removed)
        return removed


class RefreshTokenStore:
    """Current refresh-token id per (user, session).

    Only the newest refresh token of a session is accepted; rotating stores the
    new jti, so a replayed older token no longer matches.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    @staticmethod
    def _key(user_id: str, session_id: str) -> str:
        return f"refresh:{user_id}:{session_id}"

    @staticmethod
    def _index_key(user_id: str) -> str:
        return f"user_refresh:{user_id}"

    async def store(self, user_id: str, session_id: str, jti: str, ttl: int) -> None:
        await self.kv.set(self._key(user_id, session_id), jti, ttl_seconds=ttl)
        await self.kv.add_to_set(self._index_key(user_id), session_id, ttl_seconds=ttl)

    async def current(self, user_id: str, session_id: str) -> Optional[str]:
        return await self.kv.get(self._key(user_id, session_id))

    async def matches(self, user_id: str, session_id: str, jti: str) -> bool:
        current = await self.current(user_id, session_id)
        return current is not None and current == jti

    async def consume(self, user_id: str, session_id: str, jti: str) -> bool:
        """Take ``jti`` out as the session's current refresh token.

        Atomic: of several callers presenting the same token only one gets
        ``True``. The caller stores the successor with :meth:`store`.
        """
        if not jti:
            return False
        return await self.kv.compare_and_delete(self._key(user_id, session_id), jti)

    async def delete(self, user_id: str, session_id: str) -> None:
        await self.kv.delete(self._key(user_id, session_id))
        await self.kv.remove_from_set(self._index_key(user_id), session_id)

    async def delete_all_for_user(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        """Same best-effort snapshot semantics as ``SessionStore.delete_all_for_user``."""
        index_key = self._index_key(user_id)
        session_ids = await self.kv.set_members(index_key)
        session_ids.discard(except_session_id)
        if not session_ids:
            return 0
        removed = await self.kv.delete(*(self._key(user_id, sid) for sid in session_ids))
        await self.kv.remove_from_set(index_key, *session_ids)
        logger.info("user_refresh_tokens_revoked", user_id=user_id, count=removed)
        return removed


__all__ = ["SessionStore", "RefreshTokenStore"]
