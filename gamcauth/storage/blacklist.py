from __future__ import annotations

from gamcauth.storage.kv import KeyValueStore


class BlacklistStore:
    """Revoked token ids (``jti``).

    An entry lives exactly as long as the token it revokes; once the token
    would have expired anyway the entry disappears with it.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    @staticmethod
    def _key(jti: str) -> str:
        return f"blacklist:{jti}"

    async def revoke(self, jti: str, ttl: int) -> bool:
        """Blacklist ``jti`` for ``ttl`` seconds; no-op for an already expired token."""
        if not jti or ttl <= 0:
            return False
        await self.kv.set(self._key(jti), "revoked", ttl_seconds=ttl)
        return True

    async def is_revoked(self, jti: str) -> bool:
        if not jti:
            return False
        return await self.kv.exists(self._key(jti))


__all__ = ["BlacklistStore"]
