from __future__ import annotations

import hashlib
from dataclasses import dataclass

from gamcauth.logging import get_logger
from gamcauth.service.errors import RateLimitExceededError
from gamcauth.storage.kv import KeyValueStore

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60


@dataclass
class RateLimitStatus:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.retry_after),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


class RateLimiter:
    """Fixed-window counters over the shared key-value store.

    Every hit increments first and compares afterwards, so two concurrent
    requests can never both observe the last free slot.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    @staticmethod
    def _normalize_key(scope: str, subject: str) -> str:
        """Hash the subject so emails and IPs never appear in key names."""
        digest = hashlib.sha256(subject.strip().lower().encode()).hexdigest()
        return f"rate:{scope}:{digest}"

    async def hit(self, scope: str, subject: str, limit: int, window_seconds: int) -> RateLimitStatus:
        if limit <= 0:
            return RateLimitStatus(allowed=True, limit=limit, remaining=limit, retry_after=0)
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                scope=scope,
                window_seconds=window_seconds,
            )
            window_seconds = DEFAULT_WINDOW_SECONDS
        count, ttl = await self.kv.incr_window(self._normalize_key(scope, subject), window_seconds)
        allowed = count <= limit
        return RateLimitStatus(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            retry_after=max(1, ttl),
        )

    async def check(
        self,
        scope: str,
        subject: str,
        limit: int,
        window_seconds: int,
        *,
        message: str = "too many requests",
    ) -> RateLimitStatus:
        """Count a hit and raise ``RateLimitExceededError`` once over ``limit``."""
        status = await self.hit(scope, subject, limit, window_seconds)
        if not status.allowed:
            logger.info("rate_limit_exceeded", scope=scope, retry_after=status.retry_after)
            raise RateLimitExceededError(message, retry_after=status.retry_after)
        return status

    async def reset(self, scope: str, subject: str) -> None:
        await self.kv.delete(self._normalize_key(scope, subject))


__all__ = ["RateLimitStatus", "RateLimiter"]
