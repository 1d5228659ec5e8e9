from __future__ import annotations

from typing import Optional, Protocol, Set, Tuple, runtime_checkable


@runtime_checkable
class KeyValueStore(Protocol):
    """Async key-value backend shared by the session, blacklist and rate-limit stores.

    Values are strings. ``ttl_seconds`` of ``None`` means no expiry.
    Implementations must make ``incr_window``, ``replace`` and
    ``compare_and_delete`` atomic per key.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None: ...

    async def replace(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> bool:
        """Overwrite ``key`` only if it still exists; ``False`` when it is gone."""
        ...

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete ``key`` only while it holds ``expected``, as one atomic step."""
        ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> Optional[int]:
        """Remaining lifetime in seconds; ``None`` when absent or persistent."""
        ...

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        """Increment a counter, starting its expiry window on the first hit.

        Returns ``(count, seconds_until_window_resets)``.
        """
        ...

    async def add_to_set(self, key: str, member: str, *, ttl_seconds: Optional[int] = None) -> None: ...

    async def set_members(self, key: str) -> Set[str]: ...

    async def remove_from_set(self, key: str, *members: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


__all__ = ["KeyValueStore"]
