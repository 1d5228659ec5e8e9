from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, Optional, Set, Tuple


class MemoryKeyValueStore:
    """Process-local key-value backend with per-key expiry.

    Only suitable for a single API instance (tests, local development):
    counters and blacklist entries are not shared between processes, so a
    second instance would enforce its own separate limits.
    """

    SWEEP_EVERY = 256

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._values: Dict[str, str] = {}
        self._sets: Dict[str, Set[str]] = {}
        self._expiry: Dict[str, float] = {}
        self._writes = 0

    def _purge_if_expired(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._values.pop(key, None)
            self._sets.pop(key, None)
            self._expiry.pop(key, None)

    def _maybe_sweep(self) -> None:
        # keys that are never read again (blacklist entries, per-client rate
        # counters) would otherwise stay until process exit
        self._writes += 1
        if self._writes < self.SWEEP_EVERY:
            return
        self._writes = 0
        now = self._clock()
        for key in [k for k, deadline in self._expiry.items() if now >= deadline]:
            self._values.pop(key, None)
            self._sets.pop(key, None)
            self._expiry.pop(key, None)

    def _set_expiry(self, key: str, ttl_seconds: Optional[int]) -> None:
        if ttl_seconds is None:
            self._expiry.pop(key, None)
        else:
            self._expiry[key] = self._clock() + max(1, int(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._purge_if_expired(key)
            return self._values.get(key)

    async def set(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._values[key] = value
            self._sets.pop(key, None)
            self._set_expiry(key, ttl_seconds)
            self._maybe_sweep()

    async def replace(self, key: str, value: str, *, ttl_seconds: Optional[int] = None) -> bool:
        with self._lock:
            self._purge_if_expired(key)
            if key not in self._values:
                return False
            self._values[key] = value
            self._set_expiry(key, ttl_seconds)
            return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._lock:
            self._purge_if_expired(key)
            if key not in self._values or self._values[key] != expected:
                return False
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                self._purge_if_expired(key)
                present = key in self._values or key in self._sets
                self._values.pop(key, None)
                self._sets.pop(key, None)
                self._expiry.pop(key, None)
                removed += int(present)
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            self._purge_if_expired(key)
            return key in self._values or key in self._sets

    async def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            self._purge_if_expired(key)
            deadline = self._expiry.get(key)
            if deadline is None:
                return None
            return max(0, math.ceil(deadline - self._clock()))

    async def incr_window(self, key: str, window_seconds: int) -> Tuple[int, int]:
        with self._lock:
            self._purge_if_expired(key)
            count = int(self._values.get(key, "0")) + 1
            self._values[key] = str(count)
            if count == 1 or key not in self._expiry:
                self._set_expiry(key, window_seconds)
            remaining = max(1, math.ceil(self._expiry[key] - self._clock()))
            self._maybe_sweep()
            return count, remaining

    async def add_to_set(self, key: str, member: str, *, ttl_seconds: Optional[int] = None) -> None:
        with self._lock:
            self._purge_if_expired(key)
            self._sets.setdefault(key, set()).add(member)
            if ttl_seconds is not None:
                self._set_expiry(key, ttl_seconds)
            self._maybe_sweep()

    async def set_members(self, key: str) -> Set[str]:
        with self._lock:
            self._purge_if_expired(key)
            return set(self._sets.get(key, ()))

    async def remove_from_set(self, key: str, *members: str) -> int:
        with self._lock:
            self._purge_if_expired(key)
            bucket = self._sets.get(key)
            if not bucket:
                return 0
            removed = 0
            for member in members:
                if member in bucket:
                    bucket.discard(member)
                    removed += 1
            if not bucket:
                self._sets.pop(key, None)
                self._expiry.pop(key, None)
            return removed

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._sets.clear()
            self._expiry.clear()


__all__ = ["MemoryKeyValueStore"]
