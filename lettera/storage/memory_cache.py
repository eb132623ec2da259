from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Set, Tuple, Union

from lettera.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _Entry:
    value: Union[str, Set[str]]
    expires_at: Optional[float] = None


class MemoryCache:
    """In-process ephemeral store with per-key expiry.

    Mirrors the subset of Redis semantics the service relies on: string keys,
    set keys, TTLs and atomic compare-and-delete. Expiry is checked lazily on
    every access, and writes sweep the whole map at most once every
    ``purge_interval`` seconds so keys that are never read again still go
    away. All state is guarded by a single mutex so the cache is safe to
    share between threads.

    State is per process. Two instances running on the fallback do not see
    each other's codes or refresh tokens.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        purge_interval: float = 60.0,
    ) -> None:
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self.purge_interval = purge_interval
        self._next_purge = clock() + purge_interval

    def _expiry(self, ttl: Optional[int]) -> Optional[float]:
        if ttl is None:
            return None
        if ttl <= 0:
            raise ValueError("ttl must be a positive number of seconds")
        return self._clock() + ttl

    def _live(self, key: str) -> Optional[_Entry]:
        """Return the entry for ``key`` unless it has expired. Caller holds the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    @staticmethod
    def _require_set(key: str, entry: _Entry) -> Set[str]:
        if not isinstance(entry.value, set):
            raise TypeError(f"key {key!r} does not hold a set")
        return entry.value

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        expires_at = self._expiry(ttl)
        with self._lock:
            self._maybe_purge_locked()
            self._entries[key] = _Entry(value=value, expires_at=expires_at)
        return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            if not isinstance(entry.value, str):
                raise TypeError(f"key {key!r} does not hold a string")
            return entry.value

    async def delete(self, key: str) -> bool:
        with self._lock:
            if self._live(key) is None:
                return False
            del self._entries[key]
            return True

    async def delete_if_equals(self, key: str, value: str) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None or entry.value != value:
                return False
            del self._entries[key]
            return True

    async def add_member(
        self, key: str, member: str, ttl: Optional[int] = None, *, replace: bool = False
    ) -> bool:
        expires_at = self._expiry(ttl)
        with self._lock:
            self._maybe_purge_locked()
            entry = None if replace else self._live(key)
            if entry is None:
                self._entries[key] = _Entry(value={member}, expires_at=expires_at)
                return True
            members = self._require_set(key, entry)
            added = member not in members
            members.add(member)
            if ttl is not None:
                entry.expires_at = expires_at
            return added

    async def list_members(self, key: str) -> Set[str]:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return set()
            return set(self._require_set(key, entry))

    async def is_member(self, key: str, member: str) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            return member in self._require_set(key, entry)

    async def incr(self, key: str, ttl: int) -> int:
        """Fixed-window counter: the TTL starts with the first increment."""
        with self._lock:
            self._maybe_purge_locked()
            entry = self._live(key)
            if entry is None:
                self._entries[key] = _Entry(value="1", expires_at=self._expiry(ttl))
                return 1
            if not isinstance(entry.value, str):
                raise TypeError(f"key {key!r} does not hold a counter")
            count = int(entry.value) + 1
            entry.value = str(count)
            return count

    def snapshot(self, key: str) -> Optional[Tuple[Union[str, Set[str]], Optional[int]]]:
        """Return ``(value, remaining_ttl)`` for a live key, or None when absent."""
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return None
            value = set(entry.value) if isinstance(entry.value, set) else entry.value
            if entry.expires_at is None:
                return value, None
            return value, max(1, math.ceil(entry.expires_at - self._clock()))

    def discard(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def _purge_locked(self) -> int:
        now = self._clock()
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.expires_at is not None and entry.expires_at <= now
        ]
        for key in expired:
            del self._entries[key]
        self._next_purge = now + self.purge_interval
        return len(expired)

    def _maybe_purge_locked(self) -> None:
        if self._clock() < self._next_purge:
            return
        removed = self._purge_locked()
        if removed:
            logger.debug("memory_cache_purged", removed=removed)

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        with self._lock:
            removed = self._purge_locked()
        if removed:
            logger.debug("memory_cache_purged", removed=removed)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
