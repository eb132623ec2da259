from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional, Set

from redis.exceptions import RedisError

from lettera.logging import get_logger
from lettera.storage.ephemeral import EphemeralStore
from lettera.storage.memory_cache import MemoryCache

logger = get_logger(__name__)

_REMOTE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


class FallbackCache:
    """Route ephemeral-store calls to a remote store, degrading to memory on failure.

    Every operation is attempted on the remote store unless the breaker is
    open. A connection-level failure opens the breaker for
    ``retry_cooldown`` seconds and the same operation is replayed against the
    in-process fallback, so callers never observe a cache error. Once the
    cooldown elapses the next call probes the remote again.

    Keys written on the fallback while the remote was unavailable are
    remembered. Before the remote serves anything after recovery, each such
    key is copied from the fallback to the remote, or deleted there when the
    fallback no longer holds it, so revocations and replaced codes survive
    the outage.

    ``ping`` only probes the remote and never changes breaker state. With
    ``remote=None`` the cache runs on the fallback permanently.
    """

    def __init__(
        self,
        remote: Optional[EphemeralStore],
        fallback: Optional[MemoryCache] = None,
        *,
        retry_cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.remote = remote
        self.fallback = fallback or MemoryCache()
        self.retry_cooldown = retry_cooldown
        self._clock = clock
        self._open_until = 0.0
        self._tripped = False
        # key -> True when the remote copy must be replaced rather than merged
        self._pending: Dict[str, bool] = {}

    @property
    def degraded(self) -> bool:
        """True when calls are currently served by the in-process fallback."""
        return self.remote is None or self._clock() < self._open_until

    @property
    def backend(self) -> str:
        return "memory" if self.degraded else "redis"

    def trip(self, reason: str, error: Optional[BaseException] = None) -> None:
        """Open the breaker so calls bypass the remote until the cooldown ends."""
        self._open_until = self._clock() + self.retry_cooldown
        if not self._tripped:
            logger.warning(
                "ephemeral_store_degraded",
                reason=reason,
                error_type=type(error).__name__ if error else None,
                error=str(error) if error else None,
                retry_after_seconds=self.retry_cooldown,
            )
        self._tripped = True

    def _active_remote(self) -> Optional[EphemeralStore]:
        if self.remote is None or self._clock() < self._open_until:
            return None
        return self.remote

    async def _resync(self, remote: EphemeralStore) -> None:
        """Copy keys written during the outage from the fallback to the remote."""
        synced = 0
        for key in list(self._pending):
            replace = self._pending.get(key)
            if replace is None:
                continue
            current = self.fallback.snapshot(key)
            if current is None:
                await remote.delete(key)
            else:
                value, ttl = current
                if isinstance(value, set):
                    first, *rest = sorted(value)
                    await remote.add_member(key, first, ttl, replace=replace)
                    for member in rest:
                        await remote.add_member(key, member, ttl)
                else:
                    await remote.set(key, value, ttl)
            self._pending.pop(key, None)
            self.fallback.discard(key)
            synced += 1
        if synced:
            logger.info("ephemeral_store_resynced", keys=synced)

    def _remember(self, key: str, replace: bool) -> None:
        if self.remote is not None:
            self._pending[key] = self._pending.get(key, False) or replace

    async def _call(
        self,
        op: str,
        *args: Any,
        write: Optional[bool] = None,
        changed_only: bool = False,
        **kwargs: Any,
    ) -> Any:
        remote = self._active_remote()
        if remote is not None:
            try:
                if self._pending:
                    await self._resync(remote)
                result = await getattr(remote, op)(*args, **kwargs)
            except _REMOTE_ERRORS as exc:
                self.trip(op, exc)
            else:
                if self._tripped:
                    self._tripped = False
                    logger.info("ephemeral_store_recovered", operation=op)
                return result
        result = await getattr(self.fallback, op)(*args, **kwargs)
        if write is not None and (result or not changed_only):
            self._remember(args[0], write)
        return result

    async def open(self) -> None:
        if self.remote is None:
            logger.warning("ephemeral_store_memory_only")
            return
        try:
            await self.remote.open()
        except _REMOTE_ERRORS as exc:
            self.trip("open", exc)

    async def close(self) -> None:
        if self.remote is not None:
            try:
                await self.remote.close()
            except _REMOTE_ERRORS as exc:
                logger.warning("ephemeral_store_close_failed", error=str(exc))
        await self.fallback.close()

    async def ping(self) -> bool:
        if self.remote is None:
            return False
        return await self.remote.ping()

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        return await self._call("set", key, value, ttl, write=True)

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", key)

    async def delete(self, key: str) -> bool:
        return await self._call("delete", key, write=True)

    async def delete_if_equals(self, key: str, value: str) -> bool:
        return await self._call(
            "delete_if_equals", key, value, write=True, changed_only=True
        )

    async def add_member(
        self, key: str, member: str, ttl: Optional[int] = None, *, replace: bool = False
    ) -> bool:
        return await self._call(
            "add_member", key, member, ttl, write=replace, replace=replace
        )

    async def list_members(self, key: str) -> Set[str]:
        return await self._call("list_members", key)

    async def is_member(self, key: str, member: str) -> bool:
        return await self._call("is_member", key, member)

    async def incr(self, key: str, ttl: int) -> int:
        return await self._call("incr", key, ttl, write=True)
