"""Contract and key layout for the short-lived secret store.

Three implementations share this contract: ``RedisCache`` (remote),
``MemoryCache`` (in-process) and ``FallbackCache`` which routes each call to
the remote store and falls back to the in-process one while the remote is
failing. Callers never see cache errors from ``FallbackCache``.
"""

from __future__ import annotations

from typing import Optional, Protocol, Set


class EphemeralStore(Protocol):
    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> bool: ...

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def delete(self, key: str) -> bool: ...

    async def delete_if_equals(self, key: str, value: str) -> bool: ...

    async def add_member(
        self, key: str, member: str, ttl: Optional[int] = None, *, replace: bool = False
    ) -> bool: ...

    async def list_members(self, key: str) -> Set[str]: ...

    async def is_member(self, key: str, member: str) -> bool: ...

    async def incr(self, key: str, ttl: int) -> int: ...


def email_code_key(email: str) -> str:
    return f"email:code:{email.strip().lower()}"


def refresh_token_key(user_id: str) -> str:
    return f"user:refresh_token:{user_id}"


def user_status_key(user_id: str) -> str:
    return f"user:status:{user_id}"


def rate_limit_key(scope: str, subject: str) -> str:
    return f"rate:{scope}:{subject.strip().lower()}"


__all__ = [
    "EphemeralStore",
    "email_code_key",
    "refresh_token_key",
    "user_status_key",
    "rate_limit_key",
]
