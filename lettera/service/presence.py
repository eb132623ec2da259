from __future__ import annotations

from typing import Dict, Iterable, Optional

from lettera.logging import get_logger
from lettera.service.errors import ValidationError
from lettera.storage.ephemeral import EphemeralStore, user_status_key
from lettera.storage.errors import StoreUnavailable

logger = get_logger(__name__)

_SETTABLE_STATUSES = {"online", "away"}


class PresenceService:
    """Online/away status with a short TTL; an absent record means offline.

    Logout does not clear the record. A user who logs out keeps showing as
    online until the TTL lapses.
    """

    def __init__(self, cache: EphemeralStore, *, ttl_seconds: int = 300, store=None) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.store = store

    async def ping(self, user_id: str, status: str = "online") -> str:
        if status not in _SETTABLE_STATUSES:
            raise ValidationError(
                "Invalid presence status", detail={"allowed": sorted(_SETTABLE_STATUSES)}
            )
        await self.cache.set(user_status_key(user_id), status, self.ttl_seconds)
        if self.store is not None:
            # last_seen is informational; a durable-store outage must not fail the ping
            try:
                self.store.touch_last_seen(user_id, status)
            except StoreUnavailable as exc:
                logger.warning("presence_last_seen_failed", user_id=user_id, error=exc.message)
        return status

    async def get_status(self, user_id: str) -> str:
        status: Optional[str] = await self.cache.get(user_status_key(user_id))
        return status if status in _SETTABLE_STATUSES else "offline"

    async def get_statuses(self, user_ids: Iterable[str]) -> Dict[str, str]:
        return {user_id: await self.get_status(user_id) for user_id in user_ids}
