from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

PROFILE_CATEGORIES = ("IT", "Marketing", "Design", "Finance", "Other")
PRESENCE_STATUSES = ("online", "away", "offline")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserProfile:
    position: Optional[str] = None
    company: Optional[str] = None
    category: Optional[str] = None
    skills: List[str] = field(default_factory=list)


@dataclass
class User:
    """Durable identity record.

    ``email`` is stored lower-cased. ``email_verified`` moves from False to
    True exactly once. ``status`` and ``last_seen`` are informational only;
    live presence lives in the ephemeral store.
    """

    id: str
    email: str
    password_hash: str
    first_name: str
    last_name: str
    email_verified: bool = False
    profile: UserProfile = field(default_factory=UserProfile)
    status: str = "offline"
    last_seen: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
