from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from lettera.logging import get_logger
from lettera.storage.errors import ConstraintViolation
from lettera.storage.models import User, UserProfile

_UPDATABLE_FIELDS = {"first_name", "last_name", "position", "company", "category", "skills"}


class MemoryStore:
    """In-memory identity store, snapshotted to JSON under ``fs_root``.

    Used for local development and tests. Records are copied on the way out
    so callers cannot mutate stored state without going through the store.
    """

    def __init__(self, fs_root: str = "/tmp/lettera", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so helpers can re-enter while holding the data lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.persist = persist
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _copy(user: User) -> User:
        return replace(user, profile=replace(user.profile, skills=list(user.profile.skills)))

    def verify_connection(self) -> None:
        return None

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str,
        last_name: str,
        email_verified: bool = False,
    ) -> User:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = self._now()
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                email_verified=email_verified,
                last_seen=now,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return self._copy(user) if user else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if not user.email_verified:
                user.email_verified = True
                user.updated_at = self._now()
                self._persist_state()
            return self._copy(user)

    def update_profile(self, user_id: str, changes: Dict[str, Any]) -> Optional[User]:
        """Apply ``first_name``/``last_name`` and profile field changes."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            unknown = set(changes) - _UPDATABLE_FIELDS
            if unknown:
                raise ValueError(f"unknown profile field: {sorted(unknown)[0]}")
            for name, value in changes.items():
                if name in {"first_name", "last_name"}:
                    setattr(user, name, value)
                elif name == "skills":
                    user.profile.skills = list(value or [])
                else:
                    setattr(user.profile, name, value)
            user.updated_at = self._now()
            self._persist_state()
            return self._copy(user)

    def touch_last_seen(self, user_id: str, status: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.status = status
            user.last_seen = self._now()
            self._persist_state()

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email_verified": user.email_verified,
            "profile": {
                "position": user.profile.position,
                "company": user.profile.company,
                "category": user.profile.category,
                "skills": list(user.profile.skills),
            },
            "status": user.status,
            "last_seen": self._serialize_datetime(user.last_seen),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        profile = data.get("profile") or {}
        skills: Iterable[str] = profile.get("skills") or []
        return User(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            email_verified=bool(data.get("email_verified", False)),
            profile=UserProfile(
                position=profile.get("position"),
                company=profile.get("company"),
                category=profile.get("category"),
                skills=list(skills),
            ),
            status=data.get("status", "offline"),
            last_seen=self._deserialize_datetime(data.get("last_seen")),
            created_at=self._deserialize_datetime(data.get("created_at")) or self._now(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or self._now(),
        )
