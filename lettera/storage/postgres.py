from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from lettera.logging import get_logger
from lettera.storage.errors import ConstraintViolation, StoreUnavailable
from lettera.storage.models import User, UserProfile

_PROFILE_FIELDS = ("position", "company", "category", "skills")


class PostgresStore:
    """Postgres-backed identity store."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10, timeout: float = 5.0) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable(
                "database unavailable", {"error_type": type(exc).__name__}
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the ``app_user`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_user (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    password_hash TEXT NOT NULL,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    email_verified BOOLEAN NOT NULL DEFAULT FALSE,
                    profile JSONB NOT NULL DEFAULT '{}'::jsonb,
                    status TEXT NOT NULL DEFAULT 'offline',
                    last_seen TIMESTAMPTZ,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        profile = row.get("profile") or {}
        if isinstance(profile, str):
            profile = json.loads(profile)
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row.get("first_name", ""),
            last_name=row.get("last_name", ""),
            email_verified=bool(row.get("email_verified", False)),
            profile=UserProfile(
                position=profile.get("position"),
                company=profile.get("company"),
                category=profile.get("category"),
                skills=list(profile.get("skills") or []),
            ),
            status=row.get("status") or "offline",
            last_seen=row.get("last_seen"),
            created_at=row.get("created_at") or datetime.now(timezone.utc),
            updated_at=row.get("updated_at") or datetime.now(timezone.utc),
        )

    def create_user(
        self,
        email: str,
        password_hash: str,
        *,
        first_name: str,
        last_name: str,
        email_verified: bool = False,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, first_name, last_name, email_verified, last_seen)
                    VALUES (%s, %s, %s, %s, %s, %s, now())
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        password_hash,
                        first_name,
                        last_name,
                        email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified = TRUE,
                    updated_at = CASE WHEN email_verified THEN updated_at ELSE now() END
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_profile(self, user_id: str, changes: Dict[str, Any]) -> Optional[User]:
        """Apply ``first_name``/``last_name`` and profile field changes."""
        unknown = set(changes) - {"first_name", "last_name", *_PROFILE_FIELDS}
        if unknown:
            raise ValueError(f"unknown profile field: {sorted(unknown)[0]}")
        profile_patch = {k: v for k, v in changes.items() if k in _PROFILE_FIELDS}
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET first_name = COALESCE(%s, first_name),
                    last_name = COALESCE(%s, last_name),
                    profile = profile || %s::jsonb,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (
                    changes.get("first_name"),
                    changes.get("last_name"),
                    json.dumps(profile_patch),
                    user_id,
                ),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def touch_last_seen(self, user_id: str, status: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET status = %s, last_seen = now() WHERE id = %s",
                (status, user_id),
            )
