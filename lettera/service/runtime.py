from __future__ import annotations

import asyncio
import threading
from typing import Optional, Set, Tuple, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from lettera.config import get_settings, reset_settings_cache
from lettera.logging import get_logger
from lettera.service.auth import AuthService
from lettera.service.email import EmailService
from lettera.service.passwords import PasswordHasher
from lettera.service.presence import PresenceService
from lettera.service.tokens import TokenIssuer
from lettera.storage.fallback import FallbackCache
from lettera.storage.memory import MemoryStore
from lettera.storage.memory_cache import MemoryCache
from lettera.storage.postgres import PostgresStore
from lettera.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    persist=not self.settings.test_mode,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        remote: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            remote = RedisCache(
                self.settings.redis_url,
                socket_timeout=self.settings.redis_socket_timeout,
            )
            try:
                remote.verify_connection()
            except (RedisError, OSError) as exc:
                redis_error = exc

        self.cache = FallbackCache(
            remote,
            MemoryCache(),
            retry_cooldown=self.settings.cache_retry_cooldown_seconds,
        )
        if redis_error is not None:
            # Start degraded rather than refuse to serve; the breaker retries later
            logger.warning(
                "redis_unreachable_at_startup",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error),
            )
            self.cache.trip("startup", redis_error)

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            code_ttl_minutes=max(1, self.settings.email_code_ttl_seconds // 60),
        )
        if not self.email.is_configured:
            logger.warning("email_not_configured", smtp_host=self.settings.smtp_host)

        self.hasher = PasswordHasher()
        self.tokens = TokenIssuer.from_settings(self.settings)
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            email=self.email,
            hasher=self.hasher,
            tokens=self.tokens,
        )
        self.presence = PresenceService(
            self.cache,
            ttl_seconds=self.settings.presence_ttl_seconds,
            store=self.store,
        )
        logger.info(
            "runtime_init_completed",
            cache_backend=self.cache.backend,
        )

    async def close(self) -> None:
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()
# Strong references to shutdown tasks scheduled from inside a running loop
_closing: Set[asyncio.Task] = set()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked check is the fast path once the
    runtime exists; the locked check prevents two concurrent creations.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                task = loop.create_task(runtime.close())
                _closing.add(task)
                task.add_done_callback(_closing.discard)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int]]:
    """Fixed-window counter on the ephemeral store.

    The window starts at the first hit for ``key`` and the counter survives
    a Redis outage by falling through to the in-process store.
    """
    if limit <= 0:
        return (True, limit) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
        )
        window_seconds = 60
    count = await runtime.cache.incr(key, window_seconds)
    allowed = count <= limit
    if not allowed:
        logger.info("rate_limit_exceeded", key=key, limit=limit)
    if return_remaining:
        return allowed, max(0, limit - count)
    return allowed
