from __future__ import annotations

import asyncio
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lettera.api.error_handling import register_exception_handlers
from lettera.api.routes import presence_router, router
from lettera.api.schemas import HealthResponse
from lettera.config import Settings
from lettera.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3.0
_started_at = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the ephemeral store on startup and release connections on shutdown."""
    from lettera.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.cache.open()
    logger.info(
        "app_started",
        environment=runtime.settings.environment.value,
        cache_backend=runtime.cache.backend,
    )

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Lettera", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Common local dev hosts for the web client
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/auth/"):
        # Token-bearing responses must never be cached
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation id.

    The id comes from the client's ``X-Request-ID`` header when present and is
    generated otherwise. It is bound for structured logging, reported as
    ``requestId`` in error envelopes and echoed in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)
app.include_router(presence_router)


async def _run_bounded(label: str, func) -> bool:
    try:
        await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
        return True
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except Exception as exc:
        logger.error("health_check_failed", component=label, error=str(exc))
    return False


@app.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse}},
)
async def health() -> JSONResponse:
    """Report durable-store reachability and which ephemeral backend is serving.

    A degraded cache keeps the service usable, so only the database decides
    the status code.
    """
    from lettera.service.runtime import get_runtime

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)

    if runtime.cache.remote is None:
        cache_status = "memory_only"
    elif await runtime.cache.ping():
        cache_status = "healthy"
    else:
        cache_status = "degraded"

    checks: Dict[str, str] = {
        "database": "healthy" if db_ok else "unhealthy",
        "cache": cache_status,
    }
    payload = HealthResponse(
        status="healthy" if db_ok else "unhealthy",
        checks=checks,
        version=__version__,
        environment=runtime.settings.environment.value,
        uptime_seconds=int(time.monotonic() - _started_at),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    return JSONResponse(
        status_code=200 if db_ok else 503, content=payload.model_dump(by_alias=True)
    )


@app.get("/health/db")
async def health_db() -> JSONResponse:
    from lettera.service.runtime import get_runtime

    runtime = get_runtime()
    connected = await _run_bounded("database", runtime.store.verify_connection)
    return JSONResponse(
        status_code=200 if connected else 503,
        content={
            "database": {
                "connected": connected,
                "type": "memory" if runtime.settings.use_memory_store else "postgres",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        },
    )


def create_app() -> FastAPI:
    return app


def main() -> None:
    import uvicorn

    uvicorn.run(
        "lettera.app:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_config=None,
    )
