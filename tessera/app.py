from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from tessera.api.error_handling import register_exception_handlers
from tessera.api.routes import router
from tessera.config import get_settings
from tessera.logging import get_logger, sanitize_error_message, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None


async def _run_session_sweep(interval_seconds: int) -> None:
    """Periodically delete expired refresh sessions."""
    from tessera.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = await asyncio.to_thread(get_runtime().tokens.sweep_expired_sessions)
            if removed:
                logger.info("session_sweep_completed", removed=removed)
        except Exception as exc:
            logger.error("session_sweep_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _sweep_task
    from tessera.service.runtime import get_runtime

    runtime = get_runtime()
    interval = runtime.settings.session_sweep_interval_seconds
    if interval > 0:
        _sweep_task = asyncio.create_task(_run_session_sweep(interval))

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Tessera Identity", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    origins = get_settings().cors_allow_origins
    if origins:
        return origins
    return ["http://localhost:3000", "http://localhost:5173", "http://127.0.0.1:3000"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Domain-ID",
        "X-Domain-Slug",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Take the correlation ID from ``X-Request-ID`` or mint one, and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Token responses must never be cached by intermediaries
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report database and cache reachability."""
    from tessera.service.runtime import get_runtime

    async def _run_bounded(label: str, func) -> Dict[str, Any]:
        error: Optional[str] = None
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return {"status": "healthy"}
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
            error = "timeout"
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
            error = sanitize_error_message(str(exc))
        return {"status": "unhealthy", "error": error}

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    if hasattr(runtime.store, "_connect"):
        def _ping_database() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        checks["database"] = await _run_bounded("database", _ping_database)
    else:
        checks["database"] = {"status": "healthy", "type": "memory"}

    if hasattr(runtime.cache, "verify_connection"):
        checks["redis"] = await _run_bounded("redis", runtime.cache.verify_connection)
    else:
        checks["redis"] = {"status": "healthy", "type": "memory"}

    return {
        "status": "healthy"
        if all(check["status"] == "healthy" for check in checks.values())
        else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
