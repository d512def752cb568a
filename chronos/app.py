from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chronos.api.error_handling import register_exception_handlers
from chronos.api.routes import router
from chronos.config import Settings
from chronos.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_cleanup_task: asyncio.Task | None = None


async def _run_periodic_purge(interval_seconds: int) -> None:
    """Drop expired sessions, consumed OAuth codes and reset codes on a timer."""
    from chronos.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await asyncio.to_thread(get_runtime().purge_expired)
        except Exception as exc:
            logger.error("expired_state_purge_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _cleanup_task
    from chronos.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_periodic_purge(runtime.settings.cleanup_interval_seconds)
    )

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Chronos Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # the configured SPA origin; no wildcard since cookies are sent
    return [_settings.frontend_url.rstrip("/")]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate ``X-Request-ID`` (or a fresh UUID) into logs and the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and _settings.is_production:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router, prefix="/api")


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Report store and Redis reachability."""
    from chronos.service.runtime import get_runtime

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

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    if hasattr(runtime.store, "_connect"):

        def _db_probe() -> None:
            with runtime.store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
