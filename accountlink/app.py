from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from accountlink.api.error_handling import register_exception_handlers
from accountlink.api.routes import router
from accountlink.config import Settings
from accountlink.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_sweep_task: asyncio.Task | None = None

HEALTH_CHECK_TIMEOUT_SECONDS = 3


async def _run_refresh_sweep(refresh_tokens, interval_seconds: int) -> None:
    """Background loop that purges expired refresh tokens."""

    try:
        while True:
            try:
                await asyncio.to_thread(refresh_tokens.sweep_expired)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("refresh_sweep_failed", error=str(exc))
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("refresh_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the refresh-token sweeper; close the runtime on shutdown."""
    global _sweep_task
    from accountlink.service.runtime import get_runtime

    runtime = get_runtime()
    _sweep_task = asyncio.create_task(
        _run_refresh_sweep(
            runtime.refresh_tokens, runtime.settings.refresh_sweep_interval_seconds
        )
    )

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [settings.frontend_url]


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(title="accountlink", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line of a request with one correlation id.

        Taken from ``X-Request-ID`` when the client sends one, generated
        otherwise, and echoed back in the response header.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Report store and Redis reachability."""
        from accountlink.service.runtime import get_runtime

        async def _run_bounded(label: str, func) -> bool:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS
                )
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout",
                    component=label,
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        runtime = get_runtime()
        checks: Dict[str, Dict[str, Any]] = {}
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {
            "status": "healthy" if db_ok else "unhealthy",
            "type": "memory" if runtime.settings.use_memory_store else "postgres",
        }
        healthy = db_ok
        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}
        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app
