from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from securesnap.api.error_handling import register_exception_handlers
from securesnap.api.routes import get_runtime, router
from securesnap.api.schemas import Envelope, HealthResponse
from securesnap.config import Settings, get_settings
from securesnap.logging import get_logger, set_correlation_id
from securesnap.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
MAX_REQUEST_ID_LENGTH = 128


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    # The browser client is the only origin allowed by default.
    return [settings.client_url]


async def _run_sweeps(runtime: Runtime, interval_seconds: int) -> None:
    """Background loop that deletes expired challenges and refresh tokens."""

    interval = max(interval_seconds, 30)
    try:
        while True:
            try:
                await asyncio.to_thread(runtime.auth.sweep_expired)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("expired_sweep_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("expired_sweep_task_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime if none was injected and run the periodic sweep."""
    if getattr(app.state, "runtime", None) is None:
        app.state.runtime = Runtime(app.state.settings)
    runtime: Runtime = app.state.runtime
    sweep_task = asyncio.create_task(
        _run_sweeps(runtime, runtime.settings.sweep_interval_seconds)
    )

    yield

    sweep_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweep_task
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app(
    settings: Optional[Settings] = None, runtime: Optional[Runtime] = None
) -> FastAPI:
    """Application factory.

    A prebuilt ``runtime`` is attached immediately, which lets tests drive the
    app without entering the lifespan. Otherwise the runtime is built on
    startup from ``settings`` (or the environment).
    """
    if runtime is not None:
        settings = runtime.settings
    settings = settings or get_settings()

    app = FastAPI(title="SecureSnap Auth", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-2FA-Token",
            "X-Device-Token",
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("API-Version", __version__)
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag the request with ``X-Request-ID`` (client supplied or generated)."""
        client_request_id = request.headers.get("X-Request-ID")
        if client_request_id and len(client_request_id) > MAX_REQUEST_ID_LENGTH:
            client_request_id = None
        correlation_id = set_correlation_id(client_request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz", response_model=Envelope, tags=["meta"])
    async def health(request: Request):
        runtime = get_runtime(request)
        checks = {}

        async def _probe(label: str, func) -> bool:
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

        connect = getattr(runtime.store, "_connect", None)
        if callable(connect):
            def _db_probe() -> None:
                with connect() as conn:
                    conn.execute("SELECT 1").fetchone()

            db_ok = await _probe("database", _db_probe)
            checks["database"] = "healthy" if db_ok else "unhealthy"
        else:
            db_ok = True
            checks["database"] = "memory"

        if runtime.cache is not None:
            redis_ok = await _probe("redis", runtime.cache.verify_connection)
            # QR polling works without Redis, so a miss only degrades.
            checks["redis"] = "healthy" if redis_ok else "degraded"
        else:
            checks["redis"] = "not_configured"

        payload = HealthResponse(status="ok" if db_ok else "unhealthy", checks=checks)
        return Envelope(status="ok", data=payload.model_dump(mode="json", by_alias=True))

    return app
