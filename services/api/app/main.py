"""Chaser FastAPI application factory."""

import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text

from app.config import Settings, get_settings
from app.dependencies import get_session_factory, init_db, shutdown_db
from app.middleware.error_handler import ErrorHandlerMiddleware
from app.middleware.logging import LoggingMiddleware, setup_logging
from app.routers import automation, follow_ups

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    settings = get_settings()
    setup_logging(debug=settings.debug)
    logger.info("Starting Chaser API (env=%s)", settings.app_env)

    init_db(settings)

    yield

    await shutdown_db()
    logger.info("Chaser API shutting down")


async def _check_database(settings: Settings) -> str:
    try:
        factory = get_session_factory(settings)
        async with factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Readiness: database check failed: %s", e)
        return f"error: {type(e).__name__}"
    return "ok"


async def _check_redis(settings: Settings) -> str:
    # The Celery broker lives on the same Redis deployment
    try:
        r = aioredis.from_url(settings.redis_url, decode_responses=True)
        try:
            await r.ping()
        finally:
            await r.aclose()
    except Exception as e:
        logger.warning("Readiness: redis check failed: %s", e)
        return f"error: {type(e).__name__}"
    return "ok"


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Chaser - Email Follow-up Automation",
        description="Tracks sent emails awaiting replies and automates follow-ups with approval workflows",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Middleware (order matters: outermost first)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(LoggingMiddleware)
    origins = settings.cors_origins
    allow_all = origins == ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins if not allow_all else [],
        allow_origin_regex=r".*" if allow_all else None,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
        max_age=600,
    )

    prefix = settings.api_prefix
    app.include_router(follow_ups.router, prefix=prefix)
    app.include_router(automation.router, prefix=prefix)

    @app.get("/")
    async def root():
        return {"status": "running", "service": "chaser-api", "version": "1.0.0"}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "chaser-api"}

    @app.get("/health/ready")
    async def health_ready():
        """Deep health check: database, Redis broker and outbound integrations."""
        checks = {
            "database": await _check_database(settings),
            "redis": await _check_redis(settings),
        }
        all_ok = all(v == "ok" for v in checks.values())

        # Informational only; a missing relay or webhook degrades features, not readiness
        integrations = {
            "mail_relay": "configured" if settings.mail_api_key.get_secret_value() else "missing_key",
            "reminder_webhook": "configured" if settings.notification_webhook_url else "dashboard_only",
            "ai_provider": settings.ai_provider,
        }
        return JSONResponse(
            status_code=200 if all_ok else 503,
            content={
                "status": "ready" if all_ok else "degraded",
                "checks": checks,
                "integrations": integrations,
            },
        )

    # Prometheus instrumentation
    instrumentator = Instrumentator(
        excluded_handlers=["/health", "/health/ready", "/docs", "/redoc", "/openapi.json", "/metrics"],
    )
    instrumentator.instrument(app)

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint with multiprocess support."""
        from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest, multiprocess

        multiproc_dir = os.environ.get("PROMETHEUS_MULTIPROC_DIR")
        if multiproc_dir:
            registry = CollectorRegistry()
            multiprocess.MultiProcessCollector(registry)
            data = generate_latest(registry)
        else:
            data = generate_latest()

        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    return app


# Default app instance for uvicorn
app = create_app()
