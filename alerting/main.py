"""
FastAPI application entry point.

Run with:
    uvicorn alerting.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# ── Core infrastructure ──
from alerting.container import Container, build_container
from alerting.core.errors import register_error_handlers
from alerting.core.logging_config import setup_logging
from alerting.core.middleware import RequestLoggingMiddleware

# ── API routers ──
from alerting.api.schemas import HealthResponse
from alerting.api.v1.alerts import router as alert_router
from alerting.api.v1.analytics import router as analytics_router
from alerting.api.v1.users import router as user_router

# ── Initialise logging ──
setup_logging()
logger = logging.getLogger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the scheduler and storage with the app, stop them with it."""
    container: Container = app.state.container
    settings = container.settings
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    await container.startup()
    yield
    await container.shutdown()
    logger.info("Shutting down %s", settings.APP_NAME)


def create_app(container: Optional[Container] = None) -> FastAPI:
    container = container or build_container()
    settings = container.settings

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Time-bounded alerts with visibility scopes, per-user read and "
            "snooze state, multi-channel delivery with retries and rate "
            "limiting, and a periodic reminder scheduler."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.container = container

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(alert_router)
    app.include_router(user_router)
    app.include_router(analytics_router)

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"], response_model=HealthResponse)
    async def health_check(request: Request):
        c: Container = request.app.state.container
        return HealthResponse(
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            store_backend=settings.STORE_BACKEND,
            scheduler=c.scheduler.status(),
            channels=sorted(t.value for t in c.dispatcher.channels),
        )

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Liveness check: the process is up."""
        return {"status": "alive"}

    return app


app = create_app()
