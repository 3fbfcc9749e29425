"""
FastAPI application entry point.

Run with:
    python -m backend.app.main          (HOST / PORT / WORKERS / RELOAD from settings)

Or directly:
    uvicorn backend.app.main:app --reload --port 5000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import Settings, settings
from backend.app.core.container import ServiceContainer, build_container
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── API routers ──
from backend.app.api.v1.alerts import router as alert_router
from backend.app.api.v1.users import router as user_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the application.

    When `container` is given (tests), it is used as-is and attached
    immediately; otherwise one is built from settings at startup.
    """

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        if getattr(app.state, "container", None) is None:
            app.state.container = build_container(settings)
        active: ServiceContainer = app.state.container
        if active.engine is not None:
            from backend.app.core.database import init_db
            await init_db(active.engine)
        yield
        logger.info("Shutting down %s", settings.APP_NAME)
        await active.aclose()

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Personal safety alerting backend. "
            "Accepts SOS alerts from the mobile app and fans them out to "
            "operator email, operator SMS with a compact fallback on "
            "delivery failure, SMS to emergency contacts, and push "
            "notifications to devices within the alert radius."
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

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "modules": [
                "alert-ingestion",
                "email-dispatch",
                "operator-sms",
                "sms-fallback",
                "contact-sms",
                "proximity-push",
                "delivery-receipts",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Deep health probe — store, providers, dispatch backlog."""
        report = await run_health_check(request.app.state.container)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request):
        """Readiness probe — can we serve traffic?"""
        report = await run_health_check(request.app.state.container)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()


def run(config: Optional[Settings] = None) -> None:
    """Serve `app` with uvicorn; auto-reload only in development."""
    cfg = config or settings
    reload = cfg.RELOAD and cfg.is_development
    uvicorn.run(
        "backend.app.main:app",
        host=cfg.HOST,
        port=cfg.PORT,
        reload=reload,
        workers=None if reload else cfg.WORKERS,
        log_config=None,
    )


if __name__ == "__main__":
    run()
