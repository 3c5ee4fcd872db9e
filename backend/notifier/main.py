"""
FastAPI application entry point.

Run with:
    uvicorn backend.notifier.main:app --reload --port 8000

Or, with HOST / PORT / WORKERS / RELOAD from the environment:
    choreminder-notifier
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.notifier.core.cache import close_redis
from backend.notifier.core.config import Settings, get_settings
from backend.notifier.core.logging_config import setup_logging, get_logger
from backend.notifier.core.errors import register_error_handlers
from backend.notifier.core.middleware import RequestLoggingMiddleware
from backend.notifier.core.health import HealthStatus, run_health_check
from backend.notifier.scheduling.engine import NotificationEngine

# ── API routers ──
from backend.notifier.api.dependencies import get_engine
from backend.notifier.api.v1.messages import router as message_router
from backend.notifier.api.v1.rules import router as rule_router
from backend.notifier.api.v1.recipients import router as recipient_router
from backend.notifier.api.v1.stats import router as stats_router
from backend.notifier.api.v1.webhooks import router as webhook_router

logger = get_logger(__name__)


def create_app(
    config: Optional[Settings] = None,
    engine: Optional[NotificationEngine] = None,
) -> FastAPI:
    """
    Build the API application.

    Parameters
    ----------
    config : Settings | None
        Defaults to the environment-derived settings.
    engine : NotificationEngine | None
        Pre-built engine (tests). When omitted, one is built from
        ``config`` at startup and closed at shutdown.
    """
    config = config or get_settings()
    setup_logging(config)

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            config.APP_NAME, config.APP_VERSION, config.ENVIRONMENT,
        )
        owned = getattr(app.state, "engine", None) is None
        if owned:
            app.state.engine = NotificationEngine.from_settings(config)
        await app.state.engine.start(run_dispatcher=config.DISPATCHER_AUTOSTART)
        yield
        logger.info("Shutting down %s", config.APP_NAME)
        if owned:
            await app.state.engine.shutdown()
            app.state.engine = None
        await close_redis()

    app = FastAPI(
        title=config.APP_NAME,
        description=(
            "Multi-channel notification scheduling for ChoreMinder. "
            "Schedules one-off and recurring notifications, routes each one "
            "over WhatsApp, SMS or email according to recipient preferences, "
            "enforces per-recipient rate limits and quiet hours, retries "
            "transient failures with backoff, falls back across channels, "
            "and tracks delivery, open and click events."
        ),
        version=config.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.engine = engine

    # ── Middleware stack (outermost first) ──

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS if not config.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app, config)

    # ── Register routers ──
    app.include_router(message_router)
    app.include_router(rule_router)
    app.include_router(recipient_router)
    app.include_router(stats_router)
    app.include_router(webhook_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": config.APP_NAME,
            "version": config.APP_VERSION,
            "environment": config.ENVIRONMENT,
            "modules": [
                "scheduling",
                "recurring-rules",
                "channel-routing",
                "rate-limiting",
                "retry-fallback",
                "delivery-tracking",
            ],
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check(request: Request):
        """Deep health check of all subsystems."""
        report = await run_health_check(get_engine(request))
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Liveness: is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness(request: Request):
        """Readiness: can we serve traffic?"""
        report = await run_health_check(get_engine(request))
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()


def run() -> None:
    """Serve the API with uvicorn using HOST / PORT / WORKERS / RELOAD."""
    import uvicorn

    config = get_settings()
    uvicorn.run(
        "backend.notifier.main:app",
        host=config.HOST,
        port=config.PORT,
        # uvicorn ignores workers when reloading
        workers=1 if config.RELOAD else config.WORKERS,
        reload=config.RELOAD,
        log_config=None,
    )


if __name__ == "__main__":
    run()
