"""
ASGI application factory.

Run with ``uvicorn eventlens.main:create_app --factory``.
"""

from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
import structlog

from eventlens.api import analytics, dashboard, events, export, privacy, replay
from eventlens.api.errors import install_error_handlers
from eventlens.core.config import Settings, get_settings
from eventlens.core.container import Services, build_services
from eventlens.core.database import init_schema
from eventlens.core.errors import AnalyticsError
from eventlens.core.logging import configure_logging
from eventlens.middleware.rate_limit import RateLimiter, rate_limit_middleware

logger = structlog.get_logger()


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    # Built eagerly so the app works with or without lifespan events
    services = services or build_services(settings)
    if settings.auto_create_schema:
        init_schema(services.engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle events"""
        logger.info("application_startup", app_name=settings.app_name)
        yield
        services.close()
        logger.info("application_shutdown")

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan
    )
    app.state.services = services
    install_error_handlers(app)

    if settings.rate_limit_enabled:
        limiter = RateLimiter(
            rate=settings.rate_limit_requests,
            period=settings.rate_limit_period,
            redis_client=services.redis,
        )
        app.middleware("http")(rate_limit_middleware(limiter))

    # Middleware for logging requests
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        duration = time.time() - start_time
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2)
        )

        return response

    # Include routers
    app.include_router(events.router)
    app.include_router(events.sessions_router)
    app.include_router(analytics.router)
    app.include_router(replay.router)
    app.include_router(dashboard.router)
    app.include_router(dashboard.rollups_router)
    app.include_router(export.router)
    app.include_router(privacy.router)

    @app.get("/health")
    def health_check():
        """Health check endpoint; 503 when the store is unreachable"""
        try:
            services.store.ping()
        except AnalyticsError as e:
            logger.error("health_check_failed", error=e.message)
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unhealthy", "app": settings.app_name, "database": "unreachable"},
            )
        return {"status": "healthy", "app": settings.app_name, "database": "ok"}

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": settings.app_name,
            "endpoints": {
                "health": "/health",
                "events": "/api/events",
                "analytics": "/api/analytics",
                "replay": "/api/replay",
                "dashboard": "/api/dashboard",
                "docs": "/docs"
            }
        }

    return app
