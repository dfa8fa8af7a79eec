"""
GenStudio API - FastAPI application entry point.
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import Settings, get_settings
from .database import SessionLocal, init_db
from .exceptions import GenStudioError
from .limiter import limiter
from .logging_config import api_logger, log_request
from .notifications import NotificationChannel
from .responses import ApiException, api_exception_handler
from .routes import events_router, generations_router, health_router
from .worker.coordinator import LifecycleCoordinator, build_coordinator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown"""
    settings: Settings = app.state.settings

    # Startup
    if getattr(app.state, "coordinator", None) is None:
        init_db()
        app.state.coordinator = build_coordinator(settings, SessionLocal, app.state.channel)

    coordinator: LifecycleCoordinator = app.state.coordinator
    if settings.api_key:
        coordinator.resume_all(settings.api_key)
    else:
        api_logger.info("startup_resume_skipped", reason="GENSTUDIO api_key not configured")

    yield  # App is running

    # Shutdown
    await coordinator.shutdown()


def create_app(
    settings: Optional[Settings] = None,
    coordinator: Optional[LifecycleCoordinator] = None,
    channel: Optional[NotificationChannel] = None,
) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="GenStudio API",
        description="Image and video generation job lifecycle",
        version="1.0.0",
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.channel = channel or (coordinator.store.channel if coordinator else None) or NotificationChannel()
    app.state.coordinator = coordinator

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Error envelope
    app.add_exception_handler(ApiException, api_exception_handler)
    app.add_exception_handler(GenStudioError, api_exception_handler)

    # Request logging middleware (only in debug mode)
    if settings.debug:
        app.add_middleware(log_request(api_logger))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "Accept",
            "Origin",
            "X-API-Key",
        ],
        max_age=3600,
    )

    app.include_router(generations_router)
    app.include_router(events_router)
    app.include_router(health_router)

    return app


app = create_app()
