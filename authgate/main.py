"""FastAPI application factory."""

from fastapi import FastAPI

from authgate.config import configure_structlog, get_settings
from authgate.error_handlers import register_exception_handlers
from authgate.middleware import LoggingMiddleware
from authgate.routers import credentials, health, oauth


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    configure_structlog(settings)

    app = FastAPI(title=settings.app.service)
    app.add_middleware(LoggingMiddleware)
    register_exception_handlers(app, environment=settings.app.environment)

    app.include_router(oauth.router)
    app.include_router(credentials.router)
    app.include_router(health.router)
    return app


app = create_app()
