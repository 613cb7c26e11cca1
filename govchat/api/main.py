"""
GovChat Resilience Service - FastAPI Application
================================================
Main entry point for the chat resilience API.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from govchat import __version__
from govchat.api.routes import chat, health
from govchat.config import Settings, get_settings
from govchat.observability import configure_logging
from govchat.resilience.errors import ResilienceError
from govchat.service import ResilienceService


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[ResilienceService] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Process configuration (cached settings by default)
        service: Pre-built service, mainly for tests

    Returns:
        Configured FastAPI app
    """
    settings = settings or (service.settings if service else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        configure_logging(settings)
        logger.info("GovChat resilience service starting...")
        logger.info("   Agent transport: {}", settings.agent_ws_url)
        logger.info("   Persistence: {}", "redis" if settings.redis_url else "in-memory")

        app.state.service = service or ResilienceService(settings)
        await app.state.service.start()

        yield

        logger.info("GovChat resilience service shutting down...")
        await app.state.service.stop()

    app = FastAPI(
        title="GovChat Resilience Service",
        description="Resilient real-time connection layer for the government chat front end",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ResilienceError)
    async def resilience_error_handler(request: Request, exc: ResilienceError):
        logger.bind(event="request_failed", error=exc.code).warning(
            "{} {} failed: {}", request.method, request.url.path, exc.message
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": settings.service_name,
            "version": __version__,
            "status": "running",
        }

    app.include_router(health.router, tags=["health"])
    app.include_router(chat.router, prefix="/api/v1", tags=["chat"])

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.api_host,
        port=settings.api_port,
    )
