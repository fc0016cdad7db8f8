"""
flageval - service entry point
Feature flag evaluation engine with diagnostics API.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from flageval import __version__
from flageval.api import api_router
from flageval.core.config import EngineSettings, create_default_settings, detect_environment
from flageval.core.feature_flags.middleware import FeatureFlagContextMiddleware
from flageval.core.feature_flags.service import FeatureFlagsService
from flageval.core.logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[EngineSettings] = None,
    service: Optional[FeatureFlagsService] = None,
) -> FastAPI:
    """Build the application; the flag service starts and stops with its lifespan."""
    settings = settings or (service.settings if service else create_default_settings(detect_environment()))
    configure_logging(settings)
    flag_service = service or FeatureFlagsService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting flageval ({settings.environment})...")
        await flag_service.initialize()
        app.state.flag_service = flag_service
        try:
            yield
        finally:
            logger.info("Shutting down flageval...")
            await flag_service.shutdown()

    app = FastAPI(
        title="flageval",
        description="Feature flag evaluation engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(FeatureFlagContextMiddleware, environment=settings.environment)
    app.include_router(api_router, prefix="/api")

    @app.get("/")
    async def root():
        return {
            "name": "flageval",
            "version": __version__,
            "environment": settings.environment,
            "health": "/api/v1/flags/health",
        }

    return app


if __name__ == "__main__":
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)  # nosec B104
