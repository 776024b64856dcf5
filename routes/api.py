"""
Central API route registration. All HTTP controllers are mounted here with /api prefix.
"""
import logging
from fastapi import FastAPI

from app.http.controllers import (
    integrations,
    sync,
    webhooks,
)

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    prefix = getattr(settings, "API_PREFIX", "/api")
    app.include_router(webhooks.router, prefix=f"{prefix}/webhooks", tags=["webhooks"])
    app.include_router(sync.router, prefix=f"{prefix}/marketplace", tags=["marketplace"])
    app.include_router(integrations.router, prefix=f"{prefix}/integrations", tags=["integrations"])
    logger.info("Registered marketplace routes under %s", prefix)
