"""FastAPI application entrypoint for the loyalty engine."""

import logging

from fastapi import FastAPI

from .api.v1.router import api_router
from .core.config import get_settings
from .jobs import register_scheduler


def create_app() -> FastAPI:
    """Instantiate and configure the FastAPI application."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Loyalty Engine API", version="0.1.0")
    app.include_router(api_router, prefix="/api/v1")
    register_scheduler(app)
    return app


app = create_app()
