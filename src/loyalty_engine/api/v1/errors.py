"""Translation of engine errors into HTTP responses."""

from __future__ import annotations

import logging

from fastapi import HTTPException

from ...services.errors import ConfigurationError, LoyaltyError

logger = logging.getLogger(__name__)


def as_http_exception(exc: LoyaltyError) -> HTTPException:
    """Map an engine error to an HTTP error; configuration faults are logged and reported distinctly."""

    if isinstance(exc, ConfigurationError):
        logger.error("loyalty configuration error: %s", exc.detail)
        return HTTPException(
            status_code=exc.status_code,
            detail={"error": "configuration_error", "message": exc.detail},
        )
    return HTTPException(status_code=exc.status_code, detail=exc.detail)
