"""Exception handlers."""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from cellforge.core.config import settings
from cellforge.core.exceptions import CellForgeException

logger = logging.getLogger(__name__)

_IS_PRODUCTION = settings.ENVIRONMENT == "production"


def exception_handler(request: Request, exc: CellForgeException) -> JSONResponse:
    """Handle custom CellForge exceptions."""
    logger.error(
        "CellForgeException: %s - %s (status=%d) for %s %s",
        exc.error_code,
        exc.detail,
        exc.status_code,
        request.method,
        request.url.path,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(
        "Unhandled exception for %s %s: %s", request.method, request.url.path, str(exc)
    )
    detail = "An unexpected error occurred" if _IS_PRODUCTION else str(exc)
    return JSONResponse(
        status_code=500,
        content={"error": "INTERNAL_SERVER_ERROR", "detail": detail, "status_code": 500},
    )
