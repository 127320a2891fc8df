"""
Custom Exceptions and Handlers
Application-specific error handling
Source: https://fastapi.tiangolo.com/tutorial/handling-errors/
Verified: 2026-10-16
"""

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from src.gateways.base import GatewayError
from src.services.nphies.errors import NphiesError, normalize_error
from src.utils.logging import get_logger

logger = get_logger(__name__)


class NotFoundError(HTTPException):
    """Raised when resource not found"""

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=detail,
        )


async def workflow_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Render workflow and gateway errors as `{"error": NormalizedError}`.

    Evidence: Custom exception handlers
    Source: https://fastapi.tiangolo.com/tutorial/handling-errors/#install-custom-exception-handlers
    Verified: 2026-10-16
    """
    normalized = normalize_error(exc)
    if normalized.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {normalized.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {normalized.message}")
    return JSONResponse(
        status_code=normalized.http_status,
        content={"error": normalized.to_dict()},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the workflow error handlers on the app."""
    app.add_exception_handler(NphiesError, workflow_error_handler)
    # TransportError derives from GatewayError
    app.add_exception_handler(GatewayError, workflow_error_handler)
