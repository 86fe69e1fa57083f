"""
Exception handlers mapping package errors to HTTP responses.
"""

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from memorymesh.errors import DispatchError, QueueUnavailable
from memorymesh.types.api import ErrorResponse

logger = logging.getLogger(__name__)


def _error_response(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register handlers for dispatch misuse and broker unavailability."""

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        return _error_response(status.HTTP_400_BAD_REQUEST, type(exc).__name__, str(exc))

    @app.exception_handler(QueueUnavailable)
    async def queue_unavailable_handler(request: Request, exc: QueueUnavailable):
        logger.error(
            "Queue unavailable",
            extra={"path": request.url.path, "queue": exc.queue_name, "error": str(exc)},
        )
        return _error_response(
            status.HTTP_503_SERVICE_UNAVAILABLE, "QueueUnavailable", str(exc)
        )
