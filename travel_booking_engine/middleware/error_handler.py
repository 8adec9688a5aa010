"""
Error handling for the Travel Booking Engine API.

Engine errors and request validation errors are rendered by exception
handlers registered on the app; anything else that escapes a route is caught
by ``ErrorHandlerMiddleware``. All of them share one response format:

    {"error": {"code", "message", "details"?}, "error_id", "timestamp"}
"""

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError, TimeoutError as SQLTimeoutError
from starlette.middleware.base import BaseHTTPMiddleware

from ..utils.exceptions import (
    BookingEngineError,
    ConcurrencyError,
    ErrorCode,
    GatewayError,
    InvalidSignatureError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

STATUS_MAP = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.NOT_AVAILABLE: status.HTTP_409_CONFLICT,
    ErrorCode.INVALID_STATUS_TRANSITION: status.HTTP_409_CONFLICT,
    ErrorCode.HOLD_EXPIRED: status.HTTP_410_GONE,
    ErrorCode.INVALID_SIGNATURE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.GATEWAY_ERROR: status.HTTP_502_BAD_GATEWAY,
    ErrorCode.MODIFICATION_NOT_ALLOWED: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.CONCURRENCY_CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def status_code_for(exc: BookingEngineError) -> int:
    """Map error codes to HTTP status codes."""
    return STATUS_MAP.get(exc.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_response(
    exc: BookingEngineError,
    status_code: Optional[int] = None,
    error_id: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    """Render an engine error in the API's error format."""
    content = {
        "error": exc.to_dict(),
        "error_id": error_id or str(uuid4()),
        "timestamp": _timestamp(),
    }
    if extra:
        content.update(extra)

    headers = {}
    if exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(
        status_code=status_code or status_code_for(exc),
        content=content,
        headers=headers,
    )


def log_error(request: Request, exc: Exception, error_id: str) -> None:
    """Log an error with request context; client errors at WARNING, the rest at ERROR."""
    context = {
        "error_id": error_id,
        "method": request.method,
        "path": request.url.path,
        "client_ip": request.client.host if request.client else None,
    }

    if isinstance(exc, BookingEngineError):
        context["error_code"] = exc.error_code.value
        context["error_details"] = exc.details
        if isinstance(exc, InvalidSignatureError):
            logger.warning("Rejected webhook [%s]: %s", error_id, exc.message, extra=context)
        elif isinstance(exc, (ConcurrencyError, GatewayError)):
            logger.error("System error [%s]: %s", error_id, exc.message, extra=context)
        elif status_code_for(exc) < 500 or isinstance(exc, (ValidationError, NotFoundError)):
            logger.warning("Client error [%s]: %s", error_id, exc.message, extra=context)
        else:
            logger.error("Business error [%s]: %s", error_id, exc.message, extra=context)
    else:
        logger.error(
            "Unexpected error [%s]: %s",
            error_id, exc,
            extra={**context, "error_type": type(exc).__name__, "traceback": traceback.format_exc()}
        )


async def booking_engine_error_handler(request: Request, exc: BookingEngineError) -> JSONResponse:
    error_id = str(uuid4())
    log_error(request, exc, error_id)
    return error_response(exc, error_id=error_id)


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    field_errors: Dict[str, list] = {}
    for error in exc.errors():
        field_path = ".".join(str(loc) for loc in error["loc"])
        field_errors.setdefault(field_path, []).append(error["msg"])

    validation_error = ValidationError("Request validation failed", field_errors=field_errors)
    error_id = str(uuid4())
    log_error(request, validation_error, error_id)
    return error_response(validation_error, error_id=error_id)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BookingEngineError, booking_engine_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)


class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catches errors that no exception handler rendered."""

    def __init__(self, app, debug: bool = False):
        super().__init__(app)
        self.debug = debug

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as exc:
            return self._handle_exception(request, exc, str(uuid4()))

    def _handle_exception(self, request: Request, exc: Exception, error_id: str) -> JSONResponse:
        log_error(request, exc, error_id)

        if isinstance(exc, BookingEngineError):
            return error_response(exc, error_id=error_id)

        if isinstance(exc, (OperationalError, SQLTimeoutError)):
            unavailable = BookingEngineError(
                "Database temporarily unavailable",
                error_code=ErrorCode.INTERNAL_ERROR,
                details={"error_type": type(exc).__name__},
                retry_after=30,
            )
            return error_response(unavailable, status.HTTP_503_SERVICE_UNAVAILABLE, error_id)

        unexpected = BookingEngineError(
            "An unexpected error occurred",
            error_code=ErrorCode.INTERNAL_ERROR,
            details={"error_type": type(exc).__name__} if self.debug else None,
        )
        extra = None
        if self.debug:
            extra = {"debug": {"exception": str(exc), "traceback": traceback.format_exc()}}
        return error_response(unexpected, status.HTTP_500_INTERNAL_SERVER_ERROR, error_id, extra)
