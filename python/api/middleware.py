"""
FastAPI Middleware for Sanctions Screening API

Provides request logging and global error handling.
"""

import time
import uuid
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from downloader import FetchError, ParseError
from source_cache import SearchError
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with a request ID and its processing time.

    The request ID is taken from the X-Request-ID header when present and
    echoed back together with X-Processing-Time-MS.
    """

    async def dispatch(self, request: Request, call_next: Callable):
        """Process request and log details."""
        start_time = time.time()
        request_id = sanitize_for_logging(request.headers.get("X-Request-ID", ""))[:64] or uuid.uuid4().hex

        request.state.request_id = request_id
        request.state.start_time = start_time

        logger.info(
            "Request: method=%s path=%s request_id=%s",
            request.method,
            sanitize_for_logging(str(request.url.path)),
            request_id,
        )

        try:
            response = await call_next(request)
        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                request_id,
            )
            raise

        processing_time_ms = int((time.time() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(processing_time_ms)

        logger.info(
            "Response: status=%d processing_time_ms=%d request_id=%s",
            response.status_code,
            processing_time_ms,
            request_id,
        )
        return response


# Domain errors that reach a handler: status code and error code
DOMAIN_ERRORS = (
    (ConfigurationError, 503, "CONFIGURATION_ERROR",
     "Service configuration is invalid. Please contact administrator."),
    (SearchError, 503, "SOURCE_UNAVAILABLE",
     "A watchlist source has no data available."),
    (FetchError, 502, "SOURCE_UNAVAILABLE",
     "A watchlist source could not be downloaded."),
    (ParseError, 502, "SOURCE_DATA_INVALID",
     "A watchlist source returned a document that could not be parsed."),
)


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    request_id: Optional[str] = None,
    field: Optional[str] = None,
) -> JSONResponse:
    """Build the JSON error envelope shared by every handler.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        request_id: Request ID assigned by RequestLoggingMiddleware
        field: Request field that failed validation (optional)

    Returns:
        JSONResponse of the form {"error": {code, message, timestamp, ...}}
    """
    error_detail = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if request_id:
        error_detail["request_id"] = request_id
    if field:
        error_detail["field"] = field

    return JSONResponse(status_code=status_code, content={"error": error_detail})


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Domain errors map to their own code; anything else is a bare 500.

    The exception text of unexpected errors is logged, never returned.
    """
    request_id = _request_id(request)

    for error_class, status_code, code, message in DOMAIN_ERRORS:
        if isinstance(exc, error_class):
            logger.error(
                "%s: %s request_id=%s", code, sanitize_for_logging(str(exc)), request_id
            )
            return create_error_response(code, message, status_code, request_id)

    logger.error(
        "Unhandled exception: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        request_id,
        exc_info=exc,
    )
    return create_error_response(
        "INTERNAL_ERROR", "An unexpected error occurred. Please try again later.", 500, request_id
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """HTTP errors raised by endpoints or by routing (404, 405)."""
    request_id = _request_id(request)
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    logger.warning(
        "HTTP %d: %s request_id=%s", exc.status_code, sanitize_for_logging(detail), request_id
    )
    return create_error_response(f"HTTP_{exc.status_code}", detail, exc.status_code, request_id)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Request body rejected by the pydantic models."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    # loc is ("body", <field>, ...); drop the "body" prefix
    field = ".".join(str(part) for part in first.get("loc", ())[1:]) or None
    message = first.get("msg", "Invalid request")

    logger.warning(
        "Validation failed: field=%s errors=%d request_id=%s", field, len(errors), _request_id(request)
    )
    return create_error_response("VALIDATION_ERROR", message, 422, _request_id(request), field)


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the error handlers on the application."""
    app.add_exception_handler(Exception, unhandled_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
