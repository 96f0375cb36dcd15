"""
Admin API error model.

Every response, success or failure, goes out in the same envelope:
``{"ok", "data" | "error", "message", "request_id", "timestamp"}``. The
request id is taken from the caller's X-Request-ID header when present so a
retry issued from the admin UI can be traced through the worker logs.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from salesops.config.logging import add_request_context, get_logger

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


class SalesOpsException(Exception):
    """Base exception for errors the admin API reports to the caller."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundError(SalesOpsException):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_404_NOT_FOUND, details)


class ConflictError(SalesOpsException):
    """The job is not in a state that allows the requested transition."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, status.HTTP_409_CONFLICT, details)


class UnauthorizedError(SalesOpsException):
    """Missing or wrong admin token or cron secret."""

    def __init__(
        self, message: str = "Unauthorized", details: dict[str, Any] | None = None
    ):
        super().__init__(message, status.HTTP_401_UNAUTHORIZED, details)


def current_request_id() -> str | None:
    """Request id bound by RequestContextMiddleware, if inside a request."""
    return structlog.contextvars.get_contextvars().get("request_id")


def create_error_response(
    status_code: int,
    message: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    return {
        "ok": False,
        "error": {
            "message": message,
            "code": status_code,
            "details": details or {},
        },
        "request_id": request_id or current_request_id(),
        "timestamp": datetime.now(UTC).isoformat(),
    }


def create_success_response(
    data: Any, message: str | None = None, request_id: str | None = None
) -> dict[str, Any]:
    return {
        "ok": True,
        "data": data,
        "message": message,
        "request_id": request_id or current_request_id(),
        "timestamp": datetime.now(UTC).isoformat(),
    }


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())


async def salesops_exception_handler(
    request: Request, exc: SalesOpsException
) -> JSONResponse:
    """Render service errors; client errors log at warning, server errors at error."""
    request_id = _request_id(request)

    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "Admin request rejected",
        exception=exc.__class__.__name__,
        message=exc.message,
        status_code=exc.status_code,
        details=exc.details,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            exc.status_code, exc.message, exc.details, request_id
        ),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Bad query or body parameters, e.g. an unknown job status filter."""
    errors = jsonable_encoder(exc.errors())
    logger.info("Invalid admin request", errors=errors, path=request.url.path)

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=create_error_response(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "Request validation failed",
            {"errors": errors},
            _request_id(request),
        ),
    )


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Routing errors (unknown path, wrong method) in the same envelope."""
    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(
            exc.status_code, str(exc.detail), request_id=_request_id(request)
        ),
        headers=getattr(exc, "headers", None),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception",
        exception=exc.__class__.__name__,
        message=str(exc),
        path=request.url.path,
        exc_info=True,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=create_error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal server error",
            request_id=_request_id(request),
        ),
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind a correlation id to the request's logs and echo it back."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id

        add_request_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
