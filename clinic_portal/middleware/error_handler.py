"""Error handling middleware.

Every error leaves the API in the same envelope::

    {"error": <name>, "message": <text>, "path": <url>, "details": <optional>}
"""

from typing import Any

import structlog
from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from clinic_portal.core.exceptions import AppException, RpcError

logger = structlog.get_logger(__name__)


def error_response(
    request: Request,
    status_code: int,
    error: str,
    message: Any,
    details: Any = None,
) -> JSONResponse:
    """Build the JSON error envelope."""
    content: dict[str, Any] = {
        "error": error,
        "message": message,
        "path": str(request.url),
    }
    if details is not None:
        content["details"] = jsonable_encoder(details)
    return JSONResponse(status_code=status_code, content=content)


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Handle application exceptions.

    Backend RPC failures are logged with their code and hint; other 5xx
    errors are logged by name only. 4xx errors are the caller's problem and
    are not logged here.
    """
    if isinstance(exc, RpcError):
        logger.warning(
            "backend_error_response",
            path=request.url.path,
            status_code=exc.status_code,
            message=exc.message,
            code=exc.code,
            hint=exc.hint,
        )
    elif exc.status_code >= 500:
        logger.error("app_exception", error=exc.__class__.__name__, message=exc.message)

    return error_response(
        request, exc.status_code, exc.__class__.__name__, exc.message, exc.details
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handle HTTP exceptions raised by FastAPI itself (401 from the bearer scheme, 404 routes)."""
    return error_response(request, exc.status_code, "HTTPException", exc.detail)


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    return error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "ValidationError",
        "Request validation failed",
        exc.errors(),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle unexpected exceptions.

    The traceback goes to the log; the caller only sees a generic message.
    """
    logger.error(
        "unhandled_exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        exc_info=exc,
    )
    return error_response(
        request,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "InternalServerError",
        "An unexpected error occurred",
    )
