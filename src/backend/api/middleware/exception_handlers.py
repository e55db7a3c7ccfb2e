"""
Global exception handlers for the gateway API.

Every failure is rendered as ``{"error": "<message>", "code": "<code>"}``
plus the request id, with the HTTP status taken from the error code.
"""

from __future__ import annotations

import traceback

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.middleware.request_context import get_request_context, get_request_id
from core.constants import get_settings
from core.exceptions import GatewayError, RateLimitedError
from models.error_models import ErrorCode, ErrorResponse, get_status_code
from utils.logger import logger


def _debug_enabled(request: Request) -> bool:
    context = getattr(request.app.state, "context", None)
    if context is not None:
        return bool(context.settings.debug)
    return get_settings().debug


def _create_error_response(
    code: ErrorCode,
    message: str,
    details: dict[str, Any] | None = None,
) -> ErrorResponse:
    return ErrorResponse(error=message, code=code, request_id=get_request_id(), details=details)


def _log_error(error: Exception, code: ErrorCode, status_code: int) -> None:
    """Log error with appropriate level and context."""
    ctx = get_request_context()
    log_context = ctx.to_log_context() if ctx else {}
    log_context["error_code"] = code.value
    log_context["status_code"] = status_code

    if status_code >= 500 and not isinstance(error, GatewayError):
        logger.error(f"Server error: {code.value} - {error}", exc_info=True, **log_context)
    elif status_code >= 500:
        logger.error(f"Server error: {code.value} - {error}", **log_context)
    elif status_code >= 400:
        logger.warning(f"Client error: {code.value} - {error}", **log_context)


async def gateway_exception_handler(request: Request, exc: GatewayError) -> JSONResponse:
    """Handle gateway exceptions."""
    status_code = get_status_code(exc.code)
    debug = _debug_enabled(request)

    details = dict(exc.details or {})
    if debug and exc.cause is not None:
        details["cause"] = str(exc.cause)

    error_response = _create_error_response(exc.code, exc.message, details or None)
    _log_error(exc, exc.code, status_code)

    response = JSONResponse(status_code=status_code, content=error_response.to_dict(include_details=debug))
    if isinstance(exc, RateLimitedError):
        response.headers["Retry-After"] = str(max(1, int(exc.retry_after + 0.999)))
    return response


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTPException (including routing 404/405) with consistent formatting."""
    status_to_code = {
        400: ErrorCode.INVALID_REQUEST,
        404: ErrorCode.INVALID_REQUEST,
        405: ErrorCode.INVALID_REQUEST,
        409: ErrorCode.CLEANUP_CONFLICT,
        429: ErrorCode.RATE_LIMITED,
        503: ErrorCode.SHUTTING_DOWN,
    }
    code = status_to_code.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)

    _log_error(exc, code, exc.status_code)
    return JSONResponse(
        status_code=exc.status_code,
        content=_create_error_response(code, message).to_dict(),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are plain 400s."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(loc) for loc in first.get("loc", ()) if loc != "body")
    message = f"Invalid request: {location} {first.get('msg', '')}".strip() if location else "Invalid request body"

    _log_error(exc, ErrorCode.INVALID_REQUEST, 400)
    return JSONResponse(
        status_code=400,
        content=_create_error_response(
            ErrorCode.INVALID_REQUEST,
            message,
            {"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors]},
        ).to_dict(include_details=_debug_enabled(request)),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle any unhandled exception."""
    debug = _debug_enabled(request)
    _log_error(exc, ErrorCode.INTERNAL_ERROR, 500)

    details = None
    if debug:
        details = {
            "exception_type": type(exc).__name__,
            "traceback": traceback.format_exc().splitlines()[-10:],
        }
    message = str(exc) if debug else "An unexpected error occurred"
    return JSONResponse(
        status_code=500,
        content=_create_error_response(ErrorCode.INTERNAL_ERROR, message, details).to_dict(include_details=debug),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(GatewayError, gateway_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
    logger.debug("Exception handlers registered")
