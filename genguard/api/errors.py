"""
Translation of guard errors into HTTP responses.

Every error body carries a machine-readable errorCode, a human-readable
message and a requestId; retryable errors add retryAfterSeconds and a
Retry-After header.
"""

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from genguard.core.errors import GuardError
from genguard.core.models import generate_token

logger = structlog.get_logger()


def generate_request_id() -> str:
    """Short id for correlating a client-visible error with logs."""
    return generate_token()[-10:].lower()


def error_response(exc: GuardError, request_id: str | None = None) -> JSONResponse:
    body = exc.to_dict()
    body["requestId"] = request_id or generate_request_id()

    headers = {}
    if exc.retry_after_seconds is not None:
        headers["Retry-After"] = str(exc.retry_after_seconds)

    return JSONResponse(status_code=exc.http_status, content=body, headers=headers)


async def guard_error_handler(request: Request, exc: GuardError) -> JSONResponse:
    response = error_response(exc)
    logger.info(
        "guard_error",
        path=request.url.path,
        code=exc.code,
        status=exc.http_status,
        retry_after=exc.retry_after_seconds,
    )
    return response


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch unhandled exceptions: log details, return generic message."""
    logger.error(
        "unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(GuardError, guard_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
