"""Translation of security errors into HTTP responses.

Every error body has an ``error`` message; some carry extra fields
(``required``/``current`` on 403, lockout state on 429).
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantauth.security.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    MembershipError,
    NotFoundError,
    RateLimitError,
    TwoFactorRequiredError,
    TwoFactorStateError,
    ValidationFailedError,
)
from tenantauth.security.rate_limit import RateLimitResult

logger = logging.getLogger(__name__)

UNAUTHORIZED_MESSAGE = "Unauthorized - Authentication required"
FORBIDDEN_MESSAGE = "Forbidden - Insufficient permissions"


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    body = {"error": message}
    body.update({key: value for key, value in extra.items() if value is not None})
    return JSONResponse(status_code=status_code, content=body)


def unauthorized_response(message: str = UNAUTHORIZED_MESSAGE) -> JSONResponse:
    return error_response(401, message)


def forbidden_response(error: AuthorizationError) -> JSONResponse:
    return error_response(403, str(error), required=error.required, current=error.current)


def rate_limited_response(message: str, result: RateLimitResult) -> JSONResponse:
    """429 carrying the lockout state and a ``Retry-After`` header when known."""
    response = JSONResponse(
        status_code=429,
        content={
            "error": message,
            "isLocked": result.is_locked,
            "lockedUntil": result.locked_until.isoformat() if result.locked_until else None,
            "remaining": result.remaining,
        },
    )
    retry_after = result.retry_after_seconds()
    if retry_after is not None:
        response.headers["Retry-After"] = str(retry_after)
    return response


async def _authentication_error(request: Request, exc: AuthenticationError) -> JSONResponse:
    return unauthorized_response(str(exc) or UNAUTHORIZED_MESSAGE)


async def _two_factor_required(request: Request, exc: TwoFactorRequiredError) -> JSONResponse:
    return error_response(401, str(exc), requiresTwoFactor=True)


async def _authorization_error(request: Request, exc: AuthorizationError) -> JSONResponse:
    return forbidden_response(exc)


async def _rate_limit_error(request: Request, exc: RateLimitError) -> JSONResponse:
    logger.warning(f"Rate limited request to {request.url.path}: {exc}")
    return rate_limited_response(str(exc), exc.result)


async def _bad_request(request: Request, exc: Exception) -> JSONResponse:
    return error_response(400, str(exc))


async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return error_response(404, str(exc) or "Not found")


async def _conflict(request: Request, exc: ConflictError) -> JSONResponse:
    return error_response(409, str(exc))


async def _invalid_body(request: Request, exc: ValidationError) -> JSONResponse:
    return error_response(
        400,
        "Invalid request body",
        details=exc.errors(include_url=False, include_context=False, include_input=False),
    )


async def _http_exception(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    response = error_response(exc.status_code, str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return error_response(500, "Internal server error")


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers on ``app``."""
    app.add_exception_handler(AuthenticationError, _authentication_error)
    app.add_exception_handler(TwoFactorRequiredError, _two_factor_required)
    app.add_exception_handler(AuthorizationError, _authorization_error)
    app.add_exception_handler(RateLimitError, _rate_limit_error)
    app.add_exception_handler(ValidationFailedError, _bad_request)
    app.add_exception_handler(MembershipError, _bad_request)
    app.add_exception_handler(TwoFactorStateError, _bad_request)
    app.add_exception_handler(NotFoundError, _not_found)
    app.add_exception_handler(ConflictError, _conflict)
    app.add_exception_handler(ValidationError, _invalid_body)
    app.add_exception_handler(StarletteHTTPException, _http_exception)
    app.add_exception_handler(Exception, _unhandled)
