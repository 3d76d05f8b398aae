"""
Domain errors and the exception handlers that turn them into the error envelope
``{"status": "error", "message": ..., "errors"?: [...], "field"?: ...}``.
"""
import logging
import re
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, status
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import IntegrityError

logger = logging.getLogger(__name__)


class AppError(HTTPException):
    """Base for errors raised by handlers and services."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(status_code=self.status_code, detail=detail)
        self.field = field


class BadRequest(AppError):
    status_code = status.HTTP_400_BAD_REQUEST

class Unauthorized(AppError):
    status_code = status.HTTP_401_UNAUTHORIZED

class Forbidden(AppError):
    status_code = status.HTTP_403_FORBIDDEN

class NotFound(AppError):
    status_code = status.HTTP_404_NOT_FOUND

class Conflict(AppError):
    status_code = status.HTTP_409_CONFLICT

class InternalServerError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(message: str, errors: Optional[list] = None, field: Optional[str] = None) -> dict:
    body = {"status": "error", "message": message}
    if errors is not None:
        body["errors"] = errors
    if field is not None:
        body["field"] = field
    return body


def _field_path(loc) -> str:
    # Drop the "body"/"query"/"path" prefix FastAPI puts in front of the location
    parts = [str(p) for p in loc]
    if parts and parts[0] in ("body", "query", "path", "header", "form"):
        parts = parts[1:]
    return ".".join(parts) or "body"


def validation_errors(exc) -> list:
    errors = []
    for err in exc.errors():
        message = err.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append({"field": _field_path(err.get("loc", ())), "message": message})
    return errors


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    message = exc.detail if isinstance(exc.detail, str) else "Request failed"
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
        message = "Internal server error"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(message, field=getattr(exc, "field", None)),
        headers=getattr(exc, "headers", None),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("Validation error", errors=validation_errors(exc)),
    )


_UNIQUE_COLUMN_RE = re.compile(r"UNIQUE constraint failed: \w+\.(\w+)|Key \((\w+)\)=")


async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(f"Integrity error on {request.method} {request.url.path}: {exc.orig}")
    match = _UNIQUE_COLUMN_RE.search(str(exc.orig))
    field = None
    if match:
        field = match.group(1) or match.group(2)
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=error_body("Duplicate field value entered", field=field),
    )


async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=error_body(f"Too many requests: {exc.detail}"),
    )


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("Internal server error"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
