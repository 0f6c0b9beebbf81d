"""
Application exceptions and global exception handlers for the tokenchat API.

Every subsystem raises exactly one exception type whose ``code`` names the
failure kind. HTTP status is derived from the code, and callers branch on
``exc.code`` rather than on the exception class.
"""

from __future__ import annotations

import traceback

from typing import Any

import asyncpg

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from tokenchat.api.middleware.request_context import current_request_id
from tokenchat.core.constants import get_settings
from tokenchat.models.error_models import (
    ErrorCode,
    ErrorDetail,
    ErrorResponse,
    get_status_code,
)
from tokenchat.utils.logger import logger


class AppException(Exception):
    """Base application exception with error code support.

    Example:
        raise ConversationError(
            code=ErrorCode.CONVERSATION_NOT_FOUND,
            message="Conversation not found",
            details={"conversation_id": conversation_id},
        )
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details
        self.cause = cause
        super().__init__(message)

    @property
    def status_code(self) -> int:
        """HTTP status equivalent of this error's code."""
        return get_status_code(self.code)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r})"


class AuthenticationError(AppException):
    """Bearer token missing or rejected."""

    def __init__(
        self,
        message: str = "Authentication required",
        code: ErrorCode = ErrorCode.AUTH_REQUIRED,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(code=code, message=message, details=details)


class LedgerError(AppException):
    """Token ledger and billing failures (INSUFFICIENT_TOKENS, INVALID_PACK, ...)."""


class ConversationError(AppException):
    """Conversation store failures (CONVERSATION_NOT_FOUND, ACCESS_DENIED, ...)."""


class CompletionError(AppException):
    """Completion backend failures (LLM_CONFIG_ERROR, OPENROUTER_ERROR, STREAM_ERROR, ...)."""


class RetrievalError(AppException):
    """Embedding and chunk retrieval failures (EMBEDDING_FAILED, RETRIEVAL_FAILED)."""


class WebhookError(AppException):
    """Payment webhook failures (WEBHOOK_UNAUTHORIZED, WEBHOOK_PAYLOAD_INVALID)."""


class DatabaseError(AppException):
    """Database-related errors."""

    def __init__(
        self,
        message: str = "Database error",
        code: ErrorCode = ErrorCode.DATABASE_ERROR,
        cause: Exception | None = None,
    ):
        super().__init__(code=code, message=message, cause=cause)



#: Plain ``HTTPException`` statuses mapped onto the closest application code
HTTP_STATUS_CODES: dict[int, ErrorCode] = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.AUTH_REQUIRED,
    402: ErrorCode.INSUFFICIENT_TOKENS,
    403: ErrorCode.ACCESS_DENIED,
    404: ErrorCode.CONVERSATION_NOT_FOUND,
    422: ErrorCode.VALIDATION_ERROR,
    503: ErrorCode.SERVICE_UNAVAILABLE,
}


def _respond(
    request: Request,
    exc: Exception,
    status_code: int,
    code: ErrorCode,
    message: str,
    details: list[ErrorDetail] | None = None,
    debug: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Log ``exc`` at a level matching ``status_code`` and render the error envelope.

    Request id, user and path come from the active scope through the logger.
    """
    if status_code >= 500:
        logger.error(f"{code.value} on {request.url.path}: {exc}", exc_info=exc, status_code=status_code)
    else:
        logger.warning(f"{code.value} on {request.url.path}: {exc}", status_code=status_code)

    include_debug = get_settings().debug
    body = ErrorResponse(
        code=code,
        message=message,
        request_id=current_request_id(),
        path=request.url.path,
        details=details,
        debug=debug if include_debug else None,
    )
    return JSONResponse(status_code=status_code, content=body.to_dict(include_debug=include_debug), headers=headers)


def _field_errors(errors: Any) -> list[ErrorDetail]:
    return [
        ErrorDetail(field=".".join(str(part) for part in err["loc"]), message=err["msg"], code=err["type"])
        for err in errors
    ]


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    details = None
    if exc.details:
        details = [ErrorDetail(field=key, message=str(value)) for key, value in exc.details.items()]
    return _respond(
        request,
        exc,
        exc.status_code,
        exc.code,
        exc.message,
        details=details,
        debug={"exception_type": type(exc).__name__, "cause": str(exc.cause) if exc.cause else None},
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code = HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _respond(request, exc, exc.status_code, code, message, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError | ValidationError) -> JSONResponse:
    """Malformed request bodies and models that fail validation downstream both answer 422."""
    message = "Request validation failed" if isinstance(exc, RequestValidationError) else "Data validation failed"
    return _respond(request, exc, 422, ErrorCode.VALIDATION_ERROR, message, details=_field_errors(exc.errors()))


async def asyncpg_exception_handler(request: Request, exc: asyncpg.PostgresError) -> JSONResponse:
    # The message can name tables and columns; only the SQLSTATE goes out, and only in debug
    return _respond(
        request,
        exc,
        500,
        ErrorCode.DATABASE_ERROR,
        "Database operation failed",
        debug={"sqlstate": getattr(exc, "sqlstate", None), "pg_error_class": type(exc).__name__},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return _respond(
        request,
        exc,
        500,
        ErrorCode.INTERNAL_UNEXPECTED,
        "An unexpected error occurred",
        debug={
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
            "traceback": "".join(traceback.format_exception(exc)),
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install the handlers; order does not matter, Starlette picks the most specific class."""
    handlers: list[tuple[type[Exception], Any]] = [
        (AppException, app_exception_handler),
        (HTTPException, http_exception_handler),
        (RequestValidationError, validation_exception_handler),
        (ValidationError, validation_exception_handler),
        (asyncpg.PostgresError, asyncpg_exception_handler),
        (Exception, generic_exception_handler),
    ]
    for exc_class, handler in handlers:
        app.add_exception_handler(exc_class, handler)


__all__ = [
    "AppException",
    "AuthenticationError",
    "CompletionError",
    "ConversationError",
    "DatabaseError",
    "HTTP_STATUS_CODES",
    "LedgerError",
    "RetrievalError",
    "WebhookError",
    "app_exception_handler",
    "asyncpg_exception_handler",
    "generic_exception_handler",
    "http_exception_handler",
    "register_exception_handlers",
    "validation_exception_handler",
]
