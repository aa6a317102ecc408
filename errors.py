"""
Error taxonomy for the Video Rentals API and the handlers that render it.

Business-rule errors carry their HTTP status and are returned to the caller
as `{"detail": message}`. Store failures during a commit (`WorkflowAborted`)
and anything unexpected are logged in full and answered with a generic message.
"""

import logging
from typing import Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

GENERIC_FAILURE = "Something failed."


class ApiError(Exception):
    status_code = 400
    default_message = "Bad request."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ValidationError(ApiError):
    status_code = 400
    default_message = "Invalid request."


class InvalidReference(ApiError):
    status_code = 400
    default_message = "Invalid ID."


class NotFound(ApiError):
    status_code = 404
    default_message = "Not found."


class Unauthenticated(ApiError):
    status_code = 401
    default_message = "Access denied. No token provided."


class InvalidToken(ApiError):
    status_code = 400
    default_message = "Invalid token."


class Forbidden(ApiError):
    status_code = 403
    default_message = "Access denied."


class OutOfStock(ApiError):
    status_code = 400
    default_message = "Movie not in stock."


class AlreadyReturned(ApiError):
    status_code = 400
    default_message = "Return already processed."


class Conflict(ApiError):
    status_code = 409
    default_message = "The request conflicted with a concurrent update. Please retry."


class WorkflowAborted(ApiError):
    status_code = 500
    default_message = GENERIC_FAILURE


def _logger(request: Request) -> logging.Logger:
    return getattr(request.app.state, "logger", logging.getLogger("video_rentals"))


def log_failure(logger: logging.Logger, exc: BaseException) -> None:
    cause = exc.__cause__ or exc
    logger.error(
        str(exc),
        exc_info=(type(exc), exc, exc.__traceback__),
        extra={"meta": {"message": str(cause), "name": type(cause).__name__}},
    )


async def api_error_handler(request: Request, exc: ApiError):
    if isinstance(exc, WorkflowAborted):
        log_failure(_logger(request), exc)
        return JSONResponse(status_code=exc.status_code, content={"detail": GENERIC_FAILURE})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return JSONResponse(status_code=400, content={"detail": ValidationError.default_message})
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else first.get("msg")
    return JSONResponse(status_code=400, content={"detail": message})


async def unhandled_error_handler(request: Request, exc: Exception):
    log_failure(_logger(request), exc)
    return JSONResponse(status_code=500, content={"detail": GENERIC_FAILURE})


def register_error_handlers(app) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
