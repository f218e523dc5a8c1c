"""Translation of domain errors into HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..database.session import RepositoryException
from ..errors import (
    ConflictRetryExhausted,
    ErrorKind,
    FieldError,
    LibraryError,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_BORROWED: 422,
    ErrorKind.BOOK_UNAVAILABLE: 422,
    ErrorKind.ALREADY_RETURNED: 422,
    ErrorKind.VALIDATION_FAILED: 422,
    ErrorKind.CONFLICT_RETRY_EXHAUSTED: 503,
    ErrorKind.UNAUTHORIZED: 401,
}

RETRY_AFTER_SECONDS = "1"


def error_response(error: LibraryError) -> JSONResponse:
    body = error.as_dict()
    body.setdefault("fields", [])
    headers = {}
    if isinstance(error, ConflictRetryExhausted):
        headers["Retry-After"] = RETRY_AFTER_SECONDS
    elif error.kind == ErrorKind.UNAUTHORIZED:
        headers["WWW-Authenticate"] = "Bearer"
    return JSONResponse(
        status_code=STATUS_BY_KIND[error.kind], content={"error": body}, headers=headers
    )


def _field_name(location: tuple) -> str:
    # Drop the "body"/"query"/"path" prefix FastAPI puts in front
    parts = [str(part) for part in location[1:]] or [str(part) for part in location]
    return ".".join(parts)


async def handle_library_error(request: Request, exc: LibraryError) -> JSONResponse:  # noqa: ARG001
    return error_response(exc)


async def handle_request_validation(
    request: Request,  # noqa: ARG001
    exc: RequestValidationError,
) -> JSONResponse:
    errors = [FieldError(_field_name(tuple(err["loc"])), err["msg"]) for err in exc.errors()]
    return error_response(ValidationFailed(errors))


async def handle_repository_error(request: Request, exc: RepositoryException) -> JSONResponse:
    logger.error("Unhandled repository error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={
            "error": {"kind": "internal_error", "message": "Internal server error", "fields": []}
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LibraryError, handle_library_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation)
    app.add_exception_handler(RepositoryException, handle_repository_error)
