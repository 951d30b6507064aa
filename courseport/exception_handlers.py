"""
API error responses

Job failures, lookups, routing and request parsing all answer with one body:

{
    "error": {
        "status_code": 424,
        "error_code": "MISSING_DEPENDENCY",
        "message": "Missing plugin dependency 'adapt-contrib-text'",
        "type": "Failed Dependency",
        "details": {"name": "adapt-contrib-text", "stage": "plugins_resolved", "statusReport": {...}},
        "path": "/api/adapt/import"
    }
}

"details" is only present when the error carries some; job errors always
carry the stage they failed at.
"""

import logging
from http import HTTPStatus
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from courseport.exceptions import CourseportError, ErrorCode

logger = logging.getLogger(__name__)

# Errors raised by routing and request parsing rather than by a job
HTTP_ERROR_CODES = {
    status.HTTP_401_UNAUTHORIZED: ErrorCode.UNAUTHORIZED,
    status.HTTP_404_NOT_FOUND: ErrorCode.NOT_FOUND,
    status.HTTP_422_UNPROCESSABLE_ENTITY: ErrorCode.VALIDATION_FAILED,
}


def error_response(
    status_code: int,
    error_code: ErrorCode,
    message: str,
    path: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    try:
        phrase = HTTPStatus(status_code).phrase
    except ValueError:
        phrase = "Error"
    body: dict[str, Any] = {
        "status_code": status_code,
        "error_code": error_code.value,
        "message": message,
        "type": phrase,
        "path": path,
    }
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content={"error": body})


async def courseport_error_handler(request: Request, exc: CourseportError) -> JSONResponse:
    """Answer a failed build, import or lookup with its code and details."""
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        f"{exc.kind} on {request.url.path}: {exc.message}",
        extra={"error_code": exc.error_code.value, "stage": exc.details.get("stage")},
    )
    return error_response(exc.status_code, exc.error_code, exc.message, request.url.path, exc.details)


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.warning(f"HTTP {exc.status_code} on {request.url.path}: {exc.detail}")
    error_code = HTTP_ERROR_CODES.get(exc.status_code, ErrorCode.UNKNOWN_ERROR)
    return error_response(exc.status_code, error_code, str(exc.detail), request.url.path)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed form fields and missing uploads."""
    errors = [
        {"field": ".".join(str(loc) for loc in error["loc"] if loc not in ("body", "form")), "message": error["msg"]}
        for error in exc.errors()
    ]
    logger.warning(f"Rejected request to {request.url.path}", extra={"errors": errors})
    return error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        ErrorCode.VALIDATION_FAILED,
        "Invalid request",
        request.url.path,
        {"validation_errors": errors},
    )


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorCode.INTERNAL_ERROR,
        "An unexpected error occurred",
        request.url.path,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CourseportError, courseport_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
