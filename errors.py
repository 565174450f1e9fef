"""
Error taxonomy for the API and the handlers that render it.

Every failure reaches the client as
{statusCode, success, message, errors, timestamp, path}.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

log = logging.getLogger(__name__)


class ApiError(Exception):
    status_code = 500
    default_message = "Something went wrong"

    def __init__(self, message: Optional[str] = None, errors: Optional[List] = None):
        self.message = message or self.default_message
        self.errors = errors or []
        self.timestamp = datetime.utcnow().isoformat() + "Z"
        super().__init__(self.message)


class InvalidInput(ApiError):
    status_code = 400
    default_message = "Bad Request"


class InsufficientStock(ApiError):
    status_code = 400
    default_message = "Insufficient stock available"


class InvalidStatusTransition(ApiError):
    status_code = 400

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid status transition from {current} to {target}")


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ApiError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(ApiError):
    status_code = 404
    default_message = "Not Found"


class Conflict(ApiError):
    status_code = 409
    default_message = "Conflict"


class ProcessorError(ApiError):
    """The payment processor failed; the caller may retry."""
    status_code = 502
    default_message = "Payment processor error"


class ServiceUnavailable(ApiError):
    status_code = 503
    default_message = "Service Unavailable"


def error_body(status_code: int, message: str, path: str, errors=None, timestamp=None) -> dict:
    return {
        "statusCode": status_code,
        "success": False,
        "message": message,
        "data": None,
        "errors": errors or [],
        "timestamp": timestamp or datetime.utcnow().isoformat() + "Z",
        "path": path,
    }


def register_error_handlers(app: FastAPI):
    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.status_code, exc.message, request.url.path, exc.errors, exc.timestamp),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if exc.status_code == 404 and exc.detail == "Not Found":
            message = f"Route {request.url.path} not found"
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.status_code, message, request.url.path),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in e.get("loc", [])), "message": e.get("msg")}
            for e in exc.errors()
        ]
        return JSONResponse(
            status_code=422,
            content=error_body(422, "Validation failed", request.url.path, errors),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        log.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content=error_body(500, "Internal Server Error", request.url.path),
        )
