"""
Error taxonomy and the JSON envelope every response uses.

Success: {"success": true, "data": {...}}
Failure: {"success": false, "error": {"code": "...", "message": "..."}}
"""
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import IS_PRODUCTION
from database import DatabaseUnavailable

logger = logging.getLogger(__name__)


class ApiError(Exception):
    status_code = 500
    code = "SERVER_ERROR"
    message = "An unexpected error occurred."

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message or self.message
        self.code = code or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return error


class ValidationError(ApiError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "The request is invalid."


class AuthError(ApiError):
    status_code = 401
    code = "AUTH_TOKEN_INVALID"
    message = "Authentication required. Please log in."


class ForbiddenError(ApiError):
    status_code = 403
    code = "FORBIDDEN"
    message = "You are not allowed to perform this action."


class NotFoundError(ApiError):
    status_code = 404
    code = "NOT_FOUND"
    message = "Resource not found."


class ConflictError(ApiError):
    status_code = 409
    code = "CONFLICT"
    message = "The request conflicts with existing data."


class AlreadyAdoptedError(ConflictError):
    code = "ALREADY_ADOPTED"
    message = "You have already adopted this school."


class DuplicateAdoptionError(ConflictError):
    """Raised by the adoption ledger when its unique (userId, schoolId) index rejects an insert."""
    code = "ALREADY_ADOPTED"
    message = "You have already adopted this school."


class AdopterLimitExceededError(ConflictError):
    code = "ADOPTER_LIMIT_EXCEEDED"
    message = "This school has reached the maximum number of adopters."


class RateLimitError(ApiError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"
    message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int, message: Optional[str] = None):
        self.retry_after = max(int(retry_after), 0)
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        error = super().to_dict()
        error["retryAfter"] = self.retry_after
        return error


class PartialFailureError(ApiError):
    """The adoption ledger row was written but the school's adopter list was not updated."""
    status_code = 500
    code = "PARTIAL_FAILURE"
    message = "Your adoption was recorded but the school could not be updated. An administrator will reconcile it."


class ServerError(ApiError):
    status_code = 500
    code = "SERVER_ERROR"
    message = "An unexpected error occurred. Please try again later."


def success(data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"success": True, "data": data or {}}


def error_response(status_code: int, error: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error}, headers=headers)


async def api_error_handler(request: Request, exc: ApiError):
    headers = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("%s %s failed with %s: %s", request.method, request.url.path, exc.code, exc.message)
    return error_response(exc.status_code, exc.to_dict(), headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    codes = {404: "NOT_FOUND", 405: "METHOD_NOT_ALLOWED", 401: "AUTH_TOKEN_INVALID", 403: "FORBIDDEN"}
    code = codes.get(exc.status_code, "HTTP_ERROR")
    return error_response(exc.status_code, {"code": code, "message": str(exc.detail)}, getattr(exc, "headers", None))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    problems = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        problems.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg"))
    message = "; ".join(problems) or "The request is invalid."
    return error_response(400, {"code": "VALIDATION_ERROR", "message": message})


async def database_unavailable_handler(request: Request, exc: DatabaseUnavailable):
    logger.error("Database unavailable while handling %s %s", request.method, request.url.path)
    return error_response(500, {"code": "DATABASE_UNAVAILABLE", "message": "Database not available"})


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = ServerError(None if IS_PRODUCTION else str(exc))
    return error_response(error.status_code, error.to_dict())


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(DatabaseUnavailable, database_unavailable_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
