# Error envelope: every failure leaves the API as {"error": {"code", "message"}}

import logging

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)

# Codes for HTTP errors raised by the framework or dependencies without one
STATUS_CODES = {
    status.HTTP_400_BAD_REQUEST: "VALIDATION",
    status.HTTP_401_UNAUTHORIZED: "UNAUTHENTICATED",
    status.HTTP_403_FORBIDDEN: "FORBIDDEN",
    status.HTTP_404_NOT_FOUND: "NOT_FOUND",
    status.HTTP_405_METHOD_NOT_ALLOWED: "METHOD_NOT_ALLOWED",
    status.HTTP_409_CONFLICT: "CONFLICT",
}


class ApiError(HTTPException):
    """HTTPException carrying a machine-readable error code."""

    def __init__(self, status_code: int, code: str, message: str, headers: dict = None):
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.code = code


def validation(message: str) -> ApiError:
    return ApiError(status.HTTP_400_BAD_REQUEST, "VALIDATION", message)


def not_found(message: str) -> ApiError:
    return ApiError(status.HTTP_404_NOT_FOUND, "NOT_FOUND", message)


def forbidden(message: str) -> ApiError:
    return ApiError(status.HTTP_403_FORBIDDEN, "FORBIDDEN", message)


def frozen(message: str) -> ApiError:
    return ApiError(status.HTTP_403_FORBIDDEN, "FROZEN", message)


def invalid_state(message: str = "Request is no longer pending") -> ApiError:
    return ApiError(status.HTTP_400_BAD_REQUEST, "INVALID_STATE", message)


def error_body(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = getattr(exc, "code", None) or STATUS_CODES.get(exc.status_code, "ERROR")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(code, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", "Invalid request")
    else:
        message = "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("VALIDATION", message),
    )


async def store_error_handler(request: Request, exc: PyMongoError):
    logger.error("Data store error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("SERVER_ERROR", "Internal server error"),
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("INTERNAL_ERROR", "Internal server error"),
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(PyMongoError, store_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
