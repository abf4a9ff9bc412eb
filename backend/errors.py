"""
Uniform error responses.

Every error body has the form {"error": <category>, "detail": <message>}.
Request validation failures also carry the individual field errors.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import is_production_like

logger = logging.getLogger(__name__)

ERROR_CATEGORIES = {
    400: "validation_error",
    401: "authentication_error",
    403: "authorization_error",
    404: "not_found",
    409: "conflict",
    411: "validation_error",
    413: "validation_error",
    500: "internal_error",
}


def error_category(status_code: int) -> str:
    if status_code in ERROR_CATEGORIES:
        return ERROR_CATEGORIES[status_code]
    return "internal_error" if status_code >= 500 else "validation_error"


def _error_response(status_code: int, detail, headers=None, **extra) -> JSONResponse:
    body = {"error": error_category(status_code), "detail": detail}
    body.update(extra)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
    return _error_response(exc.status_code, exc.detail, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    logger.info(f"Validation failed for {request.method} {request.url.path}: {len(errors)} errors")
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    detail = f"{location}: {message}" if location else message
    return _error_response(400, detail, errors=errors)


async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
    logger.warning(f"Integrity error on {request.method} {request.url.path}: {exc.orig}")
    return _error_response(409, "Resource conflicts with existing data")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    detail = "Internal server error" if is_production_like() else f"{type(exc).__name__}: {exc}"
    return _error_response(500, detail)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(IntegrityError, integrity_error_handler)
    app.add_exception_handler(SQLAlchemyError, unhandled_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
