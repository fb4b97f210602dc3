"""Response envelope and error mapping shared by every route."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from newsletter_desk.core.errors import (
    AuthFailedError,
    ConfigMissingError,
    DuplicateSubscriberError,
    NetworkFailedError,
    NewsletterError,
    NotFoundError,
    ParseFailure,
    ValidationFailure,
)
from newsletter_desk.utils.datetime import utcnow
from newsletter_desk.utils.logger import get_logger

logger = get_logger(__name__)


class ApiResponse(BaseModel):
    success: bool
    data: Any = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


def ok(data: Any = None) -> ApiResponse:
    return ApiResponse(success=True, data=data)


def error_response(status_code: int, message: str) -> JSONResponse:
    body = ApiResponse(success=False, error=message)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def status_for(exc: NewsletterError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, DuplicateSubscriberError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (ValidationFailure, ParseFailure, ConfigMissingError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, (AuthFailedError, NetworkFailedError)):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(NewsletterError)
    async def handle_newsletter_error(request: Request, exc: NewsletterError) -> JSONResponse:
        code = status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        message = str(exc)
        if isinstance(exc, ConfigMissingError) and exc.hint:
            message = f"{message}. {exc.hint}"
        return error_response(code, message)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        messages = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'][1:]) or 'body'}: {error['msg']}"
            for error in exc.errors()
        )
        return error_response(422, messages)
