"""Error types shared across the service and the JSON error handlers."""

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class ConfigurationError(RuntimeError):
    """A required secret or setting is missing."""


class OAuthStateError(ValueError):
    pass


class InvalidStateFormat(OAuthStateError):
    pass


class InvalidStateSignature(OAuthStateError):
    pass


class InvalidStatePayload(OAuthStateError):
    pass


class StateExpired(OAuthStateError):
    pass


class ContentError(ValueError):
    code = "content_error"


class ContentRequired(ContentError):
    code = "content_required"


class ContentTooLong(ContentError):
    code = "content_too_long"


class LinkedInOAuthError(RuntimeError):
    """Token exchange or profile fetch failed during the OAuth callback."""


def api_error(status_code: int, message: str, **extra) -> HTTPException:
    """Build an HTTPException whose body renders as {"error": message, **extra}."""
    return HTTPException(status_code, detail={"error": message, **extra})


async def _http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    body = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


async def _validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("Rejected request to %s: %s", request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
