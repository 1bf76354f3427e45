"""JSON error bodies.

Every error the API returns has the same shape, whatever raised it:

    404 -> {"errors": {"detail": "Not Found"}}
    500 -> {"errors": {"detail": "Internal Server Error"}}

The detail is the standard reason phrase of the status code, so error
bodies never leak exception messages or internal identifiers.
"""

from http import HTTPStatus
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = structlog.get_logger()


def status_message(status_code: int) -> str:
    """Reason phrase of an HTTP status ("Not Found" for 404)."""
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Internal Server Error"


def render(template: str, assigns: dict[str, Any] | None = None) -> dict[str, Any]:
    """Error body for a ``"<status>.json"`` template name.

    ``assigns`` is accepted for symmetry with regular views and ignored:
    the body only depends on the status code.
    """
    status_code, _, _ = template.partition(".")
    try:
        code = int(status_code)
    except ValueError:
        code = 500
    return {"errors": {"detail": status_message(code)}}


def error_response(status_code: int, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=render(f"{status_code}.json"), headers=headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("http_error", path=request.url.path, status_code=exc.status_code, detail=exc.detail)
    return error_response(exc.status_code, headers=getattr(exc, "headers", None))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.info("request_invalid", path=request.url.path, errors=len(exc.errors()))
    return error_response(422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, error=str(exc))
    return error_response(500)


def register_error_handlers(app: FastAPI) -> None:
    """Route every HTTP error and unhandled exception through ``render``."""
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
