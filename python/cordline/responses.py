"""Response envelopes and the exception handlers that produce error envelopes.

Success: {"data": ...}, optionally with {"page": {"next_cursor": ...}} for lists.
Error:   {"error": {"code": "E_...", "message": "...", "request_id": "..."}}

Every failure a client can see goes through error_response, so the
request_id in the body always matches the X-Request-ID header.
"""

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from cordline.errors import ApiError, ApiErrorCode
from cordline.logging import get_logger, get_request_id

logger = get_logger(__name__)

# Framework-raised HTTP errors (unknown route, wrong method) mapped onto our codes.
_HTTP_STATUS_CODES = {
    400: ApiErrorCode.E_INVALID_REQUEST,
    401: ApiErrorCode.E_UNAUTHENTICATED,
    403: ApiErrorCode.E_FORBIDDEN,
    404: ApiErrorCode.E_NOT_FOUND,
    405: ApiErrorCode.E_INVALID_REQUEST,
    422: ApiErrorCode.E_INVALID_REQUEST,
}

_VALIDATION_LOCATIONS = {
    "body": "request body",
    "query": "query parameter",
    "path": "path parameter",
    "header": "header",
}


def success_response(data: Any) -> dict[str, Any]:
    return {"data": data}


def page_response(items: list[BaseModel], page: BaseModel) -> dict[str, Any]:
    """Envelope for a cursor-paginated list of schema objects."""
    return {
        "data": [item.model_dump(mode="json") for item in items],
        "page": page.model_dump(mode="json"),
    }


def error_response(
    code: ApiErrorCode, message: str, request_id: str | None = None
) -> dict[str, Any]:
    """Build an error envelope; request_id defaults to the one bound for this request."""
    request_id = request_id or get_request_id()
    error: dict[str, Any] = {"code": code.value, "message": message}
    if request_id:
        error["request_id"] = request_id
    return {"error": error}


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=error_response(exc.code, exc.message))


async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code = _HTTP_STATUS_CODES.get(exc.status_code, ApiErrorCode.E_INTERNAL)
    message = str(exc.detail) if exc.detail else "An error occurred"
    return JSONResponse(status_code=exc.status_code, content=error_response(code, message))


def describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    loc = errors[0].get("loc", ()) if errors else ()
    if not loc:
        return "Invalid request"

    where = _VALIDATION_LOCATIONS.get(loc[0], "request")
    # Integer parts are list indexes or JSON decode offsets.
    field = ".".join(part for part in loc[1:] if isinstance(part, str))
    return f"Invalid {where}: {field}" if field else f"Invalid {where}"


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Schema violations and malformed JSON bodies are 400, not FastAPI's 422.

    The message names where the first failure is, e.g.
    "Invalid query parameter: limit" or "Invalid request body: text".
    """
    return JSONResponse(
        status_code=400,
        content=error_response(ApiErrorCode.E_INVALID_REQUEST, describe_validation_error(exc)),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """500 E_INTERNAL for anything unexpected; the detail stays in the server log.

    By the time this runs the failed operation's transaction has been rolled back.
    """
    logger.exception("unhandled_exception", error_type=type(exc).__name__)
    return JSONResponse(
        status_code=500,
        content=error_response(ApiErrorCode.E_INTERNAL, "Internal server error"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
