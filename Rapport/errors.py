import logging
from typing import Any, Mapping, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from Rapport.request_context import REQUEST_ID_HEADER, get_request_id

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    400: "bad_request",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    413: "payload_too_large",
    429: "rate_limit_exceeded",
}


class ApiError(HTTPException):
    """HTTP error with a stable machine-readable ``code``.

    Rendered as ``{"error": code, "message": message, "requestId": id}``.
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(status_code=status_code, detail=message, headers=dict(headers) if headers else None)
        self.code = code
        self.message = message


def unauthorized(message: str = "Authentication required.") -> ApiError:
    return ApiError(401, "unauthorized", message)


def forbidden(message: str) -> ApiError:
    return ApiError(403, "forbidden", message)


def not_found(message: str) -> ApiError:
    return ApiError(404, "not_found", message)


def error_payload(request: Request, code: str, message: str) -> dict[str, Any]:
    return {"error": code, "message": message, "requestId": get_request_id(request)}


def _json_error(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    headers: Optional[Mapping[str, str]] = None,
) -> JSONResponse:
    out_headers = dict(headers or {})
    out_headers[REQUEST_ID_HEADER] = get_request_id(request)
    return JSONResponse(status_code=status_code, content=error_payload(request, code, message), headers=out_headers)


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return _json_error(request, exc.status_code, exc.code, exc.message, exc.headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _STATUS_CODES.get(exc.status_code, "http_error")
    message = exc.detail if isinstance(exc.detail, str) else "Request failed."
    if exc.status_code == 404 and message == "Not Found":
        message = f"Route not found: {request.method} {request.url.path}"
    return _json_error(request, exc.status_code, code, message, getattr(exc, "headers", None))


# Flattens pydantic errors into "field.path: message; ..." (client errors, no side effects)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    parts = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        parts.append(f"{'.'.join(loc)}: {err.get('msg', 'invalid value')}")
    return _json_error(request, 400, "validation_error", "; ".join(parts) or "Invalid request body.")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request.unhandled_error: %s %s", request.method, request.url.path)
    return _json_error(request, 500, "internal_error", "An unexpected error occurred.")


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
