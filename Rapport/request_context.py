import logging
import uuid
from contextvars import ContextVar
from typing import Optional

from starlette.datastructures import Headers, MutableHeaders
from starlette.requests import Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

REQUEST_ID_HEADER = "x-request-id"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def _normalize_request_id(incoming: Optional[str]) -> str:
    if incoming and incoming.strip():
        return incoming.strip()
    return str(uuid.uuid4())


class RequestIdMiddleware:
    """Assigns every HTTP request a correlation id.

    The id is taken from the client's ``X-Request-Id`` header when present,
    stored on ``request.state.request_id`` and in ``request_id_var`` for log
    records, and echoed back on the response headers. Implemented as a plain
    ASGI middleware so streaming responses pass through untouched.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = _normalize_request_id(Headers(scope=scope).get(REQUEST_ID_HEADER))
        scope.setdefault("state", {})["request_id"] = request_id
        token = request_id_var.set(request_id)

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = MutableHeaders(scope=message)
                if REQUEST_ID_HEADER not in headers:
                    headers.append(REQUEST_ID_HEADER, request_id)
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            request_id_var.reset(token)


# Adds `request_id` to every log record so the formatter can include it
class RequestIdLogFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get() or "-"
        return True


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return request_id_var.get() or "-"
