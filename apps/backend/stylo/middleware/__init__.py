from __future__ import annotations

import re
import uuid

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from structlog import contextvars as structlog_contextvars

__all__ = ["RequestIDMiddleware"]

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{8,64}$")


class RequestIDMiddleware:
    """Assign a request ID to each incoming request and expose it in headers.

    - Reuses a well-formed incoming `X-Request-ID`, otherwise generates one
    - Sets `request.state.request_id` and binds it to the structlog context
    - Adds `X-Request-ID` to the response headers

    素の ASGI ミドルウェアとして実装し、`receive` をそのまま下流へ渡す
    （ルート側がクライアント切断 `http.disconnect` を検知できるようにするため）。
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        incoming = (Headers(scope=scope).get("x-request-id") or "").strip()
        request_id = incoming if _REQUEST_ID_RE.match(incoming) else str(uuid.uuid4())
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)["X-Request-ID"] = request_id
            await send(message)

        structlog_contextvars.bind_contextvars(request_id=request_id)
        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            structlog_contextvars.unbind_contextvars("request_id")
