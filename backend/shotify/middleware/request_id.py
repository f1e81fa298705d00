"""
Shotify Backend — Request ID Middleware
=========================================

What:  Assigns a correlation ID to each request and echoes it in the response.
How:   Honours an incoming X-Request-ID header, otherwise generates a short
       UUID prefix, and stores it in a ContextVar for loggers and exception
       handlers. Written against raw ASGI so the app keeps the server's own
       `receive` channel, which the image relay watches for disconnects.
When:  Outermost middleware, so every later log line can read the ID.
"""

import uuid
from contextvars import ContextVar

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

REQUEST_ID_HEADER = "X-Request-ID"

# Coroutine-local: concurrent requests on one event loop each see their own ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIDMiddleware:
    """Tags each HTTP request with an ID for log correlation."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        rid = Headers(scope=scope).get(REQUEST_ID_HEADER) or str(uuid.uuid4())[:8]

        async def send_with_request_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message).append(REQUEST_ID_HEADER, rid)
            await send(message)

        token = request_id_var.set(rid)
        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            request_id_var.reset(token)
