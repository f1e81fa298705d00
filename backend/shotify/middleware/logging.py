"""
Shotify Backend — Request Logging Middleware
==============================================

What:  One access log line per HTTP request, written when the response body
       has been fully sent (or the exchange was cut short).
How:   Wraps the ASGI `send` channel to record the status and count body
       bytes, so a relayed image is timed to its last chunk rather than to
       its headers. Query strings are not logged: proxy URLs may carry signed
       credentials.
When:  Inside RequestIDMiddleware, so the correlation ID is already set.

Log level:
    aborted stream or 5xx → ERROR, 4xx → WARNING, everything else → INFO

"Aborted" means the app raised before the final body chunk went out, e.g.
the upstream image stalled or failed mid-transfer.
"""

import logging
import time

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from shotify.middleware.request_id import request_id_var

logger = logging.getLogger("shotify.access")


class RequestLoggingMiddleware:
    """Logs status, size and full-transfer duration of each HTTP request."""

    # Probed every few seconds by orchestrators
    SKIPPED_PATHS = {"/health"}

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"] in self.SKIPPED_PATHS:
            await self.app(scope, receive, send)
            return

        start_time = time.perf_counter()
        # No response started means the app crashed; ServerErrorMiddleware answers 500
        status = 500
        body_bytes = 0
        completed = False

        async def send_and_record(message: Message) -> None:
            nonlocal status, body_bytes, completed
            if message["type"] == "http.response.start":
                status = message["status"]
            elif message["type"] == "http.response.body":
                body_bytes += len(message.get("body", b""))
                if not message.get("more_body", False):
                    completed = True
            await send(message)

        try:
            await self.app(scope, receive, send_and_record)
        finally:
            self._log(scope, status, body_bytes, completed, start_time)

    @staticmethod
    def _log(
        scope: Scope, status: int, body_bytes: int, completed: bool, start_time: float
    ) -> None:
        duration_ms = (time.perf_counter() - start_time) * 1000
        client = scope.get("client")
        client_ip = client[0] if client else "unknown"
        method = scope["method"]
        path = scope["path"]
        rid = request_id_var.get("")

        if not completed or status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        logger.log(
            log_level,
            "%s %s %d %dB %.1fms%s [%s] from %s",
            method,
            path,
            status,
            body_bytes,
            duration_ms,
            "" if completed else " (aborted)",
            rid,
            client_ip,
            extra={
                "request_id": rid,
                "method": method,
                "path": path,
                "status": status,
                "body_bytes": body_bytes,
                "completed": completed,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
