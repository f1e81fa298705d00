"""
Shotify Backend — Custom Exception Hierarchy
==============================================

What:  Application-specific exceptions for each failure class of the service.
How:   Each exception carries a client-facing message, an HTTP status code, an
       optional `payload` merged into the JSON body, and a `context` dict that
       is logged but never returned. Global handlers in main.py render them as
       `{"error": <message>, **payload}`.
Who:   Raised by the image relay, the database/storage wrappers, and routes.
When:  During request processing, or during startup for the fatal classes.

Exception Hierarchy:
    ShotifyError (base)                 → 500
    ├── ValidationError                 → 400 Bad Request
    ├── HostNotAllowedError             → 403 Forbidden (allow-list only)
    ├── UpstreamFetchError              → 502 Bad Gateway
    ├── UpstreamStatusError             → <upstream status>
    ├── ClientDisconnectedError         → 499 (caller already gone)
    ├── DatabaseError                   → 500 / fatal at startup
    └── StorageError                    → 500 / fatal at startup
"""

from typing import Any, Dict, Optional


class ShotifyError(Exception):
    """
    Base exception for all Shotify application errors.

    Attributes:
        message:      Client-facing error description (the "error" field)
        status_code:  HTTP status the global handler responds with
        payload:      Extra fields merged into the JSON response body
        context:      Debug info for logs only
    """

    status_code: int = 500

    def __init__(
        self,
        message: str = "internal server error",
        context: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        self.payload = payload or {}
        super().__init__(self.message)

    def to_response_body(self) -> Dict[str, Any]:
        """JSON body for the API response: the error message plus any payload."""
        return {"error": self.message, **self.payload}


class ValidationError(ShotifyError):
    """
    Raised when the caller's input cannot be used.

    When:    Missing `url` parameter, unparseable or non-http(s) URL,
             or an upstream resource that is not an image.
    HTTP:    400 Bad Request
    """

    status_code = 400

    def __init__(
        self,
        message: str = "invalid request",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class HostNotAllowedError(ShotifyError):
    """
    Raised when an upstream host is outside the configured allow-list.

    Only reachable when PROXY_ALLOWED_HOSTS is non-empty.
    HTTP:    403 Forbidden
    """

    status_code = 403

    def __init__(self, host: str, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["host"] = host
        super().__init__(message="URL not allowed", context=ctx)
        self.host = host


class UpstreamFetchError(ShotifyError):
    """
    Raised when the outbound fetch fails at the transport level.

    When:    DNS failure, connection refused, TLS error, timeout.
    HTTP:    502 Bad Gateway. No automatic retry; the caller decides.
    """

    status_code = 502

    def __init__(
        self,
        message: str = "failed to fetch image",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class UpstreamStatusError(ShotifyError):
    """
    Raised when the upstream server answers with a non-2xx status.

    HTTP:    The upstream status itself, with `"status": <code>` in the body.
    """

    def __init__(self, upstream_status: int, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message="upstream returned error",
            context=context,
            payload={"status": upstream_status},
        )
        self.upstream_status = upstream_status
        self.status_code = upstream_status


class ClientDisconnectedError(ShotifyError):
    """
    Raised when the caller disconnects while the upstream fetch is pending.

    The outbound request has already been cancelled when this is raised.
    HTTP:    499 (nginx convention); the caller never sees it.
    """

    status_code = 499

    def __init__(self, context: Optional[Dict[str, Any]] = None):
        super().__init__(message="client closed request", context=context)


class DatabaseError(ShotifyError):
    """
    Raised when MongoDB cannot be reached.

    At startup this is fatal: the lifespan logs it and re-raises so the
    server process exits. At runtime it only marks /health as unhealthy.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class StorageError(ShotifyError):
    """
    Raised when the S3 client cannot be constructed or the bucket is unreachable.

    Fatal at startup (client construction); degrades /health at runtime.
    """

    def __init__(
        self,
        message: str = "Object storage is unavailable.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
