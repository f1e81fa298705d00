"""
Shotify Backend — Test Configuration (conftest.py)
====================================================

What:  Shared pytest fixtures for the entire test suite.
How:   The upstream image server is an httpx.MockTransport handler, so no
       test touches the network. Apps are built with create_app() and their
       app.state is filled in directly; ASGITransport does not run the
       lifespan, so no MongoDB or S3 is needed.

Fixture Hierarchy:
    ├── test_settings:    Settings instance with test-friendly values
    ├── upstream:         Recording fake upstream (handler + received requests)
    ├── image_relay:      ImageRelay bound to the fake upstream
    ├── mock_db:          MongoDatabase stand-in with an async ping()
    ├── mock_storage:     S3Storage stand-in with an async check()
    ├── app:              FastAPI app with the above on app.state
    ├── test_client:      HTTPX AsyncClient talking to `app` over ASGI
    ├── (ASGICaller):     raw ASGI driver for disconnect scenarios
    └── sample_png_bytes: Small PNG payload
"""

import asyncio
import os
from typing import Callable, List, Optional
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set before any shotify import so the module-level settings pick them up
os.environ["ENVIRONMENT"] = "test"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["MONGO_URI"] = "mongodb://localhost:27017"
os.environ["DATABASE_NAME"] = "shotify_test"
os.environ["S3_BUCKET"] = "shotify-test-bucket"
os.environ["AWS_REGION"] = "us-east-1"

from shotify.config import Settings  # noqa: E402
from shotify.main import create_app  # noqa: E402
from shotify.services.image_relay import ImageRelay  # noqa: E402


# ══════════════════════════════════════════════════════════════════════════
# Fake upstream
# ══════════════════════════════════════════════════════════════════════════

class TrackingStream(httpx.AsyncByteStream):
    """Upstream body that records whether it was closed and how far it was read."""

    def __init__(
        self,
        chunks: List[bytes],
        fail_after: Optional[int] = None,
        stall_after: Optional[int] = None,
    ):
        self.chunks = chunks
        self.fail_after = fail_after
        self.stall_after = stall_after
        self.closed = False
        self.chunks_read = 0

    async def __aiter__(self):
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index >= self.fail_after:
                raise httpx.ReadError("connection reset by upstream")
            if self.stall_after is not None and index >= self.stall_after:
                await asyncio.sleep(60)
            self.chunks_read += 1
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


class FakeUpstream:
    """
    Configurable upstream server.

    Usage:
        upstream.respond(200, b"...", content_type="image/png")
        upstream.fail(httpx.ConnectError("refused"))
        upstream.delay(5.0)
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.streams: List[TrackingStream] = []
        self.cancelled = False
        self._status = 200
        self._chunks: List[bytes] = [b""]
        self._headers = {"content-type": "image/png"}
        self._error: Optional[Exception] = None
        self._delay = 0.0
        self._fail_after: Optional[int] = None
        self._stall_after: Optional[int] = None

    def respond(
        self,
        status: int = 200,
        body: bytes = b"",
        content_type: Optional[str] = "image/png",
        chunk_size: int = 4,
        headers: Optional[dict] = None,
        fail_after: Optional[int] = None,
        stall_after: Optional[int] = None,
    ) -> None:
        self._status = status
        self._chunks = [body[i:i + chunk_size] for i in range(0, len(body), chunk_size)] or [b""]
        self._headers = dict(headers or {})
        if content_type is not None:
            self._headers["content-type"] = content_type
        self._fail_after = fail_after
        self._stall_after = stall_after

    def fail(self, error: Exception) -> None:
        self._error = error

    def delay(self, seconds: float) -> None:
        self._delay = seconds

    @property
    def last_stream(self) -> TrackingStream:
        return self.streams[-1]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._delay:
            try:
                await asyncio.sleep(self._delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self._error is not None:
            raise self._error
        stream = TrackingStream(
            self._chunks, fail_after=self._fail_after, stall_after=self._stall_after
        )
        self.streams.append(stream)
        return httpx.Response(self._status, headers=self._headers, stream=stream)


# ══════════════════════════════════════════════════════════════════════════
# Raw ASGI caller
# ══════════════════════════════════════════════════════════════════════════

class ASGICaller:
    """
    Drives an ASGI app directly, the way uvicorn does.

    `receive` hands out the (empty) request body, then reports
    `http.disconnect` `disconnect_after` seconds later; with None the caller
    stays connected. Once disconnected, every later receive returns at once.

    Usage:
        caller = ASGICaller(disconnect_after=0.05)
        await caller.get(app, "/api/proxy-image", b"url=...")
        caller.status  →  499
    """

    def __init__(self, disconnect_after: Optional[float] = None):
        self.disconnect_after = disconnect_after
        self.messages: List[dict] = []
        self._body_sent = False
        self._disconnected = False

    @property
    def status(self) -> Optional[int]:
        for message in self.messages:
            if message["type"] == "http.response.start":
                return message["status"]
        return None

    @property
    def headers(self) -> httpx.Headers:
        for message in self.messages:
            if message["type"] == "http.response.start":
                return httpx.Headers(message["headers"])
        return httpx.Headers()

    async def receive(self) -> dict:
        if not self._body_sent:
            self._body_sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        if not self._disconnected:
            if self.disconnect_after is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(self.disconnect_after)
            self._disconnected = True
        return {"type": "http.disconnect"}

    async def send(self, message: dict) -> None:
        self.messages.append(message)

    async def get(self, app, path: str, query_string: bytes = b"") -> None:
        scope = {
            "type": "http",
            "asgi": {"version": "3.0", "spec_version": "2.4"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "query_string": query_string,
            "headers": [(b"host", b"test")],
            "client": ("127.0.0.1", 50000),
            "server": ("test", 80),
        }
        await app(scope, self.receive, self.send)


# ══════════════════════════════════════════════════════════════════════════
# Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        environment="test",
        log_level="WARNING",
        api_prefix="/api",
        proxy_timeout_seconds=5.0,
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def make_relay(upstream) -> Callable[..., ImageRelay]:
    """Factory for relays bound to the fake upstream; extra kwargs go to ImageRelay."""

    def _make(timeout: float = 5.0, **kwargs) -> ImageRelay:
        client = ImageRelay.build_client(
            timeout=timeout,
            transport=httpx.MockTransport(upstream.handler),
        )
        return ImageRelay(client=client, timeout=timeout, **kwargs)

    return _make


@pytest.fixture
def image_relay(make_relay) -> ImageRelay:
    return make_relay()


@pytest.fixture
def mock_db():
    db = MagicMock()
    db.ping = AsyncMock(return_value=True)
    db.close = AsyncMock()
    return db


@pytest.fixture
def mock_storage():
    storage = MagicMock()
    storage.is_configured = True
    storage.check = AsyncMock(return_value=None)
    return storage


@pytest.fixture
def app(test_settings, image_relay, mock_db, mock_storage):
    application = create_app(test_settings)
    application.state.image_relay = image_relay
    application.state.db = mock_db
    application.state.storage = mock_storage
    return application


@pytest_asyncio.fixture
async def test_client(app):
    """
    HTTPX AsyncClient routed straight into the app.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def asgi_caller() -> Callable[..., ASGICaller]:
    """Factory for raw ASGI callers: asgi_caller(disconnect_after=0.05)."""
    return ASGICaller


@pytest.fixture
def sample_png_bytes() -> bytes:
    """PNG signature + IHDR chunk of a 1x1 image, enough to look like a PNG."""
    return (
        b"\x89PNG\r\n\x1a\n"
        b"\x00\x00\x00\rIHDR\x00\x00\x00\x01\x00\x00\x00\x01\x08\x06\x00\x00\x00"
        b"\x1f\x15\xc4\x89"
        b"\x00\x00\x00\x00IEND\xaeB`\x82"
    )
