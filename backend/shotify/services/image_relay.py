"""
Shotify Backend — Image Relay Service
=======================================

What:  Fetches a caller-supplied image URL server-side and hands back a
       streaming view of the upstream body.
How:   A single linear sequence with early exits:
           parse_target_url()  → 400 on missing/invalid URL
           allow-list check    → 403 (only when configured)
           upstream send       → 502 on transport failure or timeout
           status check        → upstream status on non-2xx
           content-type check  → 400 when not image/*
           RelayedImage        → streamed back by the route
Who:   Used by routes/proxy.py. The shared httpx.AsyncClient is injected by
       the application lifespan; the relay never builds clients per request.
When:  Once per GET /api/proxy-image.

Resource Rules:
    - The upstream response is opened with stream=True so the body is never
      buffered whole.
    - Every exit path after the send closes the upstream response: error
      paths close it before raising, the success path closes it when the
      body iterator finishes, fails, or is cancelled.
    - One deadline (proxy_timeout_seconds) covers the send and every body
      read, mirroring a whole-exchange client timeout.
    - A caller disconnect (http.disconnect on the ASGI receive channel)
      while the send is pending cancels the send.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Iterable, Optional
from urllib.parse import unquote_to_bytes, urlsplit

import httpx
from fastapi import Request
from starlette.types import Receive

from shotify.exceptions import (
    ClientDisconnectedError,
    HostNotAllowedError,
    UpstreamFetchError,
    UpstreamStatusError,
    ValidationError,
)

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = frozenset({"http", "https"})

CACHE_CONTROL = "public, max-age=31536000"

CORS_HEADERS: Dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

# A '%' not followed by two hex digits
_MALFORMED_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")

# Bytes that are not UTF-8 decode to lone surrogates under surrogateescape
_UNDECODABLE_BYTE = re.compile("[\udc80-\udcff]")


# ══════════════════════════════════════════════════════════════════════════
# Target URL parsing
# ══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TargetURL:
    """A validated, absolute http(s) URL ready to be fetched."""

    url: str
    scheme: str
    host: str


def query_unescape(value: str) -> str:
    """
    Decode a form-encoded string: '+' becomes a space, '%XX' becomes a byte.

    Decoded bytes that do not form UTF-8 are kept as '%XX' escapes, so they
    reach the upstream unchanged instead of failing the decode.

    Raises:
        ValueError: '%' not followed by two hex digits.
    """
    if _MALFORMED_ESCAPE.search(value):
        raise ValueError(f"invalid URL escape in {value!r}")
    decoded = unquote_to_bytes(value.replace("+", " ")).decode("utf-8", "surrogateescape")
    return _UNDECODABLE_BYTE.sub(
        lambda match: "%{:02X}".format(ord(match.group()) - 0xDC00), decoded
    )


def parse_target_url(raw: Optional[str]) -> TargetURL:
    """
    Turn the raw `url` query value into a TargetURL.

    The value is percent-decoded once more on a best-effort basis: if
    decoding fails the raw value is used as-is instead of rejecting the
    request.

    Raises:
        ValidationError: missing value, unparseable URL, no host, or a
                         scheme other than http/https.
    """
    if not raw:
        raise ValidationError(message="url parameter is required", field="url")

    try:
        decoded = query_unescape(raw)
    except ValueError:
        decoded = raw

    try:
        parts = urlsplit(decoded)
        host = parts.hostname
        # Accessing .port validates it (non-numeric or out of range raises)
        parts.port
    except ValueError as e:
        raise ValidationError(
            message="invalid URL", field="url", context={"error": str(e)}
        ) from e

    if parts.scheme not in ALLOWED_SCHEMES or not host:
        raise ValidationError(
            message="invalid URL",
            field="url",
            context={"scheme": parts.scheme, "has_host": bool(host)},
        )

    return TargetURL(url=decoded, scheme=parts.scheme, host=host)


# ══════════════════════════════════════════════════════════════════════════
# Upstream body
# ══════════════════════════════════════════════════════════════════════════

class RelayedImage:
    """
    An accepted upstream image response whose body has not been read yet.

    The route streams `iter_bytes()` to the caller. `aclose()` is idempotent
    and is also registered as a background task, so a response that is never
    iterated is still released.
    """

    def __init__(self, response: httpx.Response, target: TargetURL, deadline: float):
        self._response = response
        self._deadline = deadline
        self.target = target

    @property
    def content_type(self) -> str:
        return self._response.headers.get("content-type", "")

    @property
    def content_length(self) -> Optional[int]:
        """Upstream Content-Length hint. Informational only, never forwarded."""
        raw = self._response.headers.get("content-length")
        if raw is None:
            return None
        try:
            length = int(raw)
        except ValueError:
            return None
        return length if length > 0 else None

    @property
    def is_closed(self) -> bool:
        return self._response.is_closed

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """
        Yield the upstream body chunk by chunk, as received.

        A read that overruns the deadline or fails at the transport level
        raises, so the server aborts the connection instead of ending a
        truncated body cleanly.
        """
        chunks = self._response.aiter_bytes()
        relayed = 0
        try:
            while True:
                try:
                    async with asyncio.timeout_at(self._deadline):
                        chunk = await anext(chunks)
                except StopAsyncIteration:
                    break
                except TimeoutError as e:
                    logger.warning(
                        "Upstream body from %s timed out after %d bytes",
                        self.target.host,
                        relayed,
                    )
                    raise UpstreamFetchError(
                        context={"host": self.target.host, "reason": "timeout", "bytes": relayed}
                    ) from e
                except httpx.HTTPError as e:
                    logger.warning(
                        "Upstream body from %s failed after %d bytes: %s",
                        self.target.host,
                        relayed,
                        str(e),
                    )
                    raise UpstreamFetchError(
                        context={"host": self.target.host, "error": str(e), "bytes": relayed}
                    ) from e
                relayed += len(chunk)
                yield chunk
        finally:
            await self.aclose()
            logger.debug("Relayed %d bytes from %s", relayed, self.target.host)

    async def aclose(self) -> None:
        if not self._response.is_closed:
            await self._response.aclose()


# ══════════════════════════════════════════════════════════════════════════
# Relay
# ══════════════════════════════════════════════════════════════════════════

class ImageRelay:
    """
    Fetches validated target URLs through a shared outbound client.

    Args:
        client:           Shared httpx.AsyncClient (connection pool).
        timeout:          Total seconds for send + body reads.
        allowed_hosts:    Upstream hostnames permitted; empty means any.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = 30.0,
        allowed_hosts: Iterable[str] = (),
    ):
        self._client = client
        self.timeout = timeout
        self.allowed_hosts = frozenset(host.lower() for host in allowed_hosts)

    @staticmethod
    def build_client(
        timeout: float = 30.0,
        user_agent: str = "Shotify-Proxy/1.0",
        max_connections: int = 100,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> httpx.AsyncClient:
        """Construct the process-wide outbound client used by the relay."""
        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(max_connections=max_connections),
            follow_redirects=True,
            headers={"User-Agent": user_agent},
            transport=transport,
        )

    def check_host_allowed(self, target: TargetURL) -> None:
        if self.allowed_hosts and target.host.lower() not in self.allowed_hosts:
            raise HostNotAllowedError(host=target.host)

    async def fetch(
        self,
        target: TargetURL,
        receive: Optional[Receive] = None,
    ) -> RelayedImage:
        """
        Fetch `target` and validate the upstream response.

        Args:
            target:  Output of parse_target_url().
            receive: The inbound request's ASGI receive channel. While the
                     send is pending it is watched for `http.disconnect`.

        Returns:
            RelayedImage with an unread body. The caller must stream or close it.

        Raises:
            HostNotAllowedError, UpstreamFetchError, ClientDisconnectedError,
            UpstreamStatusError, ValidationError.
        """
        self.check_host_allowed(target)

        try:
            request = self._client.build_request("GET", target.url)
        except httpx.InvalidURL as e:
            raise ValidationError(
                message="invalid URL", field="url", context={"error": str(e)}
            ) from e

        deadline = asyncio.get_running_loop().time() + self.timeout
        response = await self._send(request, target, deadline, receive)

        if not response.is_success:
            await response.aclose()
            logger.info("Upstream %s returned %d", target.host, response.status_code)
            raise UpstreamStatusError(
                upstream_status=response.status_code,
                context={"host": target.host},
            )

        image = RelayedImage(response, target, deadline)
        if not image.content_type.startswith("image/"):
            await image.aclose()
            raise ValidationError(
                message="URL does not point to an image",
                context={"host": target.host, "content_type": image.content_type},
            )

        logger.info(
            "Relaying %s from %s (content-length hint: %s)",
            image.content_type,
            target.host,
            image.content_length if image.content_length is not None else "none",
        )
        return image

    async def _send(
        self,
        request: httpx.Request,
        target: TargetURL,
        deadline: float,
        receive: Optional[Receive],
    ) -> httpx.Response:
        """
        Send the request, racing it against the deadline and caller disconnect.

        Whichever finishes first wins; a losing send is cancelled and awaited
        so its connection goes back to the pool.
        """
        remaining = deadline - asyncio.get_running_loop().time()
        send_task = asyncio.create_task(
            self._client.send(
                request,
                stream=True,
                # Redirects could leave the allow-list, so they are not followed
                follow_redirects=not self.allowed_hosts,
            )
        )
        watch_task = (
            asyncio.create_task(wait_for_disconnect(receive))
            if receive is not None
            else None
        )
        waiting = {send_task} if watch_task is None else {send_task, watch_task}

        try:
            done, _ = await asyncio.wait(
                waiting, timeout=max(remaining, 0), return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            send_task.cancel()
            raise
        finally:
            if watch_task is not None:
                watch_task.cancel()

        if send_task in done:
            try:
                return send_task.result()
            except httpx.RequestError as e:
                logger.warning(
                    "Upstream fetch from %s failed: %s: %s",
                    target.host,
                    type(e).__name__,
                    str(e),
                )
                raise UpstreamFetchError(
                    context={"host": target.host, "error_type": type(e).__name__}
                ) from e

        send_task.cancel()
        (outcome,) = await asyncio.gather(send_task, return_exceptions=True)
        if isinstance(outcome, httpx.Response):
            # Completed between the wait returning and the cancel
            await outcome.aclose()

        if watch_task is not None and watch_task in done:
            logger.info("Caller disconnected; cancelled upstream fetch from %s", target.host)
            raise ClientDisconnectedError(context={"host": target.host})

        logger.warning("Upstream fetch from %s timed out after %.1fs", target.host, self.timeout)
        raise UpstreamFetchError(context={"host": target.host, "reason": "timeout"})


async def wait_for_disconnect(receive: Receive) -> None:
    """
    Return once the ASGI server reports that the caller went away.

    Request body messages are consumed and dropped; the relay only serves GET.
    """
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            return


def get_image_relay(request: Request) -> ImageRelay:
    """FastAPI dependency: the ImageRelay built by the lifespan."""
    return request.app.state.image_relay
