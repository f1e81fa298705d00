"""
Shotify Backend — Image Proxy Route
=====================================

What:  GET {API_PREFIX}/proxy-image?url=<percent-encoded absolute URL>
How:   Parses the target URL, asks the ImageRelay to fetch it, and streams
       the upstream body back with CORS and one-year cache headers.
Who:   Called by the frontend's getProxyImageUrl() for every remote image
       rendered inside the editor canvas.

Responses:
    200  upstream image bytes, upstream Content-Type
    400  {"error": ...} missing/invalid URL, or upstream is not an image
    403  {"error": "URL not allowed"} (only with PROXY_ALLOWED_HOSTS)
    502  {"error": "failed to fetch image"}
    xxx  {"error": "upstream returned error", "status": xxx}

Errors are raised as ShotifyError subclasses and rendered by the global
handlers registered in main.py.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response, StreamingResponse
from starlette.background import BackgroundTask

from shotify.schemas.responses import ErrorResponse, UpstreamErrorResponse
from shotify.services.image_relay import (
    CACHE_CONTROL,
    CORS_HEADERS,
    ImageRelay,
    get_image_relay,
    parse_target_url,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Image Proxy"])


@router.get(
    "/proxy-image",
    response_class=StreamingResponse,
    responses={
        200: {"description": "Upstream image bytes", "content": {"image/*": {}}},
        400: {"description": "Missing/invalid URL or non-image upstream", "model": ErrorResponse},
        403: {"description": "Host not in the allow-list", "model": ErrorResponse},
        502: {"description": "Upstream could not be reached", "model": ErrorResponse},
        "4XX": {"description": "Upstream error status, forwarded", "model": UpstreamErrorResponse},
        "5XX": {"description": "Upstream error status, forwarded", "model": UpstreamErrorResponse},
    },
    summary="Relay a remote image",
    description=(
        "Fetches the image at `url` server-side and streams it back with permissive "
        "CORS headers and a one-year public cache directive."
    ),
)
async def proxy_image(
    request: Request,
    url: Optional[str] = Query(
        default=None,
        description="Percent-encoded absolute http(s) URL of the image",
    ),
    relay: ImageRelay = Depends(get_image_relay),
) -> StreamingResponse:
    target = parse_target_url(url)
    image = await relay.fetch(target, receive=request.receive)

    headers = dict(CORS_HEADERS)
    headers["Cache-Control"] = CACHE_CONTROL
    return StreamingResponse(
        image.iter_bytes(),
        status_code=200,
        media_type=image.content_type,
        headers=headers,
        # Releases the upstream response even if the body is never iterated
        background=BackgroundTask(image.aclose),
    )


@router.options(
    "/proxy-image",
    status_code=204,
    summary="CORS preflight for the image relay",
)
async def proxy_image_preflight() -> Response:
    return Response(status_code=204, headers=CORS_HEADERS)
