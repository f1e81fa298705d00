"""
Shotify Backend — Health Check Route
======================================

What:  Health check endpoint for monitoring and load balancer probes.
How:   Pings MongoDB and HEADs the S3 bucket, then reports an aggregate status.
Who:   Called by Docker health checks, load balancers, and monitoring systems.

Status levels:
    - healthy:   database and storage reachable (HTTP 200)
    - degraded:  storage unreachable; the relay still works (HTTP 200)
    - unhealthy: database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from shotify import __version__
from shotify.database import MongoDatabase, get_database
from shotify.exceptions import StorageError
from shotify.schemas.responses import HealthResponse
from shotify.storage import S3Storage, get_storage

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"description": "Database unreachable", "model": HealthResponse}},
    summary="Service health check",
)
async def health_check(
    request: Request,
    db: MongoDatabase = Depends(get_database),
    storage: S3Storage = Depends(get_storage),
):
    overall = "healthy"
    detail = None

    db_status = "connected"
    if not await db.ping():
        db_status = "disconnected"
        overall = "unhealthy"
        detail = "database unreachable"

    if not storage.is_configured:
        storage_status = "not_configured"
    else:
        storage_status = "available"
        try:
            await storage.check()
        except StorageError as e:
            storage_status = "unavailable"
            if overall == "healthy":
                overall = "degraded"
                detail = "storage unreachable"
            logger.warning("Health check: storage unreachable: %s", e.context.get("error"))

    body = HealthResponse(
        status=overall,
        version=__version__,
        environment=request.app.state.settings.environment,
        database=db_status,
        storage=storage_status,
        uptime_seconds=round(time.time() - _start_time, 2),
        detail=detail,
    )
    status_code = 503 if overall == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=body.model_dump())
