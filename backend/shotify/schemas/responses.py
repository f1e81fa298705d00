"""
Shotify Backend — Pydantic Response Schemas
=============================================

What:  Models describing the JSON bodies the API returns.
How:   Used as `response_model` / `responses` entries so FastAPI renders them
       in the OpenAPI document. Error bodies are produced by the global
       exception handlers and match these shapes exactly.
"""

from typing import Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Error body for every non-2xx response.

    Examples:
        {"error": "url parameter is required"}
        {"error": "failed to fetch image"}
        {"error": "upstream returned error", "status": 404}
    """

    error: str = Field(description="Human-readable error description")


class UpstreamErrorResponse(ErrorResponse):
    """Error body when the upstream server answered with a non-2xx status."""

    status: int = Field(description="Status code returned by the upstream server")


class HealthResponse(BaseModel):
    """
    What:  Aggregate health of the service and its dependencies.
    Who:   Returned by GET /health for container probes and load balancers.
    """

    status: str = Field(description="Overall status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    environment: str = Field(description="Deployment environment name")
    database: str = Field(description="MongoDB connectivity: connected, disconnected")
    storage: str = Field(
        description="S3 bucket reachability: available, unavailable, not_configured"
    )
    uptime_seconds: float = Field(description="Seconds since the process started")
    detail: Optional[str] = Field(default=None, description="Reason for a non-healthy status")
