"""
Shotify Backend — FastAPI Application Factory
===============================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() returns a configured FastAPI instance;
       the lifespan builds the shared clients and stores them on app.state.
Who:   Called by uvicorn (`shotify.main:app`) and by `python -m shotify`.
When:  Once at server startup; the returned app handles all subsequent requests.

Application Architecture:
    ┌──────────────────────────────────────────────────────┐
    │                    FastAPI App                       │
    │                                                      │
    │  Middleware Chain:                                   │
    │  ┌──────────────┐ ┌─────────────────┐                │
    │  │  Request ID  │→│  Logging        │                │
    │  └──────────────┘ └─────────────────┘                │
    │                                                      │
    │  Routes:                                             │
    │  ┌───────────────────────────┐ ┌─────────────────┐   │
    │  │ GET/OPTIONS /proxy-image  │ │ GET /health     │   │
    │  └───────────────────────────┘ └─────────────────┘   │
    │                                                      │
    │  app.state:                                          │
    │  ┌──────────┐ ┌──────────┐ ┌───────────┐ ┌───────┐   │
    │  │ settings │ │ db       │ │ storage   │ │ relay │   │
    │  └──────────┘ └──────────┘ └───────────┘ └───────┘   │
    └──────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging
    2. Validate production configuration (errors are logged)
    3. Connect MongoDB        (fatal on failure)
    4. Build the S3 client    (fatal on failure)
    5. Build the shared outbound HTTP client and the ImageRelay

    Shutdown:
    1. Close the outbound HTTP client
    2. Close the MongoDB client
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from shotify import __version__
from shotify.config import Settings, settings as default_settings
from shotify.database import MongoDatabase
from shotify.exceptions import (
    ClientDisconnectedError,
    DatabaseError,
    ShotifyError,
    StorageError,
    UpstreamFetchError,
    UpstreamStatusError,
    ValidationError,
)
from shotify.middleware.logging import RequestLoggingMiddleware
from shotify.middleware.request_id import RequestIDMiddleware, request_id_var
from shotify.routes import health, proxy
from shotify.services.image_relay import ImageRelay
from shotify.storage import S3Storage

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure logging for the entire application.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    Output: stdout (captured by the container runtime)
    """
    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Third-party libraries that log every connection or request at INFO/DEBUG
    for noisy in ("uvicorn.access", "httpx", "httpcore", "pymongo", "botocore", "boto3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Build the process-wide clients on startup and release them on shutdown.

    DatabaseError and StorageError raised here are fatal: they are logged at
    CRITICAL and re-raised, and uvicorn aborts startup and exits.
    """
    cfg: Settings = app.state.settings

    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging(cfg.log_level)
    logger.info("=" * 60)
    logger.info("Shotify Backend starting up (environment=%s)...", cfg.environment)

    try:
        cfg.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))

    db: Optional[MongoDatabase] = None
    try:
        db = MongoDatabase(
            uri=cfg.mongo_uri,
            database_name=cfg.database_name,
            server_selection_timeout_ms=cfg.mongo_server_selection_timeout_ms,
            connect_attempts=cfg.mongo_connect_attempts,
        )
        await db.connect()
    except DatabaseError as e:
        logger.critical("Failed to connect to MongoDB: %s | Context: %s", e.message, e.context)
        if db is not None:
            await db.close()
        raise

    try:
        storage = S3Storage(
            bucket=cfg.s3_bucket,
            region=cfg.aws_region,
            access_key_id=cfg.aws_access_key_id,
            secret_access_key=cfg.aws_secret_access_key,
            endpoint_url=cfg.s3_endpoint_url,
        )
    except StorageError as e:
        logger.critical("Failed to initialize S3 client: %s | Context: %s", e.message, e.context)
        await db.close()
        raise

    http_client = ImageRelay.build_client(
        timeout=cfg.proxy_timeout_seconds,
        user_agent=cfg.proxy_user_agent,
        max_connections=cfg.proxy_max_connections,
    )
    app.state.db = db
    app.state.storage = storage
    app.state.http_client = http_client
    app.state.image_relay = ImageRelay(
        client=http_client,
        timeout=cfg.proxy_timeout_seconds,
        allowed_hosts=cfg.proxy_allowed_hosts_list,
    )

    if cfg.proxy_allowed_hosts_list:
        logger.info("Image relay restricted to hosts: %s", ", ".join(cfg.proxy_allowed_hosts_list))
    logger.info("Server ready at http://%s:%d", cfg.backend_host, cfg.backend_port)
    logger.info("=" * 60)

    try:
        yield
    finally:
        # ── Shutdown ──────────────────────────────────────────────────────
        logger.info("Shotify Backend shutting down...")
        await http_client.aclose()
        await db.close()
        logger.info("Server exited")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(exc: ShotifyError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_response_body())


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map exception types to HTTP responses.

    Every handler answers with `{"error": <message>, ...payload}`. The
    `context` of an exception is logged, never returned.

    Handler hierarchy:
        ValidationError          → 400
        HostNotAllowedError      → 403   (via ShotifyError)
        UpstreamFetchError       → 502
        UpstreamStatusError      → upstream status
        ClientDisconnectedError  → 499
        ShotifyError (base)      → exc.status_code
        Exception (fallback)     → 500
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        rid = request_id_var.get("")
        logger.warning("[%s] Validation error: %s | Context: %s", rid, exc.message, exc.context)
        return _error_response(exc)

    @app.exception_handler(UpstreamFetchError)
    async def handle_upstream_fetch_error(request: Request, exc: UpstreamFetchError):
        rid = request_id_var.get("")
        logger.warning("[%s] Upstream fetch failed | Context: %s", rid, exc.context)
        return _error_response(exc)

    @app.exception_handler(UpstreamStatusError)
    async def handle_upstream_status_error(request: Request, exc: UpstreamStatusError):
        rid = request_id_var.get("")
        logger.info(
            "[%s] Forwarding upstream status %d | Context: %s",
            rid,
            exc.upstream_status,
            exc.context,
        )
        return _error_response(exc)

    @app.exception_handler(ClientDisconnectedError)
    async def handle_client_disconnected(request: Request, exc: ClientDisconnectedError):
        rid = request_id_var.get("")
        logger.info("[%s] Client disconnected before the upstream answered", rid)
        return _error_response(exc)

    @app.exception_handler(ShotifyError)
    async def handle_shotify_error(request: Request, exc: ShotifyError):
        rid = request_id_var.get("")
        logger.warning(
            "[%s] %s: %s | Context: %s", rid, type(exc).__name__, exc.message, exc.context
        )
        return _error_response(exc)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        """Catch-all: the stack trace is logged server-side only."""
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return JSONResponse(status_code=500, content={"error": "internal server error"})


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        app_settings: Settings override (tests); defaults to the env-loaded singleton.

    Returns:
        Configured FastAPI instance. Shared clients are attached by the lifespan.
    """
    cfg = app_settings or default_settings

    app = FastAPI(
        title="Shotify API",
        description="Backend for the Shotify editor, including the server-side image relay.",
        version=__version__,
        docs_url=None if cfg.is_production else "/docs",
        redoc_url=None if cfg.is_production else "/redoc",
        openapi_url=None if cfg.is_production else "/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = cfg

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added executes first: RequestID → Logging → routes
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # ── Register Exception Handlers ───────────────────────────────────────
    register_exception_handlers(app)

    # ── Register Routes ───────────────────────────────────────────────────
    app.include_router(proxy.router, prefix=cfg.api_prefix)
    app.include_router(health.router)

    return app


# uvicorn expects `shotify.main:app` to be importable
app = create_app()
