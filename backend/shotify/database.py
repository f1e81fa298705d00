"""
Shotify Backend — MongoDB Client Management
=============================================

What:  Constructs the process-wide async MongoDB client and verifies it.
How:   `MongoDatabase` wraps `pymongo.AsyncMongoClient`. `connect()` pings the
       server with tenacity retries (exponential backoff + jitter) and raises
       DatabaseError once the attempt budget is spent.
Who:   Built by the application lifespan; the instance lives on `app.state.db`
       and reaches handlers through `get_database()`.
When:  Connected once at startup, pinged by /health, closed at shutdown.

Connection Model:
    AsyncMongoClient owns its own connection pool and is safe to share across
    concurrent requests. Construction does not touch the network; the startup
    ping is what turns an unreachable cluster into a fatal startup error.
"""

import logging
from typing import Optional

from fastapi import Request
from pymongo import AsyncMongoClient
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import ConfigurationError, PyMongoError
from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)
from tenacity.wait import wait_base

from shotify.exceptions import DatabaseError

logger = logging.getLogger(__name__)


class MongoDatabase:
    """
    Owns one AsyncMongoClient and the handle to the configured database.

    Lifecycle:
        1. __init__  → builds the client (no network I/O, bad URIs fail here)
        2. connect() → pings with retries; DatabaseError when exhausted
        3. ping()    → lightweight liveness probe for /health
        4. close()   → closes the pool
    """

    def __init__(
        self,
        uri: str,
        database_name: str,
        server_selection_timeout_ms: int = 5000,
        connect_attempts: int = 3,
        client: Optional[AsyncMongoClient] = None,
        retry_wait: Optional[wait_base] = None,
    ):
        self.database_name = database_name
        self.connect_attempts = connect_attempts
        self.retry_wait = retry_wait or wait_exponential_jitter(initial=1, max=8)
        if client is not None:
            self.client = client
        else:
            try:
                self.client = AsyncMongoClient(
                    uri,
                    serverSelectionTimeoutMS=server_selection_timeout_ms,
                    appname="shotify-backend",
                )
            except ConfigurationError as e:
                raise DatabaseError(
                    message="Invalid MongoDB configuration",
                    context={"error": str(e)},
                ) from e

    @property
    def database(self) -> AsyncDatabase:
        return self.client[self.database_name]

    async def connect(self) -> None:
        """
        Verify the cluster is reachable, retrying transient failures.

        Raises:
            DatabaseError: every attempt failed.
        """
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(PyMongoError),
                stop=stop_after_attempt(self.connect_attempts),
                wait=self.retry_wait,
                before_sleep=before_sleep_log(logger, logging.WARNING),
            ):
                with attempt:
                    await self.client.admin.command("ping")
        except RetryError as e:
            last_error = e.last_attempt.exception() if e.last_attempt else None
            raise DatabaseError(
                message="Failed to connect to MongoDB",
                context={
                    "attempts": self.connect_attempts,
                    "error": str(last_error),
                },
            ) from last_error

        logger.info("Connected to MongoDB database '%s'", self.database_name)

    async def ping(self) -> bool:
        """Single ping without retries. Returns False instead of raising."""
        try:
            await self.client.admin.command("ping")
            return True
        except PyMongoError as e:
            logger.warning("MongoDB ping failed: %s", str(e))
            return False

    async def close(self) -> None:
        await self.client.close()
        logger.info("MongoDB client closed")


def get_database(request: Request) -> MongoDatabase:
    """FastAPI dependency: the MongoDatabase built by the lifespan."""
    return request.app.state.db
