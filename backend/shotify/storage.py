"""
S3 object-storage client construction.

Only client construction and a bucket reachability probe (used by /health)
live here.
"""

import asyncio
import logging
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from fastapi import Request

from shotify.exceptions import StorageError

logger = logging.getLogger(__name__)


class S3Storage:
    """Holds the shared boto3 S3 client and the configured bucket name."""

    def __init__(
        self,
        bucket: str,
        region: str = "",
        access_key_id: str = "",
        secret_access_key: str = "",
        endpoint_url: str = "",
        client: Optional[Any] = None,
    ):
        self.bucket = bucket
        if client is not None:
            self._client = client
            return

        config = Config(signature_version="s3v4", retries={"mode": "standard"})
        try:
            self._client = boto3.client(
                "s3",
                region_name=region or None,
                endpoint_url=endpoint_url or None,
                # Empty credentials fall through to boto3's default chain
                aws_access_key_id=access_key_id or None,
                aws_secret_access_key=secret_access_key or None,
                config=config,
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(
                message="Failed to initialize S3 client",
                context={"error": str(e), "region": region},
            ) from e

        logger.info("S3 client initialized for bucket '%s'", bucket or "<unset>")

    @property
    def client(self) -> Any:
        return self._client

    @property
    def is_configured(self) -> bool:
        return bool(self.bucket)

    async def check(self) -> None:
        """
        HEAD the bucket from a worker thread (boto3 is blocking).

        Raises:
            StorageError: the bucket is missing, forbidden, or unreachable.
        """
        try:
            await asyncio.to_thread(self._client.head_bucket, Bucket=self.bucket)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(
                context={"bucket": self.bucket, "error": str(e)},
            ) from e


def get_storage(request: Request) -> S3Storage:
    """FastAPI dependency: the S3Storage built by the lifespan."""
    return request.app.state.storage
