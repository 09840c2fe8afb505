"""
Object storage access (S3 or any S3-compatible endpoint).

boto3 clients are synchronous; calls run in a worker thread.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional

import boto3
import structlog
from botocore.exceptions import ClientError

from ..config import Settings

logger = structlog.get_logger()

_MISSING_CODES = {"404", "NoSuchKey", "NoSuchBucket", "NotFound"}


def is_missing(error: ClientError) -> bool:
    """True when a ClientError means the bucket or object does not exist."""
    return str(error.response.get("Error", {}).get("Code")) in _MISSING_CODES


class ObjectStore:
    """Thin async facade over an S3 client."""

    def __init__(
        self,
        client: Any,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
    ):
        self.client = client
        self.region = region
        self.endpoint_url = endpoint_url

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStore":
        client = boto3.client(
            "s3",
            region_name=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url,
        )
        return cls(
            client, region=settings.aws_region, endpoint_url=settings.s3_endpoint_url
        )

    def in_region(self, region: Optional[str]) -> "ObjectStore":
        """A store writing to ``region``; ``self`` when it already does."""
        if not region or region == self.region:
            return self
        client = boto3.client("s3", region_name=region, endpoint_url=self.endpoint_url)
        return ObjectStore(client, region=region, endpoint_url=self.endpoint_url)

    async def ensure_bucket(self, bucket: str) -> None:
        """Create the bucket if it does not exist yet."""
        try:
            await asyncio.to_thread(self.client.head_bucket, Bucket=bucket)
            return
        except ClientError as e:
            if not is_missing(e):
                raise

        params: dict = {"Bucket": bucket}
        if self.region and self.region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
        await asyncio.to_thread(self.client.create_bucket, **params)
        logger.info("Created bucket", bucket=bucket)

    async def put_file(self, bucket: str, key: str, path: Path, content_type: str) -> None:
        """Stream a local file into an object."""

        def _put() -> None:
            with open(path, "rb") as body:
                self.client.put_object(
                    Bucket=bucket, Key=key, Body=body, ContentType=content_type
                )

        await asyncio.to_thread(_put)

    async def exists(self, bucket: str, key: str) -> bool:
        try:
            await asyncio.to_thread(self.client.head_object, Bucket=bucket, Key=key)
        except ClientError as e:
            if is_missing(e):
                return False
            raise
        return True

    async def download(self, bucket: str, key: str, destination: Path) -> None:
        await asyncio.to_thread(
            self.client.download_file, bucket, key, str(destination)
        )

    async def presign_get(self, bucket: str, key: str, expires_in: int) -> str:
        return await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expires_in,
        )


