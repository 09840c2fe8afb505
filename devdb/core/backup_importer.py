"""
Backup importer.

Validates external backup references and makes them consumable by an
instance's init step. Two reference forms are accepted:

- ``http(s)://host[:port]/path`` - fetched as-is
- ``s3://bucket/key`` - checked with HEAD and handed out as a presigned URL

Every other scheme (``ftp://``, ``file://``, ...) is rejected.
"""
from __future__ import annotations

import re
import uuid
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse

import httpx
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..backup.storage import ObjectStore
from ..errors import ValidationError

logger = structlog.get_logger()

_HTTP_URL_RE = re.compile(
    r"^(https?://)"
    r"((([a-z\d]([a-z\d-]*[a-z\d])?)\.)+[a-z]{2,}"  # domain name
    r"|((\d{1,3}\.){3}\d{1,3}))"  # or IPv4 address
    r"(:\d+)?(/[-a-z\d%_.~+]*)*"  # port and path
    r"(\?[;&a-z\d%_.~+=-]*)?"  # query string
    r"(#[-a-z\d_]*)?\Z",  # fragment
    re.IGNORECASE,
)
_S3_URL_RE = re.compile(r"^s3://([a-z0-9][a-z0-9.-]{1,61}[a-z0-9])/(\S+)\Z")


def parse_object_ref(url: str) -> Tuple[str, str]:
    """Split ``s3://bucket/key`` into (bucket, key)."""
    match = _S3_URL_RE.match(url or "")
    if not match:
        raise ValidationError(f"Invalid object storage reference: {url}")
    return match.group(1), match.group(2)


class BackupImporter:
    """Validates, probes and stages backup artifacts."""

    def __init__(
        self,
        object_store: Optional[ObjectStore],
        staging_dir: Path,
        http_timeout: float = 10.0,
        presign_expiry: int = 3600,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.object_store = object_store
        self.staging_dir = Path(staging_dir)
        self.http_timeout = http_timeout
        self.presign_expiry = presign_expiry
        self.transport = transport

    @staticmethod
    def validate(url: str) -> bool:
        """Check the reference against the accepted grammar. No network I/O."""
        if not url:
            return False
        return bool(_HTTP_URL_RE.match(url) or _S3_URL_RE.match(url))

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.http_timeout, follow_redirects=True, transport=self.transport
        )

    async def verify_reachable(self, url: str) -> bool:
        """Lightweight existence probe. Never raises."""
        if not self.validate(url):
            return False

        if url.startswith("s3://"):
            if self.object_store is None:
                return False
            bucket, key = parse_object_ref(url)
            try:
                return await self.object_store.exists(bucket, key)
            except (ClientError, BotoCoreError) as e:
                logger.warning("Object probe failed", url=url, error=str(e))
                return False

        try:
            async with self._http_client() as client:
                response = await client.head(url)
            return response.is_success
        except httpx.HTTPError as e:
            logger.warning("HTTP probe failed", url=url, error=str(e))
            return False

    async def stage(self, object_ref: str) -> Optional[Path]:
        """Download a referenced artifact into the staging directory.

        Returns None when the object is missing or the transfer fails; a
        partially written file is removed before returning.
        """
        if not self.validate(object_ref):
            return None

        self.staging_dir.mkdir(parents=True, exist_ok=True)
        basename = Path(urlparse(object_ref).path).name or "artifact"
        destination = self.staging_dir / f"{uuid.uuid4().hex[:12]}-{basename}"

        try:
            if object_ref.startswith("s3://"):
                if self.object_store is None:
                    return None
                bucket, key = parse_object_ref(object_ref)
                if not await self.object_store.exists(bucket, key):
                    logger.info("Backup object not found", ref=object_ref)
                    return None
                await self.object_store.download(bucket, key, destination)
            else:
                async with self._http_client() as client:
                    async with client.stream("GET", object_ref) as response:
                        if not response.is_success:
                            logger.info(
                                "Backup download refused",
                                ref=object_ref,
                                status=response.status_code,
                            )
                            return None
                        with open(destination, "wb") as fh:
                            async for chunk in response.aiter_bytes():
                                fh.write(chunk)
        except (ClientError, BotoCoreError, httpx.HTTPError, OSError) as e:
            logger.warning("Staging backup failed", ref=object_ref, error=str(e))
            destination.unlink(missing_ok=True)
            return None

        logger.info("Staged backup", ref=object_ref, path=str(destination))
        return destination

    async def resolve(self, url: str) -> str:
        """Return a URL an init container can download the artifact from.

        Raises ValidationError when the reference is malformed or unreachable.
        """
        if not self.validate(url):
            raise ValidationError(f"Invalid backup URL format: {url}")
        if not await self.verify_reachable(url):
            raise ValidationError(f"Backup URL is not accessible: {url}")

        if url.startswith("s3://"):
            bucket, key = parse_object_ref(url)
            try:
                return await self.object_store.presign_get(bucket, key, self.presign_expiry)
            except (ClientError, BotoCoreError) as e:
                raise ValidationError(f"Cannot presign backup {url}: {e}") from e
        return url
