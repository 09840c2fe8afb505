"""
Backup capture pipeline.

Dumps a live database to object storage:

    locate RDS instance -> resolve credential -> probe connectivity
    -> dump to a staging file -> ensure bucket -> upload

The staging file is removed whatever the outcome.
"""
from __future__ import annotations

import asyncio
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..core.engines import DumpCommand, get_profile
from ..data.models.backups import BackupArtifact, ConnectionDescriptor
from ..data.models.projects import Project
from ..errors import BackupConnectivityError, BackupDumpError, BackupUploadError
from .auth import CredentialResolver
from .storage import ObjectStore

logger = structlog.get_logger()

_STDERR_TAIL = 2000


def backup_key(project: Project, extension: str, when: Optional[datetime] = None) -> str:
    """Object key for a project dump: ``{owner}/{projectId}/{timestamp}.{ext}``."""
    when = when or datetime.now(timezone.utc)
    return f"{project.owner}/{project.id}/{when.strftime('%Y%m%dT%H%M%SZ')}.{extension}"


class BackupCapturePipeline:
    """Captures logical dumps of external databases into object storage."""

    def __init__(
        self,
        object_store: ObjectStore,
        credentials: CredentialResolver,
        bucket: str,
        staging_dir: Path,
        connect_timeout: float = 5.0,
    ):
        self.object_store = object_store
        self.credentials = credentials
        self.bucket = bucket
        self.staging_dir = Path(staging_dir)
        self.connect_timeout = connect_timeout

    async def probe(self, host: str, port: int) -> None:
        """TCP connect to the source. Raises BackupConnectivityError."""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=self.connect_timeout
            )
        except (OSError, asyncio.TimeoutError) as e:
            reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
            raise BackupConnectivityError(
                f"Cannot connect to {host}:{port} ({reason}). Check VPC routing "
                "between this service and the database, security group and "
                "firewall rules for the database port, the supplied credentials, "
                "and that the hostname resolves in DNS.",
                host=host,
                port=port,
            ) from e

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

    async def run_dump(self, command: DumpCommand) -> None:
        """Run the dump utility. Raises BackupDumpError on a non-zero exit."""
        env = {**os.environ, **command.env}
        try:
            process = await asyncio.create_subprocess_exec(
                *command.argv,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except OSError as e:
            raise BackupDumpError(f"Could not start {command.argv[0]}: {e}") from e

        _, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[-_STDERR_TAIL:]
            logger.error(
                "Dump failed",
                tool=command.argv[0],
                exit_code=process.returncode,
                stderr=detail,
            )
            raise BackupDumpError(
                f"{command.argv[0]} failed with code {process.returncode}: {detail}",
                exit_code=process.returncode,
            )

    async def capture(
        self,
        project: Project,
        connection: ConnectionDescriptor,
        target_bucket: Optional[str] = None,
        target_key: Optional[str] = None,
        target_region: Optional[str] = None,
    ) -> BackupArtifact:
        """Dump ``connection`` and upload the artifact for ``project``.

        ``target_region`` puts the artifact in a bucket outside the default
        storage region.
        """
        profile = get_profile(project.engine_type)
        bucket = target_bucket or self.bucket
        store = self.object_store.in_region(target_region)

        connection = await self.credentials.locate(connection)
        log = logger.bind(project_id=project.id, host=connection.host)
        secret = await self.credentials.resolve(connection)
        await self.probe(connection.dial_host, connection.port)

        self.staging_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc)
        staging_file = self.staging_dir / (
            f"{project.id}-{stamp.strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"
            f".{profile.dump_extension}"
        )

        try:
            await self.run_dump(profile.dump_command(connection, secret, str(staging_file)))
            size = staging_file.stat().st_size
            log.info("Dump complete", path=str(staging_file), size_bytes=size)

            key = target_key or backup_key(project, profile.dump_extension, stamp)
            try:
                await store.ensure_bucket(bucket)
                await store.put_file(
                    bucket, key, staging_file, profile.content_type
                )
            except (BotoCoreError, ClientError) as e:
                raise BackupUploadError(
                    f"Failed to upload backup to s3://{bucket}/{key}: {e}",
                    bucket=bucket,
                    key=key,
                ) from e
        finally:
            staging_file.unlink(missing_ok=True)

        log.info("Backup uploaded", bucket=bucket, key=key)
        return BackupArtifact(
            source_connection=connection.redacted(),
            bucket=bucket,
            object_storage_key=key,
            content_type=profile.content_type,
            size_bytes=size,
        )
