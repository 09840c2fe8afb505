"""Credential resolution and RDS lookup for backup sources."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from ..data.models.backups import ConnectionDescriptor
from ..errors import (
    BackupConnectivityError,
    BackupCredentialError,
    NotFoundError,
    ValidationError,
)

logger = structlog.get_logger()


class CredentialResolver:
    """Turns a connection descriptor into the secret handed to the dump tool.

    A supplied password is used as-is. With ``iam_auth`` a short-lived RDS
    authentication token is generated for the canonical host (not the
    endpoint override, which only changes where we dial).
    """

    def __init__(
        self,
        default_region: Optional[str] = None,
        client_factory: Optional[Callable[[Optional[str]], Any]] = None,
    ):
        self.default_region = default_region
        self.client_factory = client_factory or self._rds_client

    async def locate(self, connection: ConnectionDescriptor) -> ConnectionDescriptor:
        """Fill in host, port and database from ``connection.rds_instance``.

        Explicit fields on the descriptor win over the instance's own.
        """
        if not connection.rds_instance:
            return connection

        region = connection.region or self.default_region
        try:
            client = self.client_factory(region)
            response = await asyncio.to_thread(
                client.describe_db_instances,
                DBInstanceIdentifier=connection.rds_instance,
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "DBInstanceNotFound":
                raise NotFoundError(
                    f"RDS instance '{connection.rds_instance}' not found in region {region}",
                    rds_instance=connection.rds_instance,
                ) from e
            raise BackupConnectivityError(
                f"Could not describe RDS instance '{connection.rds_instance}': {e}",
                rds_instance=connection.rds_instance,
            ) from e
        except BotoCoreError as e:
            raise BackupConnectivityError(
                f"Could not describe RDS instance '{connection.rds_instance}': {e}",
                rds_instance=connection.rds_instance,
            ) from e

        instances = response.get("DBInstances") or []
        if not instances:
            raise NotFoundError(
                f"RDS instance '{connection.rds_instance}' not found in region {region}",
                rds_instance=connection.rds_instance,
            )
        instance = instances[0]
        endpoint = instance.get("Endpoint") or {}
        if not endpoint.get("Address"):
            raise BackupConnectivityError(
                f"RDS instance '{connection.rds_instance}' has no endpoint yet "
                f"(status {instance.get('DBInstanceStatus', 'unknown')})",
                rds_instance=connection.rds_instance,
            )

        database = connection.database or instance.get("DBName")
        if not database:
            raise ValidationError(
                f"RDS instance '{connection.rds_instance}' has no default database; "
                "pass 'database' explicitly",
                rds_instance=connection.rds_instance,
            )

        logger.info(
            "Located RDS instance",
            rds_instance=connection.rds_instance,
            host=endpoint["Address"],
            region=region,
        )
        return connection.model_copy(
            update={
                "host": connection.host or endpoint["Address"],
                "port": connection.port or endpoint["Port"],
                "database": database,
            }
        )

    @staticmethod
    def _rds_client(region: Optional[str]) -> Any:
        return boto3.client("rds", region_name=region)

    async def resolve(self, connection: ConnectionDescriptor) -> str:
        if not connection.iam_auth:
            return connection.password

        region = connection.region or self.default_region
        try:
            client = self.client_factory(region)
            token = await asyncio.to_thread(
                client.generate_db_auth_token,
                DBHostname=connection.host,
                Port=connection.port,
                DBUsername=connection.username,
                Region=region,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(
                "IAM token generation failed",
                host=connection.host,
                username=connection.username,
                error=str(e),
            )
            raise BackupCredentialError(
                f"Could not generate an IAM authentication token for "
                f"{connection.username}@{connection.host}: {e}. Check that the "
                "database is reachable from this network, that the caller's IAM "
                "policy grants rds-db:connect for this user, and that the "
                "connection uses TLS.",
                host=connection.host,
            ) from e

        logger.info("Generated IAM auth token", host=connection.host, region=region)
        return token
