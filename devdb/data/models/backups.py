"""Backup capture models."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import Field, model_validator

from .projects import WireModel


class ConnectionDescriptor(WireModel):
    """How to reach a live database that should be dumped.

    ``endpoint_override`` is the address actually dialled (a tunnel, proxy or
    VPC endpoint); ``host`` stays the canonical name used for IAM tokens and
    TLS verification. With ``rds_instance`` the host, port and database may
    be left out and are looked up from the RDS instance.
    """

    host: Optional[str] = Field(default=None, min_length=1, max_length=253)
    port: Optional[int] = Field(default=None, gt=0, lt=65536)
    username: str = Field(min_length=1)
    password: Optional[str] = None
    iam_auth: bool = False
    database: Optional[str] = Field(default=None, min_length=1)
    rds_instance: Optional[str] = Field(default=None, min_length=1, max_length=63)
    endpoint_override: Optional[str] = None
    region: Optional[str] = None

    @model_validator(mode="after")
    def require_credential(self) -> "ConnectionDescriptor":
        if not self.iam_auth and not self.password:
            raise ValueError("Either 'password' or 'iamAuth' must be provided")
        if not self.rds_instance and not (self.host and self.port and self.database):
            raise ValueError(
                "'host', 'port' and 'database' are required unless 'rdsInstance' is given"
            )
        return self

    @property
    def dial_host(self) -> str:
        return self.endpoint_override or self.host

    def redacted(self) -> Dict[str, Any]:
        """Connection details safe to log or return."""
        return {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "database": self.database,
            "iamAuth": self.iam_auth,
            "endpointOverride": self.endpoint_override,
            "rdsInstance": self.rds_instance,
        }


@dataclass
class BackupArtifact:
    """A dump uploaded to object storage."""

    source_connection: Dict[str, Any]
    bucket: str
    object_storage_key: str
    content_type: str
    size_bytes: int

    @property
    def uri(self) -> str:
        return f"s3://{self.bucket}/{self.object_storage_key}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source_connection,
            "bucket": self.bucket,
            "key": self.object_storage_key,
            "contentType": self.content_type,
            "sizeBytes": self.size_bytes,
            "uri": self.uri,
        }
