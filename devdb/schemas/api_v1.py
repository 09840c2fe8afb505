from __future__ import annotations

import secrets
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, constr, model_validator
from pydantic.alias_generators import to_camel

from ..data.models.backups import ConnectionDescriptor
from ..data.models.projects import Credentials


class CamelModel(BaseModel):
    """Request/response base: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def generate_password(length: int = 24) -> str:
    """Random engine password for projects created without credentials."""
    return secrets.token_urlsafe(length)[:length]


class CredentialsIn(CamelModel):
    username: constr(min_length=1, max_length=63) = "devdb"
    password: Optional[constr(min_length=8, max_length=128)] = None
    database_name: constr(min_length=1, max_length=63) = "devdb"

    def to_credentials(self) -> Credentials:
        return Credentials(
            username=self.username,
            password=self.password or generate_password(),
            database_name=self.database_name,
        )


class ProjectCreateV1(CamelModel):
    """
    Request body for ``POST /projects``.

    ``dbType``/``dbVersion`` are accepted as aliases of
    ``engineType``/``engineVersion``.
    """

    owner: constr(min_length=1, max_length=63)
    name: constr(min_length=1, max_length=63)
    engine_type: Optional[Literal["postgres", "mysql"]] = None
    engine_version: Optional[constr(min_length=1, max_length=16)] = None
    backup_location: Optional[constr(min_length=1, max_length=2048)] = None
    credentials: Optional[CredentialsIn] = None

    # Short aliases used by the command line client
    db_type: Optional[Literal["postgres", "mysql"]] = None
    db_version: Optional[constr(min_length=1, max_length=16)] = None

    @model_validator(mode="after")
    def resolve_engine_aliases(self) -> "ProjectCreateV1":
        if self.engine_type is None:
            object.__setattr__(self, "engine_type", self.db_type or "postgres")
        if self.engine_version is None:
            default = "16" if self.engine_type == "postgres" else "8.0"
            object.__setattr__(self, "engine_version", self.db_version or default)
        object.__setattr__(self, "db_type", None)
        object.__setattr__(self, "db_version", None)
        return self


class DatabaseCreateV1(CamelModel):
    """Request body for ``POST /projects/{id}/databases``."""

    name: constr(min_length=1, max_length=63)
    backup_location: Optional[constr(min_length=1, max_length=2048)] = None
    credentials: Optional[CredentialsIn] = None


class BackupCreateV1(ConnectionDescriptor):
    """Request body for ``POST /projects/{id}/backup``."""

    target_bucket: Optional[constr(min_length=3, max_length=63)] = None
    target_key: Optional[constr(min_length=1, max_length=1024)] = None
    target_region: Optional[constr(min_length=1, max_length=32)] = None

    def connection(self) -> ConnectionDescriptor:
        return ConnectionDescriptor.model_validate(
            self.model_dump(exclude={"target_bucket", "target_key", "target_region"})
        )
