"""
Project models for devdb.

A project groups every database instance created for one (owner, name)
pair. The project id is derived from that pair and doubles as the Kubernetes
label value used to find the project's pods and snapshots, so it must be a
valid DNS label.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ...errors import ValidationError

DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?\Z")
MAX_DNS_LABEL = 63


class EngineType(str, Enum):
    """Supported database engines."""

    POSTGRES = "postgres"
    MYSQL = "mysql"


class WireModel(BaseModel):
    """Base for models that travel as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Credentials(WireModel):
    """Engine credentials injected into an instance."""

    username: str = Field(min_length=1, max_length=63)
    password: str = Field(min_length=1, max_length=128)
    database_name: str = Field(min_length=1, max_length=63)


class Project(WireModel):
    """Durable project metadata held in the project registry."""

    id: str
    owner: str
    name: str
    engine_type: EngineType
    engine_version: str
    backup_location: Optional[str] = None
    default_credentials: Credentials
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


def derive_project_id(owner: str, name: str) -> str:
    """Derive the deterministic project id for an (owner, name) pair.

    Examples:
        ("acme", "shop") -> "acme-shop"
        ("Acme Corp", "Shop_DB") -> "acme-corp-shop-db"
    """
    owner = (owner or "").strip()
    name = (name or "").strip()
    if not owner or not name:
        raise ValidationError("Both owner and name are required")

    slug = re.sub(r"[^a-z0-9]+", "-", f"{owner}-{name}".lower()).strip("-")
    if not slug or len(slug) > MAX_DNS_LABEL or not DNS_LABEL_RE.match(slug):
        raise ValidationError(
            f"Project id '{slug}' derived from owner '{owner}' and name '{name}' "
            f"must be a DNS label of at most {MAX_DNS_LABEL} characters"
        )
    return slug
