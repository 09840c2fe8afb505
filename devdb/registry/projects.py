"""
Project registry backed by Redis.

Layout (``prefix`` defaults to ``devdb``):

    {prefix}:project:{id}   -> {"schema_version": 1, "project": {...}}
    {prefix}:owner:{owner}  -> set of project ids

There are no cross-key transactions: a project created while ``list`` is
scanning may or may not appear in the result.
"""
from __future__ import annotations

import json
from typing import List, Optional

import structlog
from pydantic import ValidationError as PydanticValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..config import Settings
from ..data.models.projects import Project
from ..errors import NotFoundError, PlatformFailure, ProjectExistsError
from .locks import ProjectLock

logger = structlog.get_logger()

SCHEMA_VERSION = 1


class ProjectRegistry:
    """Durable mapping from project id to project metadata."""

    def __init__(
        self,
        redis: Redis,
        prefix: str = "devdb",
        lock_ttl: float = 120.0,
        lock_wait: float = 30.0,
    ):
        self.redis = redis
        self.prefix = prefix
        self.lock_ttl = lock_ttl
        self.lock_wait = lock_wait

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProjectRegistry":
        return cls(
            Redis.from_url(settings.redis_url, decode_responses=True),
            prefix=settings.registry_prefix,
            lock_ttl=settings.lock_ttl_seconds,
            lock_wait=settings.lock_wait_seconds,
        )

    def _project_key(self, project_id: str) -> str:
        return f"{self.prefix}:project:{project_id}"

    def _owner_key(self, owner: str) -> str:
        return f"{self.prefix}:owner:{owner}"

    @staticmethod
    def _encode(project: Project) -> str:
        return json.dumps(
            {"schema_version": SCHEMA_VERSION, "project": project.model_dump(mode="json")}
        )

    @staticmethod
    def _decode(raw: str) -> Project:
        try:
            document = json.loads(raw)
            version = document.get("schema_version")
            if version != SCHEMA_VERSION:
                raise PlatformFailure(f"Unsupported project schema version: {version}")
            return Project.model_validate(document["project"])
        except (ValueError, KeyError, TypeError, PydanticValidationError) as e:
            raise PlatformFailure(f"Corrupt project document: {e}") from e

    async def put(self, project: Project) -> None:
        """Store a project, overwriting any existing entry with the same id."""
        key = self._project_key(project.id)
        try:
            previous = await self.redis.get(key)
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.set(key, self._encode(project))
                pipe.sadd(self._owner_key(project.owner), project.id)
                if previous:
                    old_owner = json.loads(previous).get("project", {}).get("owner")
                    if old_owner and old_owner != project.owner:
                        pipe.srem(self._owner_key(old_owner), project.id)
                await pipe.execute()
        except RedisError as e:
            raise PlatformFailure(f"Failed to store project {project.id}: {e}") from e

    async def create(self, project: Project) -> Project:
        """Store a new project, rejecting an id that is already registered."""
        try:
            created = await self.redis.set(
                self._project_key(project.id), self._encode(project), nx=True
            )
            if not created:
                raise ProjectExistsError(
                    f"Project '{project.id}' already exists", project_id=project.id
                )
            await self.redis.sadd(self._owner_key(project.owner), project.id)
        except RedisError as e:
            raise PlatformFailure(f"Failed to create project {project.id}: {e}") from e

        logger.info("Project registered", project_id=project.id, owner=project.owner)
        return project

    async def get(self, project_id: str) -> Project:
        try:
            raw = await self.redis.get(self._project_key(project_id))
        except RedisError as e:
            raise PlatformFailure(f"Failed to read project {project_id}: {e}") from e
        if raw is None:
            raise NotFoundError(f"Project '{project_id}' not found", project_id=project_id)
        return self._decode(raw)

    async def list(self, owner: Optional[str] = None) -> List[Project]:
        """List projects, optionally only those of one owner."""
        try:
            if owner:
                ids = sorted(await self.redis.smembers(self._owner_key(owner)))
                keys = [self._project_key(project_id) for project_id in ids]
            else:
                keys = sorted(
                    [key async for key in self.redis.scan_iter(match=self._project_key("*"))]
                )

            projects = []
            for key in keys:
                raw = await self.redis.get(key)
                # Deleted between the scan and the read
                if raw is None:
                    continue
                projects.append(self._decode(raw))
        except RedisError as e:
            raise PlatformFailure(f"Failed to list projects: {e}") from e

        return projects

    def lock(self, project_id: str) -> ProjectLock:
        """Advisory lease serialising creation flows for one project."""
        return ProjectLock(
            self.redis,
            f"{self.prefix}:lock:{project_id}",
            ttl=self.lock_ttl,
            wait=self.lock_wait,
        )

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self.redis.aclose()
