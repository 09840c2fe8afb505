"""Tests for the Redis-backed project registry and project locks."""

import json

import pytest

from devdb.data.models.projects import EngineType, derive_project_id
from devdb.errors import (
    NotFoundError,
    PlatformFailure,
    ProjectBusyError,
    ProjectExistsError,
    ValidationError,
)

from conftest import make_project


class TestProjectId:
    def test_simple(self):
        assert derive_project_id("acme", "shop") == "acme-shop"

    def test_normalised(self):
        assert derive_project_id("Acme Corp", "Shop_DB") == "acme-corp-shop-db"

    def test_empty_parts_rejected(self):
        with pytest.raises(ValidationError):
            derive_project_id("", "shop")

    def test_too_long_rejected(self):
        with pytest.raises(ValidationError):
            derive_project_id("a" * 40, "b" * 40)


class TestRegistry:
    @pytest.mark.asyncio
    async def test_create_and_get(self, registry):
        await registry.create(make_project())

        project = await registry.get("acme-shop")

        assert project.owner == "acme"
        assert project.engine_type is EngineType.POSTGRES
        assert project.default_credentials.database_name == "shop"

    @pytest.mark.asyncio
    async def test_document_is_versioned(self, registry, redis):
        await registry.create(make_project())

        document = json.loads(await redis.get("test:project:acme-shop"))

        assert document["schema_version"] == 1
        assert document["project"]["id"] == "acme-shop"

    @pytest.mark.asyncio
    async def test_create_rejects_collision(self, registry):
        await registry.create(make_project())

        with pytest.raises(ProjectExistsError):
            await registry.create(make_project(version="15"))

        assert (await registry.get("acme-shop")).engine_version == "16"

    @pytest.mark.asyncio
    async def test_put_overwrites(self, registry):
        await registry.create(make_project())
        await registry.put(make_project(version="15"))

        assert (await registry.get("acme-shop")).engine_version == "15"

    @pytest.mark.asyncio
    async def test_get_missing(self, registry):
        with pytest.raises(NotFoundError):
            await registry.get("nobody-nothing")

    @pytest.mark.asyncio
    async def test_unknown_schema_version(self, registry, redis):
        await redis.set("test:project:acme-shop", json.dumps({"schema_version": 99}))

        with pytest.raises(PlatformFailure):
            await registry.get("acme-shop")

    @pytest.mark.asyncio
    async def test_list_all_and_by_owner(self, registry):
        await registry.create(make_project("acme", "shop"))
        await registry.create(make_project("acme", "billing"))
        await registry.create(make_project("globex", "shop"))

        everything = [p.id for p in await registry.list()]
        acme = [p.id for p in await registry.list("acme")]

        assert everything == ["acme-billing", "acme-shop", "globex-shop"]
        assert acme == ["acme-billing", "acme-shop"]
        assert await registry.list("initech") == []

    @pytest.mark.asyncio
    async def test_ping(self, registry):
        assert await registry.ping() is True


class TestProjectLock:
    @pytest.mark.asyncio
    async def test_lock_is_exclusive(self, registry):
        async with registry.lock("acme-shop"):
            with pytest.raises(ProjectBusyError):
                async with registry.lock("acme-shop"):
                    pass

    @pytest.mark.asyncio
    async def test_lock_is_per_project(self, registry):
        async with registry.lock("acme-shop"):
            async with registry.lock("acme-billing"):
                pass

    @pytest.mark.asyncio
    async def test_lock_released_on_exit(self, registry, redis):
        async with registry.lock("acme-shop"):
            assert await redis.exists("test:lock:acme-shop")

        assert not await redis.exists("test:lock:acme-shop")
