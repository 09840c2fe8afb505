"""Tests for the snapshot manager."""

import pytest

from devdb.core.snapshots import SnapshotManager
from devdb.errors import PlatformFailure

NS = "devdb-test"


@pytest.fixture
def manager(platform):
    return SnapshotManager(platform, enabled=True, snapshot_class="csi-snapclass")


class TestSelectLatest:
    @pytest.mark.asyncio
    async def test_picks_max_timestamp(self, manager, platform):
        platform.add_snapshot("snap-a", "acme-shop", 10)
        platform.add_snapshot("snap-b", "acme-shop", 30)
        platform.add_snapshot("snap-c", "acme-shop", 20)

        latest = await manager.select_latest("acme-shop", NS)

        assert latest.name == "snap-b"

    @pytest.mark.asyncio
    async def test_ignores_unready_and_untimestamped(self, manager, platform):
        platform.add_snapshot("ready-old", "acme-shop", 10)
        platform.add_snapshot("unready-new", "acme-shop", 50, ready=False)
        platform.add_snapshot("no-timestamp", "acme-shop", None)

        latest = await manager.select_latest("acme-shop", NS)

        assert latest.name == "ready-old"

    @pytest.mark.asyncio
    async def test_tie_goes_to_greatest_name(self, manager, platform):
        platform.add_snapshot("snap-a", "acme-shop", 10)
        platform.add_snapshot("snap-b", "acme-shop", 10)

        latest = await manager.select_latest("acme-shop", NS)

        assert latest.name == "snap-b"

    @pytest.mark.asyncio
    async def test_other_projects_are_invisible(self, manager, platform):
        platform.add_snapshot("theirs", "globex-shop", 99)

        assert await manager.select_latest("acme-shop", NS) is None

    @pytest.mark.asyncio
    async def test_disabled_returns_none(self, platform):
        platform.add_snapshot("snap-a", "acme-shop", 10)
        manager = SnapshotManager(platform, enabled=False)

        assert await manager.select_latest("acme-shop", NS) is None
        assert "list_volume_snapshots" not in platform.calls

    @pytest.mark.asyncio
    async def test_platform_error_returns_none(self, manager, platform):
        platform.failures["list_volume_snapshots"] = PlatformFailure("CRD not installed")

        assert await manager.select_latest("acme-shop", NS) is None


class TestCapture:
    @pytest.mark.asyncio
    async def test_capture_labels_snapshot(self, manager, platform):
        snapshot = await manager.capture("db-acme-shop-db1-data", NS, "acme-shop")

        assert snapshot.project_id == "acme-shop"
        assert snapshot.source_volume_name == "db-acme-shop-db1-data"
        assert snapshot.name.startswith("db-acme-shop-db1-data-snap-")

    @pytest.mark.asyncio
    async def test_capture_disabled(self, platform):
        manager = SnapshotManager(platform, enabled=False)

        assert await manager.capture("vol", NS, "acme-shop") is None
        assert platform.snapshots == {}

    @pytest.mark.asyncio
    async def test_capture_error_is_swallowed(self, manager, platform):
        platform.failures["create_volume_snapshot"] = PlatformFailure("boom")

        assert await manager.capture("vol", NS, "acme-shop") is None


class TestListAndPrune:
    @pytest.mark.asyncio
    async def test_list_newest_first(self, manager, platform):
        platform.add_snapshot("snap-a", "acme-shop", 10)
        platform.add_snapshot("snap-b", "acme-shop", 30)
        platform.add_snapshot("snap-c", "acme-shop", None)

        names = [s.name for s in await manager.list("acme-shop", NS)]

        assert names == ["snap-b", "snap-a", "snap-c"]

    @pytest.mark.asyncio
    async def test_list_propagates_errors(self, manager, platform):
        platform.failures["list_volume_snapshots"] = PlatformFailure("forbidden")

        with pytest.raises(PlatformFailure):
            await manager.list("acme-shop", NS)

    @pytest.mark.asyncio
    async def test_prune_keeps_newest(self, manager, platform):
        for i in range(5):
            platform.add_snapshot(f"snap-{i}", "acme-shop", i)

        deleted = await manager.prune("acme-shop", NS, keep=2)

        assert sorted(deleted) == ["snap-0", "snap-1", "snap-2"]
        assert sorted(platform.snapshots) == ["snap-3", "snap-4"]

    @pytest.mark.asyncio
    async def test_prune_zero_keeps_everything(self, manager, platform):
        platform.add_snapshot("snap-a", "acme-shop", 1)

        assert await manager.prune("acme-shop", NS, keep=0) == []
        assert "snap-a" in platform.snapshots

    @pytest.mark.asyncio
    async def test_prune_errors_are_swallowed(self, manager, platform):
        for i in range(3):
            platform.add_snapshot(f"snap-{i}", "acme-shop", i)
        platform.failures["delete_volume_snapshot"] = PlatformFailure("forbidden")

        assert await manager.prune("acme-shop", NS, keep=1) == []
