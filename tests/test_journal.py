"""Tests for the provisioning journal."""

import pytest

from devdb.db import FlowStep, ProvisioningJournal, create_journal_engine, init_database
from devdb.db.base import create_session_factory, get_database_url


@pytest.fixture
def journal():
    engine = create_journal_engine("sqlite:///:memory:")
    init_database(engine)
    yield ProvisioningJournal(create_session_factory(engine))
    engine.dispose()


def test_begin_creates_in_progress_record(journal):
    record_id = journal.begin("acme-shop", "db1")

    record = journal.get(record_id)
    assert record["status"] == "in_progress"
    assert record["step"] == "requested"
    assert record["resources"] == {}
    assert record["createdAt"] is not None


def test_advance_merges_resources(journal):
    record_id = journal.begin("acme-shop", "db1")

    journal.advance(record_id, FlowStep.NAMESPACE_ENSURED, namespace="devdb")
    journal.advance(
        record_id, FlowStep.SEED_STRATEGY_CHOSEN, strategy="clone_from_snapshot",
        source_snapshot="snap-1",
    )
    journal.advance(record_id, FlowStep.VOLUME_PROVISIONED, volume="vol")

    record = journal.get(record_id)
    assert record["step"] == "volume_provisioned"
    assert record["strategy"] == "clone_from_snapshot"
    assert record["resources"] == {
        "namespace": "devdb",
        "source_snapshot": "snap-1",
        "volume": "vol",
    }


def test_complete_and_fail(journal):
    ok = journal.begin("acme-shop", "db1")
    bad = journal.begin("acme-shop", "db2")

    journal.complete(ok)
    journal.fail(bad, "compute_launched: quota exceeded")

    assert journal.get(ok)["status"] == "completed"
    assert journal.get(ok)["step"] == "ready"
    assert journal.get(bad)["status"] == "failed"
    assert journal.get(bad)["error"] == "compute_launched: quota exceeded"


def test_list_filters(journal):
    journal.begin("acme-shop", "db1")
    done = journal.begin("acme-billing", "db1")
    journal.complete(done)

    assert len(journal.list()) == 2
    assert [r["id"] for r in journal.list(status="completed")] == [done]
    assert [r["projectId"] for r in journal.list(project_id="acme-shop")] == ["acme-shop"]
    assert [r["instanceName"] for r in journal.incomplete()] == ["db1"]


def test_snapshot_captured_keeps_status(journal):
    record_id = journal.begin("acme-shop", "db1")
    journal.complete(record_id)

    journal.snapshot_captured(record_id, "snap-2")

    record = journal.get(record_id)
    assert record["status"] == "completed"
    assert record["step"] == "snapshot_captured"
    assert record["resources"]["snapshot"] == "snap-2"


def test_advance_skips_unset_resources(journal):
    record_id = journal.begin("acme-shop", "db1")

    journal.advance(
        record_id, FlowStep.SEED_STRATEGY_CHOSEN, strategy="fresh_empty",
        source_snapshot=None, backup_url=None,
    )

    assert journal.get(record_id)["resources"] == {}


def test_unknown_record_is_ignored(journal):
    journal.advance("missing", FlowStep.READY)
    journal.fail("missing", "error")

    assert journal.get("missing") is None


def test_async_driver_urls_map_to_sync():
    assert get_database_url("sqlite+aiosqlite:///./x.db") == "sqlite:///./x.db"
    assert get_database_url("postgresql+asyncpg://u:p@h/db") == "postgresql+psycopg://u:p@h/db"
