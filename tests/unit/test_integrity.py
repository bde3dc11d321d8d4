"""Tests for verify, repair and rebuild."""

import sqlite3

import pytest

from cc_recall.errors import RebuildRefused
from cc_recall.indexer import IndexingPipeline
from cc_recall.integrity import IntegrityManager
from cc_recall.models import IndexStatus
from cc_recall.storage import SCHEMA_VERSION, IndexStore, _create_base_tables
from tests.conftest import write_transcript


@pytest.fixture
def pipeline(config, store, provider):
    return IndexingPipeline(config, store, provider)


@pytest.fixture
def indexed(config, store, pipeline):
    """Three indexed sessions: keep, gone and broken."""
    paths = {
        session_id: write_transcript(config.archive_dir, session_id, [("question", "answer")])
        for session_id in ("keep", "gone", "broken")
    }
    pipeline.index_all()
    return paths


def test_verify_healthy_index(store, indexed):
    report = IntegrityManager(store).verify()

    assert not report.has_issues
    assert report.schema_version == SCHEMA_VERSION


def test_verify_empty_index(store):
    assert not IntegrityManager(store).verify().has_issues


def test_verify_then_repair(store, indexed, pipeline):
    indexed["gone"].unlink()
    store.conn.execute("UPDATE exchanges SET embedding = NULL WHERE session_id = 'broken'")

    manager = IntegrityManager(store)
    findings = manager.verify()
    assert findings.orphaned == ["gone"]
    assert findings.corrupted == ["broken"]
    assert findings.has_issues
    # verify never writes
    assert store.get_session("gone") is not None

    repaired = manager.repair()
    assert repaired.deleted == ["gone"]
    assert repaired.reset == ["broken"]
    assert repaired.unrepairable == []
    assert store.get_session("gone") is None
    assert store.get_session("broken").index_status == IndexStatus.STALE

    pipeline.index_cleanup()
    assert not manager.verify().has_issues
    assert store.get("broken").missing_embeddings == 0


def test_verify_detects_silently_changed_transcript(store, indexed):
    path = indexed["keep"]
    stat = path.stat()
    # Same length, different content, so only the hash can tell
    path.write_text(path.read_text().replace("question", "QUESTION"))
    assert path.stat().st_size == stat.st_size

    findings = IntegrityManager(store).verify()
    assert findings.stale == ["keep"]

    IntegrityManager(store).repair()
    assert store.get_session("keep").index_status == IndexStatus.STALE


def test_missing_summary_is_corruption(store, indexed):
    store.conn.execute("UPDATE sessions SET summary = NULL WHERE id = 'keep'")

    assert IntegrityManager(store).verify().corrupted == ["keep"]


def test_failed_sessions_reported_not_issues(config, store, pipeline):
    write_transcript(config.archive_dir, "flaky", [("q", "EXPLODE")])
    pipeline.index_all()

    findings = IntegrityManager(store).verify()
    assert findings.failed == ["flaky"]
    assert not findings.has_issues


def test_rebuild_refused_by_default(store, indexed, pipeline):
    with pytest.raises(RebuildRefused):
        IntegrityManager(store).rebuild(pipeline)

    assert len(store.scan_all()) == 3


def test_rebuild_confirmed(config, store, indexed, pipeline):
    indexed["gone"].unlink()
    prompts = []

    def confirm(prompt):
        prompts.append(prompt)
        return True

    report = IntegrityManager(store, confirm=confirm).rebuild(pipeline)

    assert len(prompts) == 1
    assert sorted(report.indexed) == ["broken", "keep"]
    assert sorted(s.id for s in store.scan_all()) == ["broken", "keep"]


def test_schema_mismatch_reported_and_migrated(temp_dir):
    db_path = temp_dir / "old.db"
    conn = sqlite3.connect(str(db_path))
    _create_base_tables(conn)
    conn.execute("INSERT INTO metadata (key, value) VALUES ('schema_version', '1')")
    conn.commit()
    conn.close()

    with IndexStore(db_path, migrate=False) as store:
        manager = IntegrityManager(store)
        findings = manager.verify()
        assert findings.schema_mismatch
        assert findings.has_issues

        repaired = manager.repair()
        assert repaired.migrated_from == 1
        assert repaired.unrepairable == []
        assert not manager.verify().has_issues
