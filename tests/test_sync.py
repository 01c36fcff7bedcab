"""Tests for the sync orchestrator against an in-memory upstream."""

import threading

import pytest

from mirror.errors import UpstreamUnavailableError
from mirror.sync import SyncKind, SyncOrchestrator


def _rows(store, sql, params=()):
    with store.connection() as conn:
        return [dict(r) for r in conn.execute(sql, params).fetchall()]


def _add_scenes(source, count, updated_at="2025-01-01T00:00:00Z"):
    for i in range(1, count + 1):
        source.add("scene", i, updated_at=updated_at, title=f"Scene {i}", performers=[{"id": "p1"}])


@pytest.fixture
def orchestrator(store, source, sync_settings):
    return SyncOrchestrator(store, {"main": source}, sync_settings)


def test_full_sync_copies_every_page(store, source, orchestrator):
    """Test that a full sync copies every upstream page."""
    _add_scenes(source, 5)

    result = orchestrator.run("main", "scene", SyncKind.FULL)

    assert result.status == "succeeded"
    assert result.synced == 5
    ids = [r["id"] for r in _rows(store, "SELECT id FROM scenes ORDER BY CAST(id AS INTEGER)")]
    assert ids == ["1", "2", "3", "4", "5"]
    # page_size=2 -> three pages
    assert [c[1] for c in source.page_calls if c[0] == "scene"] == [1, 2, 3]


def test_full_sync_is_idempotent(store, source, orchestrator):
    """Test that a second full sync changes nothing."""
    _add_scenes(source, 3)

    orchestrator.run("main", "scene", SyncKind.FULL)
    first = _rows(store, "SELECT id, instance_id, title, deleted_at FROM scenes ORDER BY id")
    first_links = _rows(store, "SELECT * FROM scene_performers ORDER BY scene_id")

    orchestrator.run("main", "scene", SyncKind.FULL)
    second = _rows(store, "SELECT id, instance_id, title, deleted_at FROM scenes ORDER BY id")
    second_links = _rows(store, "SELECT * FROM scene_performers ORDER BY scene_id")

    assert first == second
    assert first_links == second_links
    assert len(second_links) == 3


def test_full_sync_soft_deletes_and_resurrects(store, source, orchestrator):
    """Test that full syncs soft-delete missing rows and bring them back."""
    _add_scenes(source, 3)
    orchestrator.run("main", "scene", SyncKind.FULL)

    removed = source.data["scene"]["2"]
    source.remove("scene", 2)
    result = orchestrator.run("main", "scene", SyncKind.FULL)

    assert result.deleted == 1
    row = _rows(store, "SELECT deleted_at FROM scenes WHERE id = '2'")[0]
    assert row["deleted_at"] is not None

    source.data["scene"]["2"] = removed
    orchestrator.run("main", "scene", SyncKind.FULL)
    row = _rows(store, "SELECT deleted_at FROM scenes WHERE id = '2'")[0]
    assert row["deleted_at"] is None


def test_deletion_skipped_when_id_listing_is_short(store, source, orchestrator, monkeypatch):
    """Test that a short id listing skips deletion."""
    _add_scenes(source, 3)
    orchestrator.run("main", "scene", SyncKind.FULL)

    # Upstream claims 3 ids but only hands back 1
    monkeypatch.setattr(source, "find_ids", lambda entity_type, page, per_page: (3, ["1"]))
    result = orchestrator.run("main", "scene", SyncKind.FULL)

    assert result.status == "succeeded"
    assert result.deleted == 0
    assert _rows(store, "SELECT COUNT(*) AS n FROM scenes WHERE deleted_at IS NULL")[0]["n"] == 3


def test_same_id_on_two_instances_stays_separate(store, sync_settings, make_source):
    """Test that the same id on two instances is stored twice."""
    a, b = make_source(), make_source()
    a.add("scene", 1, title="From A")
    b.add("scene", 1, title="From B")
    orchestrator = SyncOrchestrator(store, {"a": a, "b": b}, sync_settings)

    orchestrator.sync("full", entity_type="scene", derive=False)

    rows = _rows(store, "SELECT instance_id, title FROM scenes WHERE id = '1' ORDER BY instance_id")
    assert rows == [{"instance_id": "a", "title": "From A"}, {"instance_id": "b", "title": "From B"}]

    # Deleting on A never touches B
    a.remove("scene", 1)
    orchestrator.run("a", "scene", SyncKind.FULL)
    rows = _rows(store, "SELECT instance_id, deleted_at FROM scenes WHERE id = '1' ORDER BY instance_id")
    assert rows[0]["deleted_at"] is not None
    assert rows[1]["deleted_at"] is None


def test_incremental_fetches_only_changes(store, source, orchestrator):
    """Test that an incremental sync only fetches changed entities."""
    _add_scenes(source, 3)
    orchestrator.run("main", "scene", SyncKind.FULL)

    source.add("scene", 4, updated_at="2025-02-01T00:00:00Z", title="New")
    result = orchestrator.run("main", "scene", SyncKind.INCREMENTAL)

    assert result.kind == "incremental"
    assert result.synced == 1
    assert source.page_calls[-1] == ("scene", 1, "2025-01-01T00:00:00Z")
    state = orchestrator.load_state("main", "scene")
    assert state.last_incremental_sync_timestamp == "2025-02-01T00:00:00Z"


def test_incremental_without_history_runs_full(source, orchestrator):
    """Test that an incremental sync with no history runs full."""
    _add_scenes(source, 2)

    result = orchestrator.run("main", "scene", SyncKind.INCREMENTAL)

    assert result.kind == "full"
    assert result.synced == 2


def test_incremental_with_no_changes_keeps_timestamp(source, orchestrator):
    """Test that an empty incremental sync keeps the upstream timestamp."""
    _add_scenes(source, 2)
    orchestrator.run("main", "scene", SyncKind.FULL)

    result = orchestrator.run("main", "scene", SyncKind.INCREMENTAL)

    assert result.synced == 0
    state = orchestrator.load_state("main", "scene")
    assert state.last_incremental_sync_timestamp is None
    assert state.last_incremental_sync_actual is not None
    assert state.last_full_sync_timestamp == "2025-01-01T00:00:00Z"


def test_smart_policy(source, orchestrator, sync_settings):
    """Test how the smart policy picks full, incremental or nothing."""
    _add_scenes(source, 2)
    assert orchestrator.choose_kind("main", "scene") is SyncKind.FULL

    orchestrator.run("main", "scene", SyncKind.FULL)
    assert orchestrator.choose_kind("main", "scene") is None

    source.add("scene", 3, updated_at="2025-03-01T00:00:00Z")
    assert orchestrator.choose_kind("main", "scene") is SyncKind.INCREMENTAL

    sync_settings.incremental_change_limit = 0
    assert orchestrator.choose_kind("main", "scene") is SyncKind.FULL


def test_smart_sync_skips_unchanged_types(source, orchestrator):
    """Test that a smart sync skips types with no changes."""
    _add_scenes(source, 1)
    orchestrator.sync("full", derive=False)

    results = orchestrator.sync("smart", entity_type="scene", derive=False)

    assert [r.status for r in results] == ["skipped"]


def test_failure_is_recorded_not_raised(source, orchestrator, sync_settings):
    """Test that upstream failures are recorded on the state, not raised."""
    _add_scenes(source, 1)
    orchestrator.run("main", "scene", SyncKind.FULL)
    source.fail = UpstreamUnavailableError("connection refused")

    result = orchestrator.run("main", "scene", SyncKind.INCREMENTAL)

    assert result.status == "failed"
    assert "connection refused" in result.error
    state = orchestrator.load_state("main", "scene")
    assert state.consecutive_failures == 1
    assert "connection refused" in state.last_error

    # Enough failures push the smart policy back to a full sync
    state_failures = sync_settings.max_incremental_failures
    for _ in range(state_failures - 1):
        orchestrator.run("main", "scene", SyncKind.INCREMENTAL)
    source.fail = None
    assert orchestrator.choose_kind("main", "scene") is SyncKind.FULL

    orchestrator.run("main", "scene", SyncKind.FULL)
    state = orchestrator.load_state("main", "scene")
    assert state.consecutive_failures == 0
    assert state.last_error is None


def test_overlapping_trigger_is_coalesced(source, orchestrator):
    """Test that a second run of a busy type is coalesced."""
    _add_scenes(source, 1)
    lock = orchestrator._lock_for(("main", "scene"))
    lock.acquire()
    try:
        result = orchestrator.run("main", "scene", SyncKind.FULL)
    finally:
        lock.release()

    assert result.status == "coalesced"
    assert source.page_calls == []


def test_malformed_payload_fails_the_sync(store, source, orchestrator):
    """Test that a malformed payload fails the sync."""
    source.data["scene"]["1"] = {"id": "1", "updated_at": "2025-01-01T00:00:00Z", "performers": "oops"}

    result = orchestrator.run("main", "scene", SyncKind.FULL)

    assert result.status == "failed"
    assert "UpstreamShapeError" in result.error


def test_dangling_reference_is_kept(store, source, orchestrator):
    """Test that links to entities not yet synced are stored."""
    source.add("scene", 1, performers=[{"id": "404"}])

    orchestrator.run("main", "scene", SyncKind.FULL)

    links = _rows(store, "SELECT performer_id FROM scene_performers WHERE scene_id = '1'")
    assert links == [{"performer_id": "404"}]


def test_sync_single_entity(store, source, orchestrator):
    """Test single-entity refresh and delete."""
    source.add("scene", 1, title="Old")
    orchestrator.run("main", "scene", SyncKind.FULL)

    source.add("scene", 1, title="Fresh")
    result = orchestrator.sync_single_entity("main", "scene", "1", "update")
    assert result.synced == 1
    assert _rows(store, "SELECT title FROM scenes WHERE id = '1'")[0]["title"] == "Fresh"

    result = orchestrator.sync_single_entity("main", "scene", "1", "delete")
    assert result.deleted == 1


def test_single_entity_refresh_waits_for_running_sync(store, source, orchestrator):
    """Test that a single refresh waits for a pass over the same type, then applies."""
    source.add("scene", 1, title="Fresh")
    lock = orchestrator._lock_for(("main", "scene"))
    lock.acquire()
    results = []
    worker = threading.Thread(
        target=lambda: results.append(orchestrator.sync_single_entity("main", "scene", "1", "create"))
    )
    worker.start()
    try:
        worker.join(timeout=0.2)
        assert worker.is_alive()
        assert _rows(store, "SELECT id FROM scenes") == []
    finally:
        lock.release()
    worker.join(timeout=5)

    assert [r.status for r in results] == ["succeeded"]
    assert _rows(store, "SELECT title FROM scenes WHERE id = '1'") == [{"title": "Fresh"}]


def test_has_full_sync_needs_every_type(source, orchestrator):
    """Test that readiness needs a full sync of every type."""
    _add_scenes(source, 1)
    orchestrator.run("main", "scene", SyncKind.FULL)
    assert orchestrator.has_full_sync() is False

    orchestrator.sync("full", derive=False)
    assert orchestrator.has_full_sync() is True


def test_clear_instance_removes_rows_and_state(store, source, orchestrator):
    """Test that clearing an instance removes its rows and sync state."""
    _add_scenes(source, 2)
    orchestrator.run("main", "scene", SyncKind.FULL)

    removed = orchestrator.clear_instance("main")

    assert removed["scene"] == 2
    assert _rows(store, "SELECT COUNT(*) AS n FROM scene_performers")[0]["n"] == 0
    assert orchestrator.load_state("main", "scene") is None


def test_unknown_type_or_instance_raises(orchestrator):
    """Test that unknown types and instances raise ValueError."""
    with pytest.raises(ValueError):
        orchestrator.run("main", "movie", SyncKind.FULL)
    with pytest.raises(ValueError):
        orchestrator.sync("full", instance_id="nope")


def test_status_reports_each_type(source, orchestrator):
    """Test that status has one row per instance and type."""
    _add_scenes(source, 2)
    orchestrator.run("main", "scene", SyncKind.FULL)

    statuses = {s.entity_type: s for s in orchestrator.status("main")}

    assert statuses["scene"].phase == "succeeded"
    assert statuses["scene"].total_entities == 2
    assert statuses["tag"].phase == "idle"
    assert statuses["scene"].to_dict()["last_full_sync_actual"] is not None
