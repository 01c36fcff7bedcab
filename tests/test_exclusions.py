"""Tests for per-user exclusion computation."""

import pytest

from mirror.derived import run_derived_pipeline
from mirror.exclusions import ExclusionComputer
from mirror.overlay import UserActions
from mirror.sync import SyncOrchestrator


def _excluded(store, user_id):
    with store.connection() as conn:
        rows = conn.execute(
            "SELECT entity_type, entity_id, instance_id, reason FROM user_excluded_entities "
            "WHERE user_id = ? ORDER BY entity_type, entity_id",
            (user_id,),
        ).fetchall()
    return {(r["entity_type"], r["entity_id"]): r["reason"] for r in rows}


@pytest.fixture
def library(store, source, sync_settings):
    for tag_id in ("1", "2", "3"):
        source.add("tag", tag_id, name=f"Tag {tag_id}")
    source.add("performer", 10, name="Perf", tags=[{"id": "1"}])
    source.add("studio", 20, name="Studio A", tags=[{"id": "2"}])
    source.add("studio", 21, name="Studio B")
    source.add("group", 30, name="Group")
    source.add(
        "scene", 100, title="With performer", performers=[{"id": "10"}],
        studio={"id": "20"}, groups=[{"group": {"id": "30"}}],
    )
    source.add("scene", 101, title="Plain", studio={"id": "21"}, tags=[{"id": "3"}])
    source.add("gallery", 40, title="Gallery")
    source.add("image", 50, title="Image", galleries=[{"id": "40"}])
    SyncOrchestrator(store, {"main": source}, sync_settings).sync("full", derive=False)
    run_derived_pipeline(store)
    return UserActions(store)


def test_users_without_rules_have_no_exclusions(store, library):
    """Test that a user with no rules gets nothing when every container has content."""
    assert ExclusionComputer(store).recompute_for_user("nobody") == 0
    assert _excluded(store, "nobody") == {}


def test_exclude_restriction_cascades(store, library):
    """Test that an EXCLUDE restriction on a tag cascades to studios and scenes."""
    library.set_restriction("alice", "tag", "EXCLUDE", ["2"])

    excluded = _excluded(store, "alice")

    assert excluded[("tag", "2")] == "restricted"
    assert excluded[("studio", "20")] == "cascade"
    # tag 2 reaches scene 100 only through its inherited tags
    assert excluded[("scene", "100")] == "cascade"
    # group 30 has no visible scene left
    assert excluded[("group", "30")] == "empty"
    assert ("scene", "101") not in excluded


def test_include_restriction_excludes_everything_else(store, library):
    """Test that an INCLUDE restriction excludes every studio outside the list."""
    library.set_restriction("alice", "studio", "INCLUDE", ["20"])

    excluded = _excluded(store, "alice")

    assert excluded[("studio", "21")] == "restricted"
    assert ("studio", "20") not in excluded
    assert excluded[("scene", "101")] == "cascade"
    assert ("scene", "100") not in excluded


def test_hide_and_unhide(store, library):
    """Test that unhiding an entity drops it and its cascade."""
    library.hide_entity("bob", "performer", "10", "main")
    excluded = _excluded(store, "bob")
    assert excluded[("performer", "10")] == "hidden"
    assert excluded[("scene", "100")] == "cascade"

    library.unhide_entity("bob", "performer", "10", "main")
    assert _excluded(store, "bob") == {}


def test_hiding_gallery_hides_its_images(store, library):
    """Test that hiding a gallery hides the images in it."""
    library.hide_entity("bob", "gallery", "40")

    excluded = _excluded(store, "bob")

    assert excluded[("image", "50")] == "cascade"


def test_empty_gallery_when_all_images_hidden(store, library):
    """Test that a gallery with no visible image is excluded as empty."""
    library.hide_entity("carol", "image", "50")

    excluded = _excluded(store, "carol")

    assert excluded[("gallery", "40")] == "empty"


def test_performers_and_studios_without_visible_scenes_are_empty(store, library):
    """Test that hiding every scene empties the performers, studios and groups in them."""
    library.hide_entity("bob", "scene", "100")
    library.hide_entity("bob", "scene", "101")

    excluded = _excluded(store, "bob")

    assert excluded[("performer", "10")] == "empty"
    assert excluded[("studio", "20")] == "empty"
    assert excluded[("studio", "21")] == "empty"
    assert excluded[("group", "30")] == "empty"
    assert excluded[("tag", "3")] == "empty"
    # performer 10 and studio 20 are only empty, so their tags still count as used
    assert ("tag", "1") not in excluded
    assert ("tag", "2") not in excluded


def test_hidden_performer_is_not_also_marked_empty(store, library):
    """Test that a hidden performer keeps its hidden reason."""
    library.hide_entity("bob", "performer", "10", "main")

    excluded = _excluded(store, "bob")

    assert excluded[("performer", "10")] == "hidden"
    assert excluded[("studio", "20")] == "empty"
    assert excluded[("group", "30")] == "empty"
    assert ("studio", "21") not in excluded


def test_unused_tags_are_empty_unless_they_have_children(store, source, sync_settings):
    """Test that unused tags are empty and a parent tag stays while a child is visible."""
    source.add("tag", 4, name="Parent")
    source.add("tag", 5, name="Child", parents=[{"id": "4"}])
    source.add("tag", 6, name="Unused")
    source.add("tag", 7, name="Used")
    source.add("scene", 1, title="Tagged", tags=[{"id": "7"}])
    SyncOrchestrator(store, {"main": source}, sync_settings).sync("full", derive=False)
    computer = ExclusionComputer(store)

    assert computer.recompute_for_user("dave") == 2
    excluded = _excluded(store, "dave")
    assert excluded == {("tag", "5"): "empty", ("tag", "6"): "empty"}

    UserActions(store).hide_entity("dave", "tag", "5")
    excluded = _excluded(store, "dave")
    assert excluded[("tag", "5")] == "hidden"
    assert excluded[("tag", "4")] == "empty"


def test_recompute_all_users_covers_users_without_rules(store, library):
    """Test that users known only through their overlay rows get empty containers too."""
    library.set_rating("erin", "scene", "101", "main", rating100=50)
    with store.connection() as conn:
        conn.execute("UPDATE scenes SET deleted_at = '2025-02-01 00:00:00' WHERE id = '101'")
        conn.commit()

    assert ExclusionComputer(store).recompute_all_users() == 1
    excluded = _excluded(store, "erin")
    assert excluded[("studio", "21")] == "empty"
    assert excluded[("tag", "3")] == "empty"


def test_removing_restriction_clears_exclusions(store, library):
    """Test that clearing a restriction removes everything it caused."""
    library.set_restriction("alice", "tag", "EXCLUDE", ["2"])
    library.set_restriction("alice", "tag", None, [])

    assert _excluded(store, "alice") == {}


def test_other_users_are_untouched(store, library):
    """Test that one user's rules never leak into another user's set."""
    library.hide_entity("bob", "scene", "101")
    library.set_restriction("alice", "studio", "EXCLUDE", ["20"])

    # studio 21 and tag 3 only had scene 101
    assert set(_excluded(store, "bob")) == {("scene", "101"), ("studio", "21"), ("tag", "3")}
    assert ("scene", "101") not in _excluded(store, "alice")


def test_restriction_on_unsupported_type_is_rejected(library):
    """Test that restrictions on scenes and unknown modes are refused."""
    with pytest.raises(ValueError):
        library.set_restriction("alice", "scene", "EXCLUDE", ["100"])
    with pytest.raises(ValueError):
        library.set_restriction("alice", "tag", "MAYBE", ["1"])
