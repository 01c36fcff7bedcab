"""Tests for the query builder: filters, sorting, paging, overlay and hydration."""

import pytest
from pydantic import ValidationError

from mirror.config import QueryConfig
from mirror.derived import run_derived_pipeline
from mirror.errors import QueryError
from mirror.overlay import UserActions
from mirror.query import (
    BooleanCriterion,
    HierarchyCriterion,
    IdSetCriterion,
    QueryBuilder,
    QuerySpec,
    RangeCriterion,
    TextCriterion,
    fts_query,
    parse_ref,
)
from mirror.query.ordering import default_seed
from mirror.sync import SyncOrchestrator


@pytest.fixture
def builder(store, source, sync_settings):
    source.add("tag", 1, name="Outdoor")
    source.add("tag", 2, name="Beach", parents=[{"id": "1"}])
    source.add("tag", 3, name="Sunset", parents=[{"id": "2"}])
    source.add("performer", 10, name="Alice Smith", alias_list=["Ally"], tags=[{"id": "2"}])
    source.add("performer", 11, name="Bea Jones")
    source.add("studio", 20, name="Parent Studio")
    source.add("studio", 21, name="Child Studio", parent_studio={"id": "20"})
    for i in range(1, 13):
        source.add(
            "scene", i,
            updated_at=f"2025-01-{i:02d}T00:00:00Z",
            title=f"Scene {i:02d}",
            rating100=90,
            o_counter=3,
            play_count=5,
            organized=i % 2 == 0,
            studio={"id": "21"} if i <= 3 else None,
            performers=[{"id": "10"}] if i <= 4 else [{"id": "11"}, {"id": "404"}],
            tags=[{"id": "3"}] if i == 12 else [],
        )
    source.data["scene"]["5"]["title"] = "Sunny beach morning"
    SyncOrchestrator(store, {"main": source}, sync_settings).sync("full", derive=False)
    run_derived_pipeline(store)
    return QueryBuilder(store, QueryConfig(default_per_page=5, max_per_page=50))


def _spec(**kwargs):
    kwargs.setdefault("entity_type", "scene")
    kwargs.setdefault("user_id", "alice")
    return QuerySpec(**kwargs)


def _ids(result):
    return [row["id"] for row in result.rows]


def test_pagination_is_complete_and_disjoint(builder):
    """Test that walking every page returns each row exactly once."""
    seen = []
    page = 1
    while True:
        result = builder.execute(_spec(sort="title", per_page=5, page=page))
        assert result.total_count == 12
        if not result.rows:
            break
        seen.extend(_ids(result))
        page += 1

    assert len(seen) == 12
    assert len(set(seen)) == 12


def test_random_order_is_deterministic_per_seed(builder):
    """Test that the same seed gives the same order and another seed a different one."""
    first = _ids(builder.execute(_spec(sort="random", random_seed=7, per_page=50)))
    again = _ids(builder.execute(_spec(sort="random", random_seed=7, per_page=50)))
    other = _ids(builder.execute(_spec(sort="random", random_seed=8, per_page=50)))

    assert first == again
    assert sorted(first) == sorted(other)
    assert first != other


def test_random_pages_cover_everything(builder):
    """Test that random pages with a fixed seed cover the whole set."""
    seen = []
    for page in (1, 2, 3):
        seen.extend(_ids(builder.execute(_spec(sort="random", random_seed=3, per_page=5, page=page))))
    assert sorted(seen) == sorted(str(i) for i in range(1, 13))


def test_default_seed_is_stable_within_a_bucket():
    """Test that the default seed only changes between time buckets and users."""
    from datetime import datetime, timezone

    a = default_seed("alice", 60, datetime(2025, 1, 1, 10, 5, tzinfo=timezone.utc))
    b = default_seed("alice", 60, datetime(2025, 1, 1, 10, 55, tzinfo=timezone.utc))
    c = default_seed("alice", 60, datetime(2025, 1, 1, 11, 5, tzinfo=timezone.utc))
    assert a == b
    assert a != c
    assert a != default_seed("bob", 60, datetime(2025, 1, 1, 10, 5, tzinfo=timezone.utc))


def test_overlay_defaults_hide_upstream_aggregates(builder):
    """Test that upstream ratings and counters never leak into a user's row."""
    row = builder.get_by_ids("scene", ["1"], "alice")[0]

    assert row["rating"] is None
    assert row["favorite"] is False
    assert row["play_count"] == 0
    assert row["o_count"] == 0
    assert "rating100" not in row
    assert "o_counter" not in row


def test_overlay_is_per_user(store, builder):
    """Test that ratings and plays only show for the user who made them."""
    actions = UserActions(store)
    actions.set_rating("alice", "scene", "1", "main", rating100=80, favorite=True)
    actions.record_play("alice", "main", "1", duration=30.0, resume_time=12.5)

    alice = builder.get_by_ids("scene", ["1"], "alice")[0]
    bob = builder.get_by_ids("scene", ["1"], "bob")[0]

    assert (alice["rating"], alice["favorite"], alice["play_count"]) == (80, True, 1)
    assert alice["resume_time"] == 12.5
    assert (bob["rating"], bob["favorite"], bob["play_count"]) == (None, False, 0)

    rated = builder.execute(_spec(criteria=[RangeCriterion(field="rating", modifier="greater_than", value=50)]))
    assert _ids(rated) == ["1"]
    favorites = builder.execute(_spec(user_id="bob", criteria=[BooleanCriterion(field="favorite")]))
    assert favorites.total_count == 0


def test_id_set_filters(builder):
    """Test the includes, excludes, includes_all and is_null modifiers."""
    includes = builder.execute(_spec(per_page=50, criteria=[IdSetCriterion(field="performers", values=["10"])]))
    assert sorted(_ids(includes), key=int) == ["1", "2", "3", "4"]

    excludes = builder.execute(
        _spec(per_page=50, criteria=[IdSetCriterion(field="performers", modifier="excludes", values=["10:main"])])
    )
    assert excludes.total_count == 8

    all_of = builder.execute(
        _spec(per_page=50, criteria=[IdSetCriterion(field="performers", modifier="includes_all", values=["10", "11"])])
    )
    assert all_of.total_count == 0

    no_studio = builder.execute(_spec(per_page=50, criteria=[IdSetCriterion(field="studios", modifier="is_null")]))
    assert no_studio.total_count == 9


def test_tag_filter_matches_inherited_tags(builder):
    """Test that tag filters match tags inherited from performers."""
    # Scenes 1-4 inherit tag 2 from performer 10
    result = builder.execute(_spec(per_page=50, criteria=[IdSetCriterion(field="tags", values=["2"])]))
    assert sorted(_ids(result), key=int) == ["1", "2", "3", "4"]


def test_hierarchy_filter_follows_depth(builder):
    """Test that hierarchy filters expand to the requested depth."""
    exact = builder.execute(_spec(per_page=50, criteria=[HierarchyCriterion(field="tags", values=["1"], depth=0)]))
    assert exact.total_count == 0

    one_level = builder.execute(_spec(per_page=50, criteria=[HierarchyCriterion(field="tags", values=["1"], depth=1)]))
    assert one_level.total_count == 4

    any_depth = builder.execute(_spec(per_page=50, criteria=[HierarchyCriterion(field="tags", values=["1"], depth=-1)]))
    assert sorted(_ids(any_depth), key=int) == ["1", "2", "3", "4", "12"]

    studios = builder.execute(
        _spec(per_page=50, criteria=[HierarchyCriterion(field="studios", values=["20"], depth=-1)])
    )
    assert studios.total_count == 3


def test_text_range_and_boolean_filters(builder):
    """Test text, boolean and range criteria."""
    text = builder.execute(_spec(criteria=[TextCriterion(field="title", value="BEACH")]))
    assert _ids(text) == ["5"]

    organized = builder.execute(_spec(per_page=50, criteria=[BooleanCriterion(field="organized", value=True)]))
    assert organized.total_count == 6

    between = builder.execute(
        _spec(per_page=50, criteria=[RangeCriterion(field="created_at", modifier="between",
                                                    value="2025-01-02", value2="2025-01-04T23:59:59Z")])
    )
    assert sorted(_ids(between), key=int) == ["2", "3", "4"]


def test_search_uses_full_text_index(builder):
    """Test full text search on titles and aliases."""
    result = builder.execute(_spec(search="sun"))
    assert _ids(result) == ["5"]

    performers = builder.execute(_spec(entity_type="performer", search="ally"))
    assert _ids(performers) == ["10"]

    # FTS operators are treated as plain words
    assert builder.execute(_spec(search='beach" OR "x')).total_count == 0


def test_fts_query_quotes_tokens():
    """Test that search words become quoted prefix terms."""
    assert fts_query("sunny beach") == '"sunny"* "beach"*'
    assert fts_query("  ") is None


def test_parse_ref():
    """Test splitting of "id" and "id:instance" references."""
    assert parse_ref("12") == ("12", None)
    assert parse_ref("12:main") == ("12", "main")


def test_unknown_sort_field_and_page_size_raise(builder):
    """Test that unknown fields, types and oversized pages raise QueryError."""
    with pytest.raises(QueryError):
        builder.execute(_spec(sort="loudness"))
    with pytest.raises(QueryError):
        builder.execute(_spec(criteria=[TextCriterion(field="lyrics", value="x")]))
    with pytest.raises(QueryError):
        builder.execute(_spec(per_page=51))
    with pytest.raises(QueryError):
        builder.get_by_ids("movie", ["1"], "alice")


def test_exclusions_apply_unless_disabled(store, builder):
    """Test that a user's exclusions hide rows unless turned off."""
    UserActions(store).hide_entity("alice", "performer", "10")

    visible = builder.execute(_spec(per_page=50))
    assert visible.total_count == 8
    assert builder.execute(_spec(user_id="bob", per_page=50)).total_count == 12
    assert builder.execute(_spec(per_page=50, apply_exclusions=False)).total_count == 12


def test_get_by_ids_keeps_requested_order(builder):
    """Test that rows come back in the order they were asked for."""
    rows = builder.get_by_ids("scene", ["3", "1:main", "999", "2"], "alice")
    assert _ids_from(rows) == ["3", "1", "2"]


def _ids_from(rows):
    return [row["id"] for row in rows]


def test_hydration_shapes(builder):
    """Test the shape of hydrated relations."""
    row = builder.get_by_ids("scene", ["1"], "alice")[0]

    assert row["studio"] == {"id": "21", "instance_id": "main", "name": "Child Studio"}
    assert [p["name"] for p in row["performers"]] == ["Alice Smith"]
    assert [t["id"] for t in row["inherited_tags"]] == ["2"]
    assert row["urls"] == []

    # Dangling performer 404 is stored but not returned
    dangling = builder.get_by_ids("scene", ["5"], "alice")[0]
    assert [p["id"] for p in dangling["performers"]] == ["11"]


def test_query_and_get_by_ids_hydrate_the_same(builder):
    """Test that both read paths return identical rows."""
    from_query = builder.execute(_spec(criteria=[IdSetCriterion(field="ids", values=["1"])])).rows[0]
    from_ids = builder.get_by_ids("scene", ["1"], "alice")[0]
    assert from_query == from_ids


def test_soft_deleted_rows_are_not_returned(store, source, sync_settings, builder):
    """Test that rows deleted upstream disappear from reads."""
    source.remove("scene", 12)
    SyncOrchestrator(store, {"main": source}, sync_settings).sync("full", entity_type="scene", derive=False)

    assert builder.execute(_spec(per_page=50)).total_count == 11
    assert builder.get_by_ids("scene", ["12"], "alice") == []


def test_random_seed_must_fit_a_sqlite_integer(builder):
    """Test that seeds outside the signed 64-bit range are rejected before any SQL runs."""
    with pytest.raises(ValidationError):
        _spec(sort="random", random_seed=2**63)
    with pytest.raises(ValidationError):
        _spec(sort="random", random_seed=-(2**63) - 1)

    largest = builder.execute(_spec(sort="random", random_seed=2**63 - 1, per_page=50))
    assert largest.total_count == 12


def test_oversized_range_value_is_a_query_error(builder):
    """Test that an integer SQLite cannot bind surfaces as QueryError."""
    with pytest.raises(QueryError):
        builder.execute(_spec(criteria=[RangeCriterion(field="rating", value=2**70)]))


def test_dangling_references_never_match(store, source, sync_settings, builder):
    """Test that ids the mirror does not hold behave like no reference at all."""
    dangling = builder.execute(_spec(per_page=50, criteria=[IdSetCriterion(field="performers", values=["404"])]))
    assert dangling.total_count == 0

    # scene 13 points at a studio that was never mirrored
    source.add("scene", 13, updated_at="2025-01-13T00:00:00Z", title="Orphan", studio={"id": "999"})
    SyncOrchestrator(store, {"main": source}, sync_settings).sync("full", entity_type="scene", derive=False)

    no_studio = builder.execute(_spec(per_page=50, criteria=[IdSetCriterion(field="studios", modifier="is_null")]))
    has_studio = builder.execute(_spec(per_page=50, criteria=[IdSetCriterion(field="studios", modifier="not_null")]))
    assert "13" in _ids(no_studio)
    assert sorted(_ids(has_studio), key=int) == ["1", "2", "3"]
    assert no_studio.total_count + has_studio.total_count == 13


def test_deleted_related_rows_stop_matching(store, source, sync_settings, builder):
    """Test that relation filters ignore related rows deleted upstream."""
    with_performer = [IdSetCriterion(field="performers", modifier="not_null")]
    assert builder.execute(_spec(per_page=50, criteria=with_performer)).total_count == 12

    source.remove("performer", 11)
    SyncOrchestrator(store, {"main": source}, sync_settings).sync("full", entity_type="performer", derive=False)

    assert sorted(_ids(builder.execute(_spec(per_page=50, criteria=with_performer))), key=int) == ["1", "2", "3", "4"]
    gone = builder.execute(_spec(per_page=50, criteria=[IdSetCriterion(field="performers", values=["11"])]))
    assert gone.total_count == 0


def test_instances_sharing_an_id_stay_apart(store, make_source, sync_settings):
    """Test that the same id on two instances is two rows with separate overlays."""
    main, backup = make_source(), make_source()
    main.add("scene", 42, title="Main copy")
    backup.add("scene", 42, title="Backup copy")
    SyncOrchestrator(store, {"main": main, "backup": backup}, sync_settings).sync("full", derive=False)
    actions = UserActions(store)
    actions.set_rating("alice", "scene", "42", "backup", rating100=60)
    actions.record_play("alice", "main", "42")
    builder = QueryBuilder(store)

    both = builder.execute(_spec(sort="title"))
    assert [(r["instance_id"], r["title"]) for r in both.rows] == [
        ("backup", "Backup copy"),
        ("main", "Main copy"),
    ]

    main_only = builder.execute(_spec(instance_id="main"))
    assert [(r["title"], r["rating"], r["play_count"]) for r in main_only.rows] == [("Main copy", None, 1)]

    backup_rows = builder.get_by_ids("scene", ["42"], "alice", instance_id="backup")
    assert [(r["title"], r["rating"], r["play_count"]) for r in backup_rows] == [("Backup copy", 60, 0)]
    assert [r["title"] for r in builder.get_by_ids("scene", ["42:main"], "alice")] == ["Main copy"]


def test_count_and_page_share_one_read_transaction(store, builder, monkeypatch):
    """Test that the count and the page are read inside the same transaction."""
    statements = []
    opened = store.get_connection

    def traced():
        conn = opened()
        conn.set_trace_callback(statements.append)
        return conn

    monkeypatch.setattr(store, "get_connection", traced)
    builder.execute(_spec(per_page=5))

    begin = statements.index("BEGIN")
    count = next(i for i, sql in enumerate(statements) if sql.startswith("SELECT COUNT(*)"))
    page = next(i for i, sql in enumerate(statements) if "LIMIT" in sql)
    assert begin < count < page
    assert "BEGIN" not in statements[begin + 1:page]
