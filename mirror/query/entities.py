"""Per-entity query configuration: which fields filter how, which sorts exist,
which relations hydrate. The entity row is always aliased `e`.
"""

from __future__ import annotations

import dataclasses
from typing import Optional

from ..models import ENTITY_MODELS, Link, link, links_for

# Upstream aggregates and bookkeeping never returned as row data; per-user
# values come from the overlay tables instead.
HIDDEN_COLUMNS = {
    "rating100", "favorite", "o_counter", "play_count", "play_duration",
    "deleted_at", "synced_at",
}
JSON_COLUMNS = {"urls", "alias_list", "aliases", "inherited_tag_ids", "inherited_fields"}

TABLES = {etype: model.__tablename__ for etype, model in ENTITY_MODELS.items()}
LABELS = {
    "scene": "title",
    "performer": "name",
    "studio": "name",
    "tag": "name",
    "group": "name",
    "gallery": "title",
    "image": "title",
}


@dataclasses.dataclass(frozen=True)
class RelationField:
    """An id-set field: a junction, a direct column, or the entity's own id."""

    target: str
    link: Optional[Link] = None
    column: Optional[str] = None
    # JSON column holding more ids of the same relation (same instance)
    extra_json: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class HierarchyField:
    relation: str  # id field the expanded set is matched against
    tree: str  # tag | studio | group


@dataclasses.dataclass(frozen=True)
class OverlayJoin:
    alias: str
    sql: str
    columns: dict[str, str]


RATINGS = OverlayJoin(
    "ur",
    "LEFT JOIN user_ratings ur ON ur.user_id = :user_id AND ur.entity_type = '{etype}' "
    "AND ur.entity_id = e.id AND ur.instance_id = e.instance_id",
    {"rating": "ur.rating100", "favorite": "COALESCE(ur.favorite, 0)"},
)
WATCH = OverlayJoin(
    "wh",
    "LEFT JOIN watch_history wh ON wh.user_id = :user_id "
    "AND wh.scene_id = e.id AND wh.instance_id = e.instance_id",
    {
        "play_count": "COALESCE(wh.play_count, 0)",
        "play_duration": "COALESCE(wh.play_duration, 0)",
        "resume_time": "COALESCE(wh.resume_time, 0)",
        "o_count": "COALESCE(wh.o_count, 0)",
        "last_played_at": "wh.last_played_at",
    },
)
VIEWS = OverlayJoin(
    "iv",
    "LEFT JOIN image_view_history iv ON iv.user_id = :user_id "
    "AND iv.image_id = e.id AND iv.instance_id = e.instance_id",
    {
        "view_count": "COALESCE(iv.view_count, 0)",
        "o_count": "COALESCE(iv.o_count, 0)",
        "last_viewed_at": "iv.last_viewed_at",
    },
)


def _scene_count(link_table: str, owner_col: str) -> str:
    inst = owner_col[:-3] + "_instance_id"
    return (
        f"(SELECT COUNT(*) FROM {link_table} j JOIN scenes x ON x.id = j.scene_id "
        f"AND x.instance_id = j.scene_instance_id AND x.deleted_at IS NULL "
        f"WHERE j.{owner_col} = e.id AND j.{inst} = e.instance_id)"
    )


STUDIO_SCENE_COUNT = (
    "(SELECT COUNT(*) FROM scenes x WHERE x.studio_id = e.id "
    "AND x.instance_id = e.instance_id AND x.deleted_at IS NULL)"
)


@dataclasses.dataclass(frozen=True)
class EntityConfig:
    entity_type: str
    text_fields: dict[str, str]
    range_fields: dict[str, str]
    bool_fields: dict[str, str]
    id_fields: dict[str, RelationField]
    hierarchy_fields: dict[str, HierarchyField]
    sorts: dict[str, str]
    default_sort: str
    overlays: tuple[OverlayJoin, ...] = (RATINGS,)
    fts_table: Optional[str] = None
    # output key -> (column on e, target entity type)
    single_relations: dict[str, tuple[str, str]] = dataclasses.field(default_factory=dict)

    @property
    def table(self) -> str:
        return TABLES[self.entity_type]

    @property
    def columns(self) -> list[str]:
        model = ENTITY_MODELS[self.entity_type]
        return [c.name for c in model.__table__.columns if c.name not in HIDDEN_COLUMNS]

    @property
    def links(self) -> list[Link]:
        return links_for(self.entity_type)

    def overlay_columns(self) -> dict[str, str]:
        merged: dict[str, str] = {}
        for overlay in self.overlays:
            merged.update(overlay.columns)
        return merged


def _common_ranges() -> dict[str, str]:
    return {
        "created_at": "e.upstream_created_at",
        "updated_at": "e.upstream_updated_at",
    }


def _common_sorts(label: str) -> dict[str, str]:
    return {
        label: f"LOWER(e.{label})",
        "created_at": "e.upstream_created_at",
        "updated_at": "e.upstream_updated_at",
        "id": "CAST(e.id AS INTEGER)",
    }


ENTITY_CONFIGS: dict[str, EntityConfig] = {
    "scene": EntityConfig(
        entity_type="scene",
        text_fields={
            "title": "e.title",
            "details": "e.details",
            "code": "e.code",
            "director": "e.director",
            "path": "e.file_path",
        },
        range_fields={
            **_common_ranges(),
            "rating": "ur.rating100",
            "date": "e.date",
            "duration": "e.duration",
            "file_size": "e.file_size",
            "width": "e.width",
            "height": "e.height",
            "frame_rate": "e.frame_rate",
            "bit_rate": "e.bit_rate",
            "play_count": WATCH.columns["play_count"],
            "play_duration": WATCH.columns["play_duration"],
            "resume_time": WATCH.columns["resume_time"],
            "o_count": WATCH.columns["o_count"],
            "last_played_at": "wh.last_played_at",
        },
        bool_fields={
            "favorite": RATINGS.columns["favorite"],
            "organized": "e.organized",
            "played": "(COALESCE(wh.play_count, 0) > 0)",
        },
        id_fields={
            "ids": RelationField("scene"),
            "performers": RelationField("performer", link=link("scene_performers")),
            "tags": RelationField("tag", link=link("scene_tags"), extra_json="inherited_tag_ids"),
            "studios": RelationField("studio", column="studio_id"),
            "groups": RelationField("group", link=link("scene_groups")),
            "galleries": RelationField("gallery", link=link("scene_galleries")),
        },
        hierarchy_fields={
            "tags": HierarchyField("tags", "tag"),
            "studios": HierarchyField("studios", "studio"),
            "groups": HierarchyField("groups", "group"),
        },
        sorts={
            **_common_sorts("title"),
            "date": "e.date",
            "duration": "e.duration",
            "file_size": "e.file_size",
            "rating": "ur.rating100",
            "play_count": WATCH.columns["play_count"],
            "o_count": WATCH.columns["o_count"],
            "last_played_at": "wh.last_played_at",
            "resume_time": WATCH.columns["resume_time"],
        },
        default_sort="created_at",
        overlays=(RATINGS, WATCH),
        fts_table="scene_fts",
        single_relations={"studio": ("studio_id", "studio")},
    ),
    "performer": EntityConfig(
        entity_type="performer",
        text_fields={
            "name": "e.name",
            "disambiguation": "e.disambiguation",
            "details": "e.details",
            "gender": "e.gender",
            "country": "e.country",
            "ethnicity": "e.ethnicity",
        },
        range_fields={
            **_common_ranges(),
            "rating": "ur.rating100",
            "birthdate": "e.birthdate",
            "height_cm": "e.height_cm",
            "scene_count": _scene_count("scene_performers", "performer_id"),
        },
        bool_fields={"favorite": RATINGS.columns["favorite"]},
        id_fields={
            "ids": RelationField("performer"),
            "tags": RelationField("tag", link=link("performer_tags")),
        },
        hierarchy_fields={"tags": HierarchyField("tags", "tag")},
        sorts={
            **_common_sorts("name"),
            "birthdate": "e.birthdate",
            "height_cm": "e.height_cm",
            "rating": "ur.rating100",
            "scene_count": _scene_count("scene_performers", "performer_id"),
        },
        default_sort="name",
        fts_table="performer_fts",
    ),
    "studio": EntityConfig(
        entity_type="studio",
        text_fields={"name": "e.name", "details": "e.details", "url": "e.url"},
        range_fields={
            **_common_ranges(),
            "rating": "ur.rating100",
            "scene_count": STUDIO_SCENE_COUNT,
        },
        bool_fields={"favorite": RATINGS.columns["favorite"]},
        id_fields={
            "ids": RelationField("studio"),
            "tags": RelationField("tag", link=link("studio_tags")),
            "parents": RelationField("studio", column="parent_id"),
        },
        hierarchy_fields={
            "ids": HierarchyField("ids", "studio"),
            "tags": HierarchyField("tags", "tag"),
        },
        sorts={
            **_common_sorts("name"),
            "rating": "ur.rating100",
            "scene_count": STUDIO_SCENE_COUNT,
        },
        default_sort="name",
        single_relations={"parent": ("parent_id", "studio")},
    ),
    "tag": EntityConfig(
        entity_type="tag",
        text_fields={"name": "e.name", "description": "e.description"},
        range_fields={
            **_common_ranges(),
            "scene_count": _scene_count("scene_tags", "tag_id"),
        },
        bool_fields={"favorite": RATINGS.columns["favorite"]},
        id_fields={
            "ids": RelationField("tag"),
            "parents": RelationField("tag", link=link("tag_parents")),
        },
        hierarchy_fields={"ids": HierarchyField("ids", "tag")},
        sorts={
            **_common_sorts("name"),
            "scene_count": _scene_count("scene_tags", "tag_id"),
        },
        default_sort="name",
    ),
    "group": EntityConfig(
        entity_type="group",
        text_fields={"name": "e.name", "director": "e.director", "synopsis": "e.synopsis"},
        range_fields={
            **_common_ranges(),
            "rating": "ur.rating100",
            "date": "e.date",
            "duration": "e.duration",
            "scene_count": _scene_count("scene_groups", "group_id"),
        },
        bool_fields={"favorite": RATINGS.columns["favorite"]},
        id_fields={
            "ids": RelationField("group"),
            "tags": RelationField("tag", link=link("group_tags")),
            "studios": RelationField("studio", column="studio_id"),
            "parents": RelationField("group", column="parent_id"),
        },
        hierarchy_fields={
            "ids": HierarchyField("ids", "group"),
            "tags": HierarchyField("tags", "tag"),
            "studios": HierarchyField("studios", "studio"),
        },
        sorts={
            **_common_sorts("name"),
            "date": "e.date",
            "duration": "e.duration",
            "rating": "ur.rating100",
            "scene_count": _scene_count("scene_groups", "group_id"),
        },
        default_sort="name",
        single_relations={"studio": ("studio_id", "studio"), "parent": ("parent_id", "group")},
    ),
    "gallery": EntityConfig(
        entity_type="gallery",
        text_fields={
            "title": "e.title",
            "details": "e.details",
            "photographer": "e.photographer",
            "code": "e.code",
            "path": "e.folder_path",
        },
        range_fields={
            **_common_ranges(),
            "rating": "ur.rating100",
            "date": "e.date",
            "image_count": "e.image_count",
        },
        bool_fields={"favorite": RATINGS.columns["favorite"]},
        id_fields={
            "ids": RelationField("gallery"),
            "tags": RelationField("tag", link=link("gallery_tags")),
            "performers": RelationField("performer", link=link("gallery_performers")),
            "studios": RelationField("studio", column="studio_id"),
        },
        hierarchy_fields={
            "tags": HierarchyField("tags", "tag"),
            "studios": HierarchyField("studios", "studio"),
        },
        sorts={
            **_common_sorts("title"),
            "date": "e.date",
            "rating": "ur.rating100",
            "image_count": "e.image_count",
        },
        default_sort="created_at",
        single_relations={"studio": ("studio_id", "studio")},
    ),
    "image": EntityConfig(
        entity_type="image",
        text_fields={
            "title": "e.title",
            "details": "e.details",
            "photographer": "e.photographer",
            "code": "e.code",
            "path": "e.file_path",
        },
        range_fields={
            **_common_ranges(),
            "rating": "ur.rating100",
            "date": "e.date",
            "width": "e.width",
            "height": "e.height",
            "file_size": "e.file_size",
            "o_count": VIEWS.columns["o_count"],
            "view_count": VIEWS.columns["view_count"],
        },
        bool_fields={
            "favorite": RATINGS.columns["favorite"],
            "organized": "e.organized",
        },
        id_fields={
            "ids": RelationField("image"),
            "tags": RelationField("tag", link=link("image_tags")),
            "performers": RelationField("performer", link=link("image_performers")),
            "studios": RelationField("studio", column="studio_id"),
            "galleries": RelationField("gallery", link=link("image_galleries")),
        },
        hierarchy_fields={
            "tags": HierarchyField("tags", "tag"),
            "studios": HierarchyField("studios", "studio"),
        },
        sorts={
            **_common_sorts("title"),
            "date": "e.date",
            "rating": "ur.rating100",
            "file_size": "e.file_size",
            "o_count": VIEWS.columns["o_count"],
            "view_count": VIEWS.columns["view_count"],
        },
        default_sort="created_at",
        overlays=(RATINGS, VIEWS),
        single_relations={"studio": ("studio_id", "studio")},
    ),
}
