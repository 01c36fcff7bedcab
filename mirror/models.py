"""SQLModel database models for stash-mirror.

Every mirrored entity is keyed by (id, instance_id): `id` is the upstream id,
`instance_id` the configured upstream instance. Junction tables carry both
halves of both keys and have no foreign keys, so a link may point at an entity
that has not been synced yet.
"""

import dataclasses
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DDL, UniqueConstraint, event
from sqlmodel import Field, SQLModel

# Bumped together with a new migration script; a mismatch with the value
# recorded on a sync_state row forces the next smart sync to run full.
SCHEMA_REVISION = "0001"

# Sync order: referenced types before the types that reference them.
ENTITY_TYPES = ("tag", "studio", "performer", "group", "gallery", "scene", "image")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MirroredEntity(SQLModel):
    id: str = Field(primary_key=True)
    instance_id: str = Field(primary_key=True)
    upstream_created_at: Optional[str] = None
    upstream_updated_at: Optional[str] = None
    synced_at: datetime = Field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = Field(default=None, index=True)


class Scene(MirroredEntity, table=True):
    __tablename__ = "scenes"
    title: Optional[str] = None
    code: Optional[str] = None
    date: Optional[str] = None
    details: Optional[str] = None
    director: Optional[str] = None
    urls: Optional[str] = None  # JSON list
    studio_id: Optional[str] = Field(default=None, index=True)
    rating100: Optional[int] = None
    organized: bool = False
    duration: Optional[float] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    frame_rate: Optional[float] = None
    bit_rate: Optional[int] = None
    path_screenshot: Optional[str] = None
    path_preview: Optional[str] = None
    path_stream: Optional[str] = None
    # Upstream aggregates, never presented as a user's own values
    o_counter: int = 0
    play_count: int = 0
    play_duration: float = 0
    inherited_tag_ids: Optional[str] = None  # JSON list, derived


class Performer(MirroredEntity, table=True):
    __tablename__ = "performers"
    name: str = ""
    disambiguation: Optional[str] = None
    gender: Optional[str] = None
    birthdate: Optional[str] = None
    country: Optional[str] = None
    ethnicity: Optional[str] = None
    height_cm: Optional[int] = None
    details: Optional[str] = None
    alias_list: Optional[str] = None  # JSON list
    favorite: bool = False
    rating100: Optional[int] = None
    image_path: Optional[str] = None


class Studio(MirroredEntity, table=True):
    __tablename__ = "studios"
    name: str = ""
    parent_id: Optional[str] = Field(default=None, index=True)
    details: Optional[str] = None
    url: Optional[str] = None
    favorite: bool = False
    rating100: Optional[int] = None
    image_path: Optional[str] = None


class Tag(MirroredEntity, table=True):
    __tablename__ = "tags"
    name: str = ""
    description: Optional[str] = None
    aliases: Optional[str] = None  # JSON list
    favorite: bool = False
    image_path: Optional[str] = None


class Group(MirroredEntity, table=True):
    __tablename__ = "groups"
    name: str = ""
    date: Optional[str] = None
    studio_id: Optional[str] = Field(default=None, index=True)
    parent_id: Optional[str] = None  # first containing group
    director: Optional[str] = None
    synopsis: Optional[str] = None
    duration: Optional[int] = None
    rating100: Optional[int] = None
    front_image_path: Optional[str] = None


class Gallery(MirroredEntity, table=True):
    __tablename__ = "galleries"
    title: Optional[str] = None
    code: Optional[str] = None
    date: Optional[str] = None
    details: Optional[str] = None
    photographer: Optional[str] = None
    studio_id: Optional[str] = Field(default=None, index=True)
    folder_path: Optional[str] = None
    image_count: int = 0
    rating100: Optional[int] = None
    cover_path: Optional[str] = None


class Image(MirroredEntity, table=True):
    __tablename__ = "images"
    title: Optional[str] = None
    code: Optional[str] = None
    date: Optional[str] = None
    details: Optional[str] = None
    photographer: Optional[str] = None
    studio_id: Optional[str] = Field(default=None, index=True)
    rating100: Optional[int] = None
    o_counter: int = 0
    organized: bool = False
    file_path: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    file_size: Optional[int] = None
    path_thumbnail: Optional[str] = None
    path_image: Optional[str] = None
    inherited_fields: Optional[str] = None  # JSON list of fields filled from a gallery


ENTITY_MODELS = {
    "scene": Scene,
    "performer": Performer,
    "studio": Studio,
    "tag": Tag,
    "group": Group,
    "gallery": Gallery,
    "image": Image,
}


# --- Junctions ---


class ScenePerformer(SQLModel, table=True):
    __tablename__ = "scene_performers"
    scene_id: str = Field(primary_key=True)
    scene_instance_id: str = Field(primary_key=True)
    performer_id: str = Field(primary_key=True, index=True)
    performer_instance_id: str = Field(primary_key=True)


class SceneTag(SQLModel, table=True):
    __tablename__ = "scene_tags"
    scene_id: str = Field(primary_key=True)
    scene_instance_id: str = Field(primary_key=True)
    tag_id: str = Field(primary_key=True, index=True)
    tag_instance_id: str = Field(primary_key=True)


class SceneGroup(SQLModel, table=True):
    __tablename__ = "scene_groups"
    scene_id: str = Field(primary_key=True)
    scene_instance_id: str = Field(primary_key=True)
    group_id: str = Field(primary_key=True, index=True)
    group_instance_id: str = Field(primary_key=True)
    scene_index: Optional[int] = None


class SceneGallery(SQLModel, table=True):
    __tablename__ = "scene_galleries"
    scene_id: str = Field(primary_key=True)
    scene_instance_id: str = Field(primary_key=True)
    gallery_id: str = Field(primary_key=True, index=True)
    gallery_instance_id: str = Field(primary_key=True)


class PerformerTag(SQLModel, table=True):
    __tablename__ = "performer_tags"
    performer_id: str = Field(primary_key=True)
    performer_instance_id: str = Field(primary_key=True)
    tag_id: str = Field(primary_key=True, index=True)
    tag_instance_id: str = Field(primary_key=True)


class StudioTag(SQLModel, table=True):
    __tablename__ = "studio_tags"
    studio_id: str = Field(primary_key=True)
    studio_instance_id: str = Field(primary_key=True)
    tag_id: str = Field(primary_key=True, index=True)
    tag_instance_id: str = Field(primary_key=True)


class GroupTag(SQLModel, table=True):
    __tablename__ = "group_tags"
    group_id: str = Field(primary_key=True)
    group_instance_id: str = Field(primary_key=True)
    tag_id: str = Field(primary_key=True, index=True)
    tag_instance_id: str = Field(primary_key=True)


class GalleryTag(SQLModel, table=True):
    __tablename__ = "gallery_tags"
    gallery_id: str = Field(primary_key=True)
    gallery_instance_id: str = Field(primary_key=True)
    tag_id: str = Field(primary_key=True, index=True)
    tag_instance_id: str = Field(primary_key=True)


class GalleryPerformer(SQLModel, table=True):
    __tablename__ = "gallery_performers"
    gallery_id: str = Field(primary_key=True)
    gallery_instance_id: str = Field(primary_key=True)
    performer_id: str = Field(primary_key=True, index=True)
    performer_instance_id: str = Field(primary_key=True)


class ImagePerformer(SQLModel, table=True):
    __tablename__ = "image_performers"
    image_id: str = Field(primary_key=True)
    image_instance_id: str = Field(primary_key=True)
    performer_id: str = Field(primary_key=True, index=True)
    performer_instance_id: str = Field(primary_key=True)
    inherited: bool = False


class ImageTag(SQLModel, table=True):
    __tablename__ = "image_tags"
    image_id: str = Field(primary_key=True)
    image_instance_id: str = Field(primary_key=True)
    tag_id: str = Field(primary_key=True, index=True)
    tag_instance_id: str = Field(primary_key=True)
    inherited: bool = False


class ImageGallery(SQLModel, table=True):
    __tablename__ = "image_galleries"
    image_id: str = Field(primary_key=True)
    image_instance_id: str = Field(primary_key=True)
    gallery_id: str = Field(primary_key=True, index=True)
    gallery_instance_id: str = Field(primary_key=True)


class TagParent(SQLModel, table=True):
    __tablename__ = "tag_parents"
    child_id: str = Field(primary_key=True)
    child_instance_id: str = Field(primary_key=True)
    parent_id: str = Field(primary_key=True, index=True)
    parent_instance_id: str = Field(primary_key=True)


@dataclasses.dataclass(frozen=True)
class Link:
    """A junction table seen from its owning entity."""

    table: str
    owner: str
    target: str
    owner_col: str
    target_col: str
    relation: str

    @property
    def owner_instance_col(self) -> str:
        return self.owner_col[:-3] + "_instance_id"

    @property
    def target_instance_col(self) -> str:
        return self.target_col[:-3] + "_instance_id"


LINKS = (
    Link("scene_performers", "scene", "performer", "scene_id", "performer_id", "performers"),
    Link("scene_tags", "scene", "tag", "scene_id", "tag_id", "tags"),
    Link("scene_groups", "scene", "group", "scene_id", "group_id", "groups"),
    Link("scene_galleries", "scene", "gallery", "scene_id", "gallery_id", "galleries"),
    Link("performer_tags", "performer", "tag", "performer_id", "tag_id", "tags"),
    Link("studio_tags", "studio", "tag", "studio_id", "tag_id", "tags"),
    Link("group_tags", "group", "tag", "group_id", "tag_id", "tags"),
    Link("gallery_tags", "gallery", "tag", "gallery_id", "tag_id", "tags"),
    Link("gallery_performers", "gallery", "performer", "gallery_id", "performer_id", "performers"),
    Link("image_performers", "image", "performer", "image_id", "performer_id", "performers"),
    Link("image_tags", "image", "tag", "image_id", "tag_id", "tags"),
    Link("image_galleries", "image", "gallery", "image_id", "gallery_id", "galleries"),
    Link("tag_parents", "tag", "tag", "child_id", "parent_id", "parents"),
)


def links_for(entity_type: str) -> list[Link]:
    return [link for link in LINKS if link.owner == entity_type]


def link(table: str) -> Link:
    for candidate in LINKS:
        if candidate.table == table:
            return candidate
    raise KeyError(table)


# --- Bookkeeping ---


class SyncState(SQLModel, table=True):
    __tablename__ = "sync_state"
    __table_args__ = (UniqueConstraint("instance_id", "entity_type"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    instance_id: str = Field(index=True)
    entity_type: str
    # Highest upstream updated_at seen; the next incremental starts after it
    last_full_sync_timestamp: Optional[str] = None
    last_incremental_sync_timestamp: Optional[str] = None
    # Wall-clock completion times
    last_full_sync_actual: Optional[datetime] = None
    last_incremental_sync_actual: Optional[datetime] = None
    last_sync_kind: Optional[str] = None
    last_sync_count: int = 0
    last_sync_duration_ms: int = 0
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    total_entities: int = 0
    schema_revision: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)


class UserContentRestriction(SQLModel, table=True):
    __tablename__ = "user_content_restrictions"
    __table_args__ = (UniqueConstraint("user_id", "entity_type", "instance_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    entity_type: str  # tag | studio | group | gallery
    mode: str  # INCLUDE | EXCLUDE
    entity_ids: str = "[]"  # JSON list
    instance_id: str = ""  # "" applies to every instance
    created_at: datetime = Field(default_factory=_utcnow)


class UserHiddenEntity(SQLModel, table=True):
    __tablename__ = "user_hidden_entities"
    __table_args__ = (
        UniqueConstraint("user_id", "entity_type", "entity_id", "instance_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    entity_type: str
    entity_id: str
    instance_id: str = ""
    hidden_at: datetime = Field(default_factory=_utcnow)


class UserExcludedEntity(SQLModel, table=True):
    __tablename__ = "user_excluded_entities"

    user_id: str = Field(primary_key=True)
    entity_type: str = Field(primary_key=True)
    entity_id: str = Field(primary_key=True)
    instance_id: str = Field(primary_key=True)
    reason: str  # restricted | hidden | cascade | empty


# --- Per-user overlay (never written by sync) ---


class UserRating(SQLModel, table=True):
    __tablename__ = "user_ratings"

    user_id: str = Field(primary_key=True)
    instance_id: str = Field(primary_key=True)
    entity_type: str = Field(primary_key=True)
    entity_id: str = Field(primary_key=True)
    rating100: Optional[int] = None
    favorite: bool = False
    updated_at: datetime = Field(default_factory=_utcnow)


class WatchHistory(SQLModel, table=True):
    __tablename__ = "watch_history"

    user_id: str = Field(primary_key=True)
    instance_id: str = Field(primary_key=True)
    scene_id: str = Field(primary_key=True)
    play_count: int = 0
    play_duration: float = 0
    resume_time: float = 0
    last_played_at: Optional[datetime] = None
    o_count: int = 0
    o_history: str = "[]"  # JSON list of timestamps
    play_history: str = "[]"  # JSON list of timestamps


class ImageViewHistory(SQLModel, table=True):
    __tablename__ = "image_view_history"

    user_id: str = Field(primary_key=True)
    instance_id: str = Field(primary_key=True)
    image_id: str = Field(primary_key=True)
    view_count: int = 0
    o_count: int = 0
    last_viewed_at: Optional[datetime] = None


# --- Full-text shadows ---
# External-content FTS5 tables kept in step by triggers only.

FTS_SOURCES = {
    "scene_fts": ("scenes", ("title", "details", "code")),
    "performer_fts": ("performers", ("name", "alias_list")),
}


def fts_statements(fts_table: str) -> list[str]:
    source, columns = FTS_SOURCES[fts_table]
    cols = ", ".join(columns)
    new_vals = ", ".join(f"new.{c}" for c in columns)
    old_vals = ", ".join(f"old.{c}" for c in columns)
    return [
        f"CREATE VIRTUAL TABLE IF NOT EXISTS {fts_table} USING fts5("
        f"{cols}, content='{source}', content_rowid='rowid')",
        f"CREATE TRIGGER IF NOT EXISTS {source}_fts_ai AFTER INSERT ON {source} BEGIN "
        f"INSERT INTO {fts_table}(rowid, {cols}) VALUES (new.rowid, {new_vals}); END",
        f"CREATE TRIGGER IF NOT EXISTS {source}_fts_ad AFTER DELETE ON {source} BEGIN "
        f"INSERT INTO {fts_table}({fts_table}, rowid, {cols}) "
        f"VALUES ('delete', old.rowid, {old_vals}); END",
        f"CREATE TRIGGER IF NOT EXISTS {source}_fts_au AFTER UPDATE OF {cols} ON {source} BEGIN "
        f"INSERT INTO {fts_table}({fts_table}, rowid, {cols}) "
        f"VALUES ('delete', old.rowid, {old_vals}); "
        f"INSERT INTO {fts_table}(rowid, {cols}) VALUES (new.rowid, {new_vals}); END",
    ]


for _fts_table, (_source, _cols) in FTS_SOURCES.items():
    _model = Scene if _source == "scenes" else Performer
    for _statement in fts_statements(_fts_table):
        event.listen(_model.__table__, "after_create", DDL(_statement))
