"""Upstream entity payloads.

Each model parses one entity as returned by the Stash GraphQL API and knows
how to flatten itself into an entity row plus junction rows for one instance.
Unknown keys are ignored so upstream schema additions do not break sync.
"""

from __future__ import annotations

import json
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from .errors import UpstreamShapeError


class IdRef(BaseModel):
    model_config = {"extra": "ignore"}

    id: str


class SceneFile(BaseModel):
    model_config = {"extra": "ignore"}

    path: Optional[str] = None
    size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None
    frame_rate: Optional[float] = None
    bit_rate: Optional[int] = None


class ScenePaths(BaseModel):
    model_config = {"extra": "ignore"}

    screenshot: Optional[str] = None
    preview: Optional[str] = None
    stream: Optional[str] = None


class SceneGroupRef(BaseModel):
    model_config = {"extra": "ignore"}

    group: IdRef
    scene_index: Optional[int] = None


class ContainingGroupRef(BaseModel):
    model_config = {"extra": "ignore"}

    group: IdRef


class ImageFile(BaseModel):
    model_config = {"extra": "ignore"}

    path: Optional[str] = None
    size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None


class ImagePaths(BaseModel):
    model_config = {"extra": "ignore"}

    thumbnail: Optional[str] = None
    image: Optional[str] = None


class GalleryFolder(BaseModel):
    model_config = {"extra": "ignore"}

    path: Optional[str] = None


class GalleryPaths(BaseModel):
    model_config = {"extra": "ignore"}

    cover: Optional[str] = None


def _json_list(values: list[str]) -> str:
    return json.dumps(values)


def _pairs(instance_id: str, owner_id: str, refs: list[IdRef],
           owner_col: str, target_col: str) -> list[dict]:
    owner_inst = owner_col[:-3] + "_instance_id"
    target_inst = target_col[:-3] + "_instance_id"
    return [
        {owner_col: owner_id, owner_inst: instance_id, target_col: ref.id, target_inst: instance_id}
        for ref in _dedupe(refs)
    ]


def _dedupe(refs: list[IdRef]) -> list[IdRef]:
    seen = set()
    result = []
    for ref in refs:
        if ref.id not in seen:
            seen.add(ref.id)
            result.append(ref)
    return result


class EntityPayload(BaseModel):
    """Fields shared by every upstream entity."""

    model_config = {"extra": "ignore"}

    id: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def _base_row(self, instance_id: str) -> dict[str, Any]:
        return {
            "id": self.id,
            "instance_id": instance_id,
            "upstream_created_at": self.created_at,
            "upstream_updated_at": self.updated_at,
        }

    def to_row(self, instance_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def link_rows(self, instance_id: str) -> dict[str, list[dict]]:
        """Junction rows keyed by table. Every table listed is fully replaced."""
        return {}


class ScenePayload(EntityPayload):
    title: Optional[str] = None
    code: Optional[str] = None
    date: Optional[str] = None
    details: Optional[str] = None
    director: Optional[str] = None
    urls: list[str] = []
    rating100: Optional[int] = None
    organized: bool = False
    o_counter: Optional[int] = None
    play_count: Optional[int] = None
    play_duration: Optional[float] = None
    files: list[SceneFile] = []
    paths: Optional[ScenePaths] = None
    studio: Optional[IdRef] = None
    performers: list[IdRef] = []
    tags: list[IdRef] = []
    groups: list[SceneGroupRef] = []
    galleries: list[IdRef] = []

    def to_row(self, instance_id: str) -> dict[str, Any]:
        primary = self.files[0] if self.files else SceneFile()
        paths = self.paths or ScenePaths()
        row = self._base_row(instance_id)
        row.update(
            title=self.title,
            code=self.code,
            date=self.date,
            details=self.details,
            director=self.director,
            urls=_json_list(self.urls),
            studio_id=self.studio.id if self.studio else None,
            rating100=self.rating100,
            organized=self.organized,
            duration=primary.duration,
            file_path=primary.path,
            file_size=primary.size,
            width=primary.width,
            height=primary.height,
            video_codec=primary.video_codec,
            audio_codec=primary.audio_codec,
            frame_rate=primary.frame_rate,
            bit_rate=primary.bit_rate,
            path_screenshot=paths.screenshot,
            path_preview=paths.preview,
            path_stream=paths.stream,
            o_counter=self.o_counter or 0,
            play_count=self.play_count or 0,
            play_duration=self.play_duration or 0,
        )
        return row

    def link_rows(self, instance_id: str) -> dict[str, list[dict]]:
        groups = []
        seen = set()
        for ref in self.groups:
            if ref.group.id in seen:
                continue
            seen.add(ref.group.id)
            groups.append(
                {
                    "scene_id": self.id,
                    "scene_instance_id": instance_id,
                    "group_id": ref.group.id,
                    "group_instance_id": instance_id,
                    "scene_index": ref.scene_index,
                }
            )
        return {
            "scene_performers": _pairs(instance_id, self.id, self.performers, "scene_id", "performer_id"),
            "scene_tags": _pairs(instance_id, self.id, self.tags, "scene_id", "tag_id"),
            "scene_groups": groups,
            "scene_galleries": _pairs(instance_id, self.id, self.galleries, "scene_id", "gallery_id"),
        }


class PerformerPayload(EntityPayload):
    name: str = ""
    disambiguation: Optional[str] = None
    gender: Optional[str] = None
    birthdate: Optional[str] = None
    country: Optional[str] = None
    ethnicity: Optional[str] = None
    height_cm: Optional[int] = None
    details: Optional[str] = None
    alias_list: list[str] = []
    favorite: bool = False
    rating100: Optional[int] = None
    image_path: Optional[str] = None
    tags: list[IdRef] = []

    def to_row(self, instance_id: str) -> dict[str, Any]:
        row = self._base_row(instance_id)
        row.update(
            name=self.name,
            disambiguation=self.disambiguation,
            gender=self.gender,
            birthdate=self.birthdate,
            country=self.country,
            ethnicity=self.ethnicity,
            height_cm=self.height_cm,
            details=self.details,
            alias_list=_json_list(self.alias_list),
            favorite=self.favorite,
            rating100=self.rating100,
            image_path=self.image_path,
        )
        return row

    def link_rows(self, instance_id: str) -> dict[str, list[dict]]:
        return {
            "performer_tags": _pairs(instance_id, self.id, self.tags, "performer_id", "tag_id"),
        }


class StudioPayload(EntityPayload):
    name: str = ""
    parent_studio: Optional[IdRef] = None
    details: Optional[str] = None
    url: Optional[str] = None
    favorite: bool = False
    rating100: Optional[int] = None
    image_path: Optional[str] = None
    tags: list[IdRef] = []

    def to_row(self, instance_id: str) -> dict[str, Any]:
        row = self._base_row(instance_id)
        row.update(
            name=self.name,
            parent_id=self.parent_studio.id if self.parent_studio else None,
            details=self.details,
            url=self.url,
            favorite=self.favorite,
            rating100=self.rating100,
            image_path=self.image_path,
        )
        return row

    def link_rows(self, instance_id: str) -> dict[str, list[dict]]:
        return {
            "studio_tags": _pairs(instance_id, self.id, self.tags, "studio_id", "tag_id"),
        }


class TagPayload(EntityPayload):
    name: str = ""
    description: Optional[str] = None
    aliases: list[str] = []
    favorite: bool = False
    image_path: Optional[str] = None
    parents: list[IdRef] = []

    def to_row(self, instance_id: str) -> dict[str, Any]:
        row = self._base_row(instance_id)
        row.update(
            name=self.name,
            description=self.description,
            aliases=_json_list(self.aliases),
            favorite=self.favorite,
            image_path=self.image_path,
        )
        return row

    def link_rows(self, instance_id: str) -> dict[str, list[dict]]:
        return {
            "tag_parents": _pairs(instance_id, self.id, self.parents, "child_id", "parent_id"),
        }


class GroupPayload(EntityPayload):
    name: str = ""
    date: Optional[str] = None
    studio: Optional[IdRef] = None
    containing_groups: list[ContainingGroupRef] = []
    director: Optional[str] = None
    synopsis: Optional[str] = None
    duration: Optional[int] = None
    rating100: Optional[int] = None
    front_image_path: Optional[str] = None
    tags: list[IdRef] = []

    def to_row(self, instance_id: str) -> dict[str, Any]:
        row = self._base_row(instance_id)
        row.update(
            name=self.name,
            date=self.date,
            studio_id=self.studio.id if self.studio else None,
            parent_id=self.containing_groups[0].group.id if self.containing_groups else None,
            director=self.director,
            synopsis=self.synopsis,
            duration=self.duration,
            rating100=self.rating100,
            front_image_path=self.front_image_path,
        )
        return row

    def link_rows(self, instance_id: str) -> dict[str, list[dict]]:
        return {
            "group_tags": _pairs(instance_id, self.id, self.tags, "group_id", "tag_id"),
        }


class GalleryPayload(EntityPayload):
    title: Optional[str] = None
    code: Optional[str] = None
    date: Optional[str] = None
    details: Optional[str] = None
    photographer: Optional[str] = None
    studio: Optional[IdRef] = None
    folder: Optional[GalleryFolder] = None
    image_count: int = 0
    rating100: Optional[int] = None
    paths: Optional[GalleryPaths] = None
    performers: list[IdRef] = []
    tags: list[IdRef] = []

    def to_row(self, instance_id: str) -> dict[str, Any]:
        row = self._base_row(instance_id)
        row.update(
            title=self.title,
            code=self.code,
            date=self.date,
            details=self.details,
            photographer=self.photographer,
            studio_id=self.studio.id if self.studio else None,
            folder_path=self.folder.path if self.folder else None,
            image_count=self.image_count,
            rating100=self.rating100,
            cover_path=self.paths.cover if self.paths else None,
        )
        return row

    def link_rows(self, instance_id: str) -> dict[str, list[dict]]:
        return {
            "gallery_performers": _pairs(instance_id, self.id, self.performers, "gallery_id", "performer_id"),
            "gallery_tags": _pairs(instance_id, self.id, self.tags, "gallery_id", "tag_id"),
        }


class ImagePayload(EntityPayload):
    title: Optional[str] = None
    code: Optional[str] = None
    date: Optional[str] = None
    details: Optional[str] = None
    photographer: Optional[str] = None
    studio: Optional[IdRef] = None
    rating100: Optional[int] = None
    o_counter: Optional[int] = None
    organized: bool = False
    files: list[ImageFile] = []
    paths: Optional[ImagePaths] = None
    performers: list[IdRef] = []
    tags: list[IdRef] = []
    galleries: list[IdRef] = []

    def to_row(self, instance_id: str) -> dict[str, Any]:
        primary = self.files[0] if self.files else ImageFile()
        paths = self.paths or ImagePaths()
        row = self._base_row(instance_id)
        row.update(
            title=self.title,
            code=self.code,
            date=self.date,
            details=self.details,
            photographer=self.photographer,
            studio_id=self.studio.id if self.studio else None,
            rating100=self.rating100,
            o_counter=self.o_counter or 0,
            organized=self.organized,
            file_path=primary.path,
            width=primary.width,
            height=primary.height,
            file_size=primary.size,
            path_thumbnail=paths.thumbnail,
            path_image=paths.image,
            # Fresh upstream values; gallery inheritance runs again afterwards
            inherited_fields=None,
        )
        return row

    def link_rows(self, instance_id: str) -> dict[str, list[dict]]:
        performers = _pairs(instance_id, self.id, self.performers, "image_id", "performer_id")
        tags = _pairs(instance_id, self.id, self.tags, "image_id", "tag_id")
        for row in performers + tags:
            row["inherited"] = False
        return {
            "image_performers": performers,
            "image_tags": tags,
            "image_galleries": _pairs(instance_id, self.id, self.galleries, "image_id", "gallery_id"),
        }


PAYLOAD_MODELS: dict[str, type[EntityPayload]] = {
    "scene": ScenePayload,
    "performer": PerformerPayload,
    "studio": StudioPayload,
    "tag": TagPayload,
    "group": GroupPayload,
    "gallery": GalleryPayload,
    "image": ImagePayload,
}


def parse_payloads(entity_type: str, items: list[dict]) -> list[EntityPayload]:
    """Validate raw upstream dicts. Any malformed entity fails the whole page."""
    model = PAYLOAD_MODELS[entity_type]
    try:
        return [model.model_validate(item) for item in items]
    except ValidationError as exc:
        raise UpstreamShapeError(f"Malformed {entity_type} payload: {exc}") from exc
