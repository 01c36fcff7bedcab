"""GraphQL client for upstream Stash instances.

One `StashClient` per configured instance. Transport failures surface as
`UpstreamUnavailableError`, unusable answers as `UpstreamShapeError`.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Optional

import requests

from .config import InstanceConfig, MirrorConfig
from .errors import UpstreamShapeError, UpstreamUnavailableError
from .logging_config import get_logger
from .utils import format_timestamp_for_source

logger = get_logger("source")


@dataclasses.dataclass(frozen=True)
class EntityQuery:
    operation: str  # e.g. findScenes
    result_key: str  # e.g. scenes
    filter_type: str  # e.g. SceneFilterType
    filter_arg: str  # e.g. scene_filter
    fields: str


SCENE_FIELDS = """
  id title code date details director urls rating100 organized
  o_counter play_count play_duration created_at updated_at
  files { path size width height duration video_codec audio_codec frame_rate bit_rate }
  paths { screenshot preview stream }
  studio { id }
  performers { id }
  tags { id }
  groups { group { id } scene_index }
  galleries { id }
"""

PERFORMER_FIELDS = """
  id name disambiguation gender birthdate country ethnicity height_cm details
  alias_list favorite rating100 image_path created_at updated_at
  tags { id }
"""

STUDIO_FIELDS = """
  id name details url favorite rating100 image_path created_at updated_at
  parent_studio { id }
  tags { id }
"""

TAG_FIELDS = """
  id name description aliases favorite image_path created_at updated_at
  parents { id }
"""

GROUP_FIELDS = """
  id name date director synopsis duration rating100 front_image_path created_at updated_at
  studio { id }
  containing_groups { group { id } }
  tags { id }
"""

GALLERY_FIELDS = """
  id title code date details photographer image_count rating100 created_at updated_at
  folder { path }
  paths { cover }
  studio { id }
  performers { id }
  tags { id }
"""

IMAGE_FIELDS = """
  id title code date details photographer rating100 o_counter organized created_at updated_at
  visual_files { ... on ImageFile { path size width height } }
  paths { thumbnail image }
  studio { id }
  performers { id }
  tags { id }
  galleries { id }
"""

ENTITY_QUERIES = {
    "scene": EntityQuery("findScenes", "scenes", "SceneFilterType", "scene_filter", SCENE_FIELDS),
    "performer": EntityQuery("findPerformers", "performers", "PerformerFilterType", "performer_filter", PERFORMER_FIELDS),
    "studio": EntityQuery("findStudios", "studios", "StudioFilterType", "studio_filter", STUDIO_FIELDS),
    "tag": EntityQuery("findTags", "tags", "TagFilterType", "tag_filter", TAG_FIELDS),
    "group": EntityQuery("findGroups", "groups", "GroupFilterType", "group_filter", GROUP_FIELDS),
    "gallery": EntityQuery("findGalleries", "galleries", "GalleryFilterType", "gallery_filter", GALLERY_FIELDS),
    "image": EntityQuery("findImages", "images", "ImageFilterType", "image_filter", IMAGE_FIELDS),
}

UPDATE_MUTATIONS = {
    "scene": ("sceneUpdate", "SceneUpdateInput!"),
    "performer": ("performerUpdate", "PerformerUpdateInput!"),
    "studio": ("studioUpdate", "StudioUpdateInput!"),
    "tag": ("tagUpdate", "TagUpdateInput!"),
    "group": ("groupUpdate", "GroupUpdateInput!"),
    "gallery": ("galleryUpdate", "GalleryUpdateInput!"),
    "image": ("imageUpdate", "ImageUpdateInput!"),
}


def _find_query(q: EntityQuery, fields: str) -> str:
    return (
        f"query Mirror{q.operation}($filter: FindFilterType, $entity_filter: {q.filter_type}, $ids: [ID!]) {{\n"
        f"  {q.operation}(filter: $filter, {q.filter_arg}: $entity_filter, ids: $ids) {{\n"
        f"    count\n"
        f"    {q.result_key} {{ {fields} }}\n"
        f"  }}\n"
        f"}}"
    )


def _changed_filter(updated_since: Optional[str]) -> Optional[dict]:
    if not updated_since:
        return None
    return {
        "updated_at": {
            "modifier": "GREATER_THAN",
            "value": format_timestamp_for_source(updated_since),
        }
    }


class StashClient:
    """Client for one upstream instance's GraphQL endpoint."""

    def __init__(self, instance: InstanceConfig, timeout: int = 30, session: Optional[requests.Session] = None):
        self.instance = instance
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if instance.api_key:
            self.session.headers.update({"ApiKey": instance.api_key})

    def execute(self, query: str, variables: Optional[dict] = None) -> dict[str, Any]:
        """POST one GraphQL document and return its `data` object."""
        url = self.instance.graphql_url
        try:
            response = self.session.post(
                url,
                json={"query": query, "variables": variables or {}},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise UpstreamUnavailableError(f"[{self.instance.id}] request failed: {exc}") from exc

        if response.status_code >= 500:
            raise UpstreamUnavailableError(
                f"[{self.instance.id}] upstream returned HTTP {response.status_code}"
            )
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as exc:
            raise UpstreamShapeError(f"[{self.instance.id}] {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamShapeError(f"[{self.instance.id}] invalid JSON response: {exc}") from exc

        if not isinstance(body, dict):
            raise UpstreamShapeError(f"[{self.instance.id}] unexpected response type {type(body).__name__}")
        if body.get("errors"):
            messages = "; ".join(str(e.get("message", e)) for e in body["errors"])
            raise UpstreamShapeError(f"[{self.instance.id}] GraphQL error: {messages}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise UpstreamShapeError(f"[{self.instance.id}] response has no data")
        return data

    def _find(self, entity_type: str, fields: str, variables: dict) -> dict:
        q = ENTITY_QUERIES[entity_type]
        data = self.execute(_find_query(q, fields), variables)
        result = data.get(q.operation)
        if not isinstance(result, dict) or q.result_key not in result:
            raise UpstreamShapeError(
                f"[{self.instance.id}] {q.operation} response missing '{q.result_key}'"
            )
        return result

    def find_page(
        self,
        entity_type: str,
        page: int,
        per_page: int,
        updated_since: Optional[str] = None,
    ) -> tuple[int, list[dict]]:
        """One page of full entities, oldest id first. Returns (total count, items)."""
        result = self._find(
            entity_type,
            ENTITY_QUERIES[entity_type].fields,
            {
                "filter": {"page": page, "per_page": per_page, "sort": "id", "direction": "ASC"},
                "entity_filter": _changed_filter(updated_since),
            },
        )
        items = result[ENTITY_QUERIES[entity_type].result_key] or []
        return int(result.get("count") or 0), [_normalize(entity_type, item) for item in items]

    def find_by_ids(self, entity_type: str, ids: list[str]) -> list[dict]:
        result = self._find(
            entity_type,
            ENTITY_QUERIES[entity_type].fields,
            {"filter": {"per_page": -1}, "ids": ids},
        )
        items = result[ENTITY_QUERIES[entity_type].result_key] or []
        return [_normalize(entity_type, item) for item in items]

    def find_ids(self, entity_type: str, page: int, per_page: int) -> tuple[Optional[int], list[str]]:
        """One page of ids only. The count is None if upstream omitted it."""
        result = self._find(
            entity_type,
            "id",
            {"filter": {"page": page, "per_page": per_page, "sort": "id", "direction": "ASC"}},
        )
        items = result[ENTITY_QUERIES[entity_type].result_key] or []
        count = result.get("count")
        return (int(count) if count is not None else None), [str(item["id"]) for item in items]

    def count_changed_since(self, entity_type: str, since: str) -> int:
        """Number of entities updated after `since` (a per_page=0 probe)."""
        result = self._find(
            entity_type,
            "id",
            {"filter": {"page": 1, "per_page": 0}, "entity_filter": _changed_filter(since)},
        )
        if result.get("count") is None:
            raise UpstreamShapeError(f"[{self.instance.id}] change count missing for {entity_type}")
        return int(result["count"])

    # --- Write-back ---

    def update_entity(self, entity_type: str, entity_id: str, fields: dict) -> None:
        operation, input_type = UPDATE_MUTATIONS[entity_type]
        query = (
            f"mutation Mirror{operation}($input: {input_type}) {{ {operation}(input: $input) {{ id }} }}"
        )
        self.execute(query, {"input": {"id": entity_id, **fields}})

    def increment_o(self, scene_id: str) -> None:
        self.execute(
            "mutation MirrorIncrementO($id: ID!) { sceneIncrementO(id: $id) }",
            {"id": scene_id},
        )

    def decrement_o(self, scene_id: str) -> None:
        self.execute(
            "mutation MirrorDecrementO($id: ID!) { sceneDecrementO(id: $id) }",
            {"id": scene_id},
        )

    def add_play(self, scene_id: str) -> None:
        self.execute(
            "mutation MirrorAddPlay($id: ID!) { sceneAddPlay(id: $id) { count } }",
            {"id": scene_id},
        )


def _normalize(entity_type: str, item: dict) -> dict:
    if entity_type == "image" and "visual_files" in item and "files" not in item:
        item = dict(item)
        item["files"] = [f for f in item.pop("visual_files") or [] if f]
    return item


def build_sources(config: MirrorConfig) -> dict[str, StashClient]:
    """One client per enabled instance, keyed by instance id."""
    return {
        inst.id: StashClient(inst, timeout=config.sync.request_timeout)
        for inst in config.enabled_instances
    }
