"""Derived metadata computed after each sync pass.

Stages, always run in this order:
1. scene inherited tags (performer, studio and group tags)
2. gallery to image inheritance
3. per-user exclusions (see exclusions.py)

Each stage recomputes from scratch, so running the pipeline twice in a row
is a no-op the second time.
"""

from __future__ import annotations

import json
from collections import defaultdict

import sqlalchemy as sa
from sqlmodel import Session

from .database import Store
from .exclusions import ExclusionComputer
from .logging_config import get_logger
from .utils import id_sort_key

logger = get_logger("derive")

# Scalar image fields a governing gallery may fill in
INHERITABLE_FIELDS = ("studio_id", "date", "photographer", "details")

_SCENE_TAG_SOURCES = (
    # performers
    """
    SELECT sp.scene_id, sp.scene_instance_id, pt.tag_id
    FROM scene_performers sp
    JOIN performers p ON p.id = sp.performer_id AND p.instance_id = sp.performer_instance_id
        AND p.deleted_at IS NULL
    JOIN performer_tags pt ON pt.performer_id = p.id AND pt.performer_instance_id = p.instance_id
    """,
    # studio
    """
    SELECT s.id, s.instance_id, st.tag_id
    FROM scenes s
    JOIN studios so ON so.id = s.studio_id AND so.instance_id = s.instance_id
        AND so.deleted_at IS NULL
    JOIN studio_tags st ON st.studio_id = so.id AND st.studio_instance_id = so.instance_id
    WHERE s.deleted_at IS NULL
    """,
    # groups
    """
    SELECT sg.scene_id, sg.scene_instance_id, gt.tag_id
    FROM scene_groups sg
    JOIN groups g ON g.id = sg.group_id AND g.instance_id = sg.group_instance_id
        AND g.deleted_at IS NULL
    JOIN group_tags gt ON gt.group_id = g.id AND gt.group_instance_id = g.instance_id
    """,
)


def compute_inherited_tags(session: Session) -> int:
    """Store, per scene, the tags reachable through its performers, studio and groups.

    Tags the scene already carries directly are left out. Returns the number
    of scenes whose inherited set changed.
    """
    inherited: dict[tuple[str, str], set[str]] = defaultdict(set)
    for statement in _SCENE_TAG_SOURCES:
        for scene_id, instance_id, tag_id in session.execute(sa.text(statement)):
            inherited[(scene_id, instance_id)].add(tag_id)

    direct: dict[tuple[str, str], set[str]] = defaultdict(set)
    for scene_id, instance_id, tag_id in session.execute(
        sa.text("SELECT scene_id, scene_instance_id, tag_id FROM scene_tags")
    ):
        direct[(scene_id, instance_id)].add(tag_id)

    updates = []
    for scene_id, instance_id, current in session.execute(
        sa.text("SELECT id, instance_id, inherited_tag_ids FROM scenes WHERE deleted_at IS NULL")
    ):
        key = (scene_id, instance_id)
        tags = sorted(inherited.get(key, set()) - direct.get(key, set()), key=id_sort_key)
        encoded = json.dumps(tags)
        if encoded != current:
            updates.append({"v": encoded, "id": scene_id, "inst": instance_id})

    if updates:
        session.execute(
            sa.text("UPDATE scenes SET inherited_tag_ids = :v WHERE id = :id AND instance_id = :inst"),
            updates,
        )
    logger.info(f"Inherited tags updated on {len(updates)} scenes")
    return len(updates)


def _revert_gallery_inheritance(session: Session) -> None:
    rows = session.execute(
        sa.text("SELECT id, instance_id, inherited_fields FROM images WHERE inherited_fields IS NOT NULL")
    ).all()
    for image_id, instance_id, fields_json in rows:
        fields = [f for f in json.loads(fields_json or "[]") if f in INHERITABLE_FIELDS]
        assignments = ", ".join([f"{f} = NULL" for f in fields] + ["inherited_fields = NULL"])
        session.execute(
            sa.text(f"UPDATE images SET {assignments} WHERE id = :id AND instance_id = :inst"),
            {"id": image_id, "inst": instance_id},
        )
    session.execute(sa.text("DELETE FROM image_performers WHERE inherited = 1"))
    session.execute(sa.text("DELETE FROM image_tags WHERE inherited = 1"))


def _governing_galleries(session: Session) -> dict[tuple[str, str], str]:
    """Map each image in at least one live gallery to the gallery it inherits from."""
    candidates: dict[tuple[str, str], list[str]] = defaultdict(list)
    for image_id, instance_id, gallery_id in session.execute(
        sa.text(
            """
            SELECT ig.image_id, ig.image_instance_id, g.id
            FROM image_galleries ig
            JOIN images i ON i.id = ig.image_id AND i.instance_id = ig.image_instance_id
                AND i.deleted_at IS NULL
            JOIN galleries g ON g.id = ig.gallery_id AND g.instance_id = ig.gallery_instance_id
                AND g.deleted_at IS NULL
            """
        )
    ):
        candidates[(image_id, instance_id)].append(gallery_id)
    return {key: min(ids, key=id_sort_key) for key, ids in candidates.items()}


def apply_gallery_inheritance(session: Session) -> int:
    """Fill empty image metadata from the image's governing gallery.

    Sourced values are never overwritten. Performers and tags are only
    inherited when the image has none of its own. Returns the number of
    images that received at least one inherited value.
    """
    _revert_gallery_inheritance(session)
    governing = _governing_galleries(session)
    if not governing:
        return 0

    galleries = {
        (row.id, row.instance_id): row
        for row in session.execute(
            sa.text(
                "SELECT id, instance_id, studio_id, date, photographer, details "
                "FROM galleries WHERE deleted_at IS NULL"
            )
        )
    }
    gallery_links = {}
    for table, target in (("gallery_performers", "performer"), ("gallery_tags", "tag")):
        linked: dict[tuple[str, str], list[str]] = defaultdict(list)
        for gallery_id, instance_id, target_id in session.execute(
            sa.text(f"SELECT gallery_id, gallery_instance_id, {target}_id FROM {table}")
        ):
            linked[(gallery_id, instance_id)].append(target_id)
        gallery_links[target] = linked

    images_with_direct = {}
    for table, target in (("image_performers", "performer"), ("image_tags", "tag")):
        images_with_direct[target] = {
            (image_id, instance_id)
            for image_id, instance_id in session.execute(
                sa.text(f"SELECT DISTINCT image_id, image_instance_id FROM {table}")
            )
        }

    images = {
        (row.id, row.instance_id): row
        for row in session.execute(
            sa.text(
                "SELECT id, instance_id, studio_id, date, photographer, details "
                "FROM images WHERE deleted_at IS NULL"
            )
        )
    }

    touched = 0
    for key, gallery_id in governing.items():
        image = images.get(key)
        gallery = galleries.get((gallery_id, key[1]))
        if image is None or gallery is None:
            continue
        image_id, instance_id = key

        filled = {}
        for field in INHERITABLE_FIELDS:
            current = getattr(image, field)
            value = getattr(gallery, field)
            if (current is None or current == "") and value not in (None, ""):
                filled[field] = value
        if filled:
            assignments = ", ".join(f"{f} = :{f}" for f in filled)
            session.execute(
                sa.text(
                    f"UPDATE images SET {assignments}, inherited_fields = :fields "
                    "WHERE id = :id AND instance_id = :inst"
                ),
                {**filled, "fields": json.dumps(sorted(filled)), "id": image_id, "inst": instance_id},
            )

        added_links = False
        for target in ("performer", "tag"):
            if key in images_with_direct[target]:
                continue
            target_ids = gallery_links[target].get((gallery_id, instance_id), [])
            if not target_ids:
                continue
            session.execute(
                sa.text(
                    f"INSERT OR IGNORE INTO image_{target}s "
                    f"(image_id, image_instance_id, {target}_id, {target}_instance_id, inherited) "
                    "VALUES (:image_id, :inst, :target_id, :inst, 1)"
                ),
                [{"image_id": image_id, "inst": instance_id, "target_id": t} for t in target_ids],
            )
            added_links = True

        if filled or added_links:
            touched += 1

    logger.info(f"Gallery inheritance applied to {touched} images")
    return touched


def run_derived_pipeline(store: Store) -> dict[str, int]:
    """Run every derived stage in order and commit each one."""
    stats = {}
    with store.session() as session:
        stats["inherited_tags"] = compute_inherited_tags(session)
        session.commit()
    with store.session() as session:
        stats["gallery_inheritance"] = apply_gallery_inheritance(session)
        session.commit()
    stats["exclusion_users"] = ExclusionComputer(store).recompute_all_users()
    return stats
