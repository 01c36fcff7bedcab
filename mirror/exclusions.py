"""Per-user precomputed exclusions.

A user's exclusion set is everything the query layer must hide from them:
- restricted: ruled out by a content restriction (INCLUDE or EXCLUDE list)
- hidden: hidden one by one by the user
- cascade: reachable from a restricted or hidden entity
- empty: containers left with nothing visible in them

The whole set for one user is rebuilt inside a single transaction, so readers
see either the old set or the new one.
"""

from __future__ import annotations

import json

import sqlalchemy as sa
from sqlmodel import Session

from .database import Store
from .logging_config import get_logger

logger = get_logger("exclude")

RESTRICTABLE_TYPES = ("tag", "studio", "group", "gallery")
RESTRICTION_MODES = ("INCLUDE", "EXCLUDE")
DIRECT_REASONS = "('restricted', 'hidden')"
PRIOR_REASONS = "('restricted', 'hidden', 'cascade')"

_TABLES = {
    "scene": "scenes",
    "performer": "performers",
    "studio": "studios",
    "tag": "tags",
    "group": "groups",
    "gallery": "galleries",
    "image": "images",
}

_INSERT = (
    "INSERT OR IGNORE INTO user_excluded_entities "
    "(user_id, entity_type, entity_id, instance_id, reason) "
)


def _match(alias_id: str, alias_inst: str) -> str:
    """Join condition against a direct exclusion row `d`; '' matches any instance."""
    return (
        f"d.entity_id = {alias_id} AND (d.instance_id = '' OR d.instance_id = {alias_inst})"
    )


def _direct(entity_type: str) -> str:
    return (
        "user_excluded_entities d WHERE d.user_id = :u "
        f"AND d.entity_type = '{entity_type}' AND d.reason IN {DIRECT_REASONS}"
    )


# (target type, SELECT producing entity_id, instance_id of cascaded rows)
CASCADES = (
    # performer -> scenes
    ("scene", f"""
        SELECT sp.scene_id, sp.scene_instance_id FROM scene_performers sp
        WHERE EXISTS (SELECT 1 FROM {_direct('performer')}
                      AND {_match('sp.performer_id', 'sp.performer_instance_id')})
    """),
    # studio -> scenes
    ("scene", f"""
        SELECT s.id, s.instance_id FROM scenes s
        WHERE s.studio_id IS NOT NULL AND EXISTS (SELECT 1 FROM {_direct('studio')}
                      AND {_match('s.studio_id', 's.instance_id')})
    """),
    # tag -> scenes (direct tags)
    ("scene", f"""
        SELECT st.scene_id, st.scene_instance_id FROM scene_tags st
        WHERE EXISTS (SELECT 1 FROM {_direct('tag')}
                      AND {_match('st.tag_id', 'st.tag_instance_id')})
    """),
    # tag -> scenes (inherited tags)
    ("scene", f"""
        SELECT s.id, s.instance_id FROM scenes s, json_each(s.inherited_tag_ids) j
        WHERE s.inherited_tag_ids IS NOT NULL AND EXISTS (SELECT 1 FROM {_direct('tag')}
                      AND {_match('j.value', 's.instance_id')})
    """),
    # tag -> performers
    ("performer", f"""
        SELECT pt.performer_id, pt.performer_instance_id FROM performer_tags pt
        WHERE EXISTS (SELECT 1 FROM {_direct('tag')}
                      AND {_match('pt.tag_id', 'pt.tag_instance_id')})
    """),
    # tag -> studios
    ("studio", f"""
        SELECT stt.studio_id, stt.studio_instance_id FROM studio_tags stt
        WHERE EXISTS (SELECT 1 FROM {_direct('tag')}
                      AND {_match('stt.tag_id', 'stt.tag_instance_id')})
    """),
    # tag -> groups
    ("group", f"""
        SELECT gt.group_id, gt.group_instance_id FROM group_tags gt
        WHERE EXISTS (SELECT 1 FROM {_direct('tag')}
                      AND {_match('gt.tag_id', 'gt.tag_instance_id')})
    """),
    # group -> scenes
    ("scene", f"""
        SELECT sg.scene_id, sg.scene_instance_id FROM scene_groups sg
        WHERE EXISTS (SELECT 1 FROM {_direct('group')}
                      AND {_match('sg.group_id', 'sg.group_instance_id')})
    """),
    # gallery -> scenes
    ("scene", f"""
        SELECT sga.scene_id, sga.scene_instance_id FROM scene_galleries sga
        WHERE EXISTS (SELECT 1 FROM {_direct('gallery')}
                      AND {_match('sga.gallery_id', 'sga.gallery_instance_id')})
    """),
    # gallery -> images
    ("image", f"""
        SELECT ig.image_id, ig.image_instance_id FROM image_galleries ig
        WHERE EXISTS (SELECT 1 FROM {_direct('gallery')}
                      AND {_match('ig.gallery_id', 'ig.gallery_instance_id')})
    """),
)


def _excluded(entity_type: str, alias: str) -> str:
    """Excluded by a rule or its cascade; earlier empty rows never count."""
    return (
        "EXISTS (SELECT 1 FROM user_excluded_entities x WHERE x.user_id = :u "
        f"AND x.entity_type = '{entity_type}' AND x.entity_id = {alias}.id "
        f"AND x.instance_id IN ({alias}.instance_id, '') AND x.reason IN {PRIOR_REASONS})"
    )


def _visible_via(link_table: str, owner_col: str, target_table: str, target_type: str,
                 target_col: str, outer: str) -> str:
    """Some live, non-excluded entity reaches `outer` through a junction table."""
    owner_inst = owner_col[:-3] + "_instance_id"
    target_inst = target_col[:-3] + "_instance_id"
    return f"""EXISTS (SELECT 1 FROM {link_table} l
                      JOIN {target_table} v ON v.id = l.{target_col} AND v.instance_id = l.{target_inst}
                          AND v.deleted_at IS NULL
                      WHERE l.{owner_col} = {outer}.id AND l.{owner_inst} = {outer}.instance_id
                        AND NOT {_excluded(target_type, 'v')})"""


def _visible_with_studio(table: str, entity_type: str, outer: str) -> str:
    return f"""EXISTS (SELECT 1 FROM {table} v
                      WHERE v.studio_id = {outer}.id AND v.instance_id = {outer}.instance_id
                        AND v.deleted_at IS NULL AND NOT {_excluded(entity_type, 'v')})"""


# Containers with nothing visible left in them. Every rule reads rule and
# cascade rows only, never rows marked empty by an earlier rule.
EMPTY_CONTAINERS = (
    ("gallery", f"""
        SELECT g.id, g.instance_id FROM galleries g
        WHERE g.deleted_at IS NULL
          AND NOT {_visible_via('image_galleries', 'gallery_id', 'images', 'image', 'image_id', 'g')}
    """),
    ("performer", f"""
        SELECT p.id, p.instance_id FROM performers p
        WHERE p.deleted_at IS NULL AND NOT {_excluded('performer', 'p')}
          AND NOT {_visible_via('scene_performers', 'performer_id', 'scenes', 'scene', 'scene_id', 'p')}
          AND NOT {_visible_via('image_performers', 'performer_id', 'images', 'image', 'image_id', 'p')}
    """),
    ("studio", f"""
        SELECT st.id, st.instance_id FROM studios st
        WHERE st.deleted_at IS NULL AND NOT {_excluded('studio', 'st')}
          AND NOT {_visible_with_studio('scenes', 'scene', 'st')}
          AND NOT {_visible_with_studio('images', 'image', 'st')}
    """),
    ("group", f"""
        SELECT gr.id, gr.instance_id FROM groups gr
        WHERE gr.deleted_at IS NULL AND NOT {_excluded('group', 'gr')}
          AND NOT {_visible_via('scene_groups', 'group_id', 'scenes', 'scene', 'scene_id', 'gr')}
    """),
    ("tag", f"""
        SELECT t.id, t.instance_id FROM tags t
        WHERE t.deleted_at IS NULL AND NOT {_excluded('tag', 't')}
          AND NOT {_visible_via('scene_tags', 'tag_id', 'scenes', 'scene', 'scene_id', 't')}
          AND NOT {_visible_via('performer_tags', 'tag_id', 'performers', 'performer', 'performer_id', 't')}
          AND NOT {_visible_via('studio_tags', 'tag_id', 'studios', 'studio', 'studio_id', 't')}
          AND NOT {_visible_via('group_tags', 'tag_id', 'groups', 'group', 'group_id', 't')}
          AND NOT {_visible_via('tag_parents', 'parent_id', 'tags', 'tag', 'child_id', 't')}
    """),
)


class ExclusionComputer:
    """Rebuilds `user_excluded_entities` for one or all users."""

    def __init__(self, store: Store):
        self.store = store

    def recompute_for_user(self, user_id: str) -> int:
        """Rebuild one user's exclusion set. Returns the number of rows written."""
        with self.store.session() as session:
            count = self._recompute(session, user_id)
            session.commit()
        logger.debug(f"{user_id}: {count} excluded entities")
        return count

    def recompute_all_users(self) -> int:
        """Rebuild every user the store knows about.

        A user is known once they have a rule, an overlay row or an exclusion
        row. Empty containers are recomputed for all of them, rules or not.
        """
        with self.store.session() as session:
            users = session.execute(
                sa.text(
                    "SELECT user_id FROM user_content_restrictions "
                    "UNION SELECT user_id FROM user_hidden_entities "
                    "UNION SELECT user_id FROM user_excluded_entities "
                    "UNION SELECT user_id FROM user_ratings "
                    "UNION SELECT user_id FROM watch_history "
                    "UNION SELECT user_id FROM image_view_history"
                )
            ).scalars().all()
        for user_id in users:
            self.recompute_for_user(user_id)
        logger.info(f"Recomputed exclusions for {len(users)} users")
        return len(users)

    def _recompute(self, session: Session, user_id: str) -> int:
        params = {"u": user_id}
        session.execute(sa.text("DELETE FROM user_excluded_entities WHERE user_id = :u"), params)
        self._insert_restricted(session, user_id)
        session.execute(
            sa.text(
                _INSERT
                + "SELECT user_id, entity_type, entity_id, instance_id, 'hidden' "
                "FROM user_hidden_entities WHERE user_id = :u"
            ),
            params,
        )

        for target, select in CASCADES:
            session.execute(
                sa.text(_INSERT + f"SELECT :u, '{target}', sub.*, 'cascade' FROM ({select}) sub"),
                params,
            )

        for target, select in EMPTY_CONTAINERS:
            session.execute(
                sa.text(_INSERT + f"SELECT :u, '{target}', sub.*, 'empty' FROM ({select}) sub"),
                params,
            )

        return session.execute(
            sa.text("SELECT COUNT(*) FROM user_excluded_entities WHERE user_id = :u"), params
        ).scalar_one()

    def _insert_restricted(self, session: Session, user_id: str) -> None:
        restrictions = session.execute(
            sa.text(
                "SELECT entity_type, mode, entity_ids, instance_id "
                "FROM user_content_restrictions WHERE user_id = :u"
            ),
            {"u": user_id},
        ).all()
        for entity_type, mode, ids_json, instance_id in restrictions:
            if entity_type not in RESTRICTABLE_TYPES or mode not in RESTRICTION_MODES:
                logger.warning(
                    f"Ignoring restriction {mode} on {entity_type} for {user_id}"
                )
                continue
            ids = [str(i) for i in json.loads(ids_json or "[]")]
            if mode == "EXCLUDE":
                if ids:
                    session.execute(
                        sa.text(
                            _INSERT
                            + "VALUES (:u, :t, :id, :inst, 'restricted')"
                        ),
                        [{"u": user_id, "t": entity_type, "id": i, "inst": instance_id} for i in ids],
                    )
                continue

            # INCLUDE: everything of that type outside the list
            table = _TABLES[entity_type]
            scope = "" if instance_id == "" else "AND e.instance_id = :inst"
            session.execute(sa.text("CREATE TEMP TABLE IF NOT EXISTS restriction_ids (id TEXT PRIMARY KEY)"))
            session.execute(sa.text("DELETE FROM restriction_ids"))
            if ids:
                session.execute(
                    sa.text("INSERT OR IGNORE INTO restriction_ids (id) VALUES (:id)"),
                    [{"id": i} for i in ids],
                )
            session.execute(
                sa.text(
                    _INSERT
                    + f"SELECT :u, :t, e.id, e.instance_id, 'restricted' FROM {table} e "
                    f"WHERE e.deleted_at IS NULL {scope} "
                    "AND e.id NOT IN (SELECT id FROM restriction_ids)"
                ),
                {"u": user_id, "t": entity_type, **({"inst": instance_id} if scope else {})},
            )
            session.execute(sa.text("DROP TABLE restriction_ids"))
