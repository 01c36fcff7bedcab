"""Per-user writes: ratings, favorites, play and view history, hidden
entities and content restrictions.

Overlay rows are keyed by (user_id, instance_id, entity id) and are never
touched by sync. Hide and restriction changes rebuild the user's exclusion
set before returning.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from sqlmodel import Session, select

from .database import Store
from .errors import MirrorError
from .exclusions import RESTRICTABLE_TYPES, RESTRICTION_MODES, ExclusionComputer
from .logging_config import get_logger
from .models import (
    ENTITY_TYPES,
    ImageViewHistory,
    UserContentRestriction,
    UserHiddenEntity,
    UserRating,
    WatchHistory,
)
from .utils import utcnow

logger = get_logger("write_back")
exclude_logger = get_logger("exclude")


def _append(history_json: str, when: datetime) -> str:
    history = json.loads(history_json or "[]")
    history.append(when.isoformat())
    return json.dumps(history)


class UserActions:
    """Overlay and visibility writes for one store.

    With `write_back` on, ratings, favorites, plays and O counts are also sent
    to the upstream instance. Upstream failures are logged; the local write
    stands.
    """

    def __init__(self, store: Store, sources: Optional[dict] = None, write_back: bool = False):
        self.store = store
        self.sources = sources or {}
        self.write_back = write_back
        self.exclusions = ExclusionComputer(store)

    # --- Ratings / favorites ---

    def set_rating(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
        instance_id: str,
        rating100: Optional[int] = None,
        favorite: Optional[bool] = None,
        clear_rating: bool = False,
    ) -> dict:
        """Update a user's rating and/or favorite flag. None leaves a value as is."""
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        if rating100 is not None and not 0 <= rating100 <= 100:
            raise ValueError("rating100 must be between 0 and 100")

        with self.store.session() as session:
            row = session.get(UserRating, (user_id, instance_id, entity_type, entity_id))
            if row is None:
                row = UserRating(
                    user_id=user_id,
                    instance_id=instance_id,
                    entity_type=entity_type,
                    entity_id=entity_id,
                )
            if rating100 is not None or clear_rating:
                row.rating100 = rating100
            if favorite is not None:
                row.favorite = favorite
            row.updated_at = utcnow()
            session.add(row)
            session.commit()
            result = {"rating": row.rating100, "favorite": row.favorite}

        fields = {}
        if rating100 is not None or clear_rating:
            fields["rating100"] = rating100
        if favorite is not None and entity_type in ("performer", "studio", "tag"):
            fields["favorite"] = favorite
        if fields:
            self._push(instance_id, f"{entity_type} {entity_id} update", "update_entity",
                       entity_type, entity_id, fields)
        return result

    def set_favorite(self, user_id: str, entity_type: str, entity_id: str, instance_id: str, favorite: bool) -> dict:
        return self.set_rating(user_id, entity_type, entity_id, instance_id, favorite=favorite)

    # --- Scene activity ---

    def _watch_row(self, session: Session, user_id: str, instance_id: str, scene_id: str) -> WatchHistory:
        row = session.get(WatchHistory, (user_id, instance_id, scene_id))
        if row is None:
            row = WatchHistory(user_id=user_id, instance_id=instance_id, scene_id=scene_id)
        return row

    def record_play(
        self,
        user_id: str,
        instance_id: str,
        scene_id: str,
        duration: float = 0.0,
        resume_time: Optional[float] = None,
        count_play: bool = True,
    ) -> dict:
        """Add watched time, move the resume point, and count a play unless told not to."""
        now = utcnow()
        with self.store.session() as session:
            row = self._watch_row(session, user_id, instance_id, scene_id)
            if count_play:
                row.play_count += 1
                row.play_history = _append(row.play_history, now)
            row.play_duration += max(0.0, duration)
            if resume_time is not None:
                row.resume_time = max(0.0, resume_time)
            row.last_played_at = now
            session.add(row)
            session.commit()
            result = {
                "play_count": row.play_count,
                "play_duration": row.play_duration,
                "resume_time": row.resume_time,
            }
        if count_play:
            self._push(instance_id, f"scene {scene_id} play", "add_play", scene_id)
        return result

    def increment_o(self, user_id: str, instance_id: str, scene_id: str) -> int:
        now = utcnow()
        with self.store.session() as session:
            row = self._watch_row(session, user_id, instance_id, scene_id)
            row.o_count += 1
            row.o_history = _append(row.o_history, now)
            session.add(row)
            session.commit()
            count = row.o_count
        self._push(instance_id, f"scene {scene_id} O", "increment_o", scene_id)
        return count

    def decrement_o(self, user_id: str, instance_id: str, scene_id: str) -> int:
        """Undo the most recent O. Never goes below zero."""
        with self.store.session() as session:
            row = self._watch_row(session, user_id, instance_id, scene_id)
            if row.o_count == 0:
                return 0
            row.o_count -= 1
            history = json.loads(row.o_history) if row.o_history else []
            row.o_history = json.dumps(history[:-1])
            session.add(row)
            session.commit()
            count = row.o_count
        self._push(instance_id, f"scene {scene_id} O undo", "decrement_o", scene_id)
        return count

    def record_image_view(self, user_id: str, instance_id: str, image_id: str, o: bool = False) -> dict:
        with self.store.session() as session:
            row = session.get(ImageViewHistory, (user_id, instance_id, image_id))
            if row is None:
                row = ImageViewHistory(user_id=user_id, instance_id=instance_id, image_id=image_id)
            row.view_count += 1
            if o:
                row.o_count += 1
            row.last_viewed_at = utcnow()
            session.add(row)
            session.commit()
            return {"view_count": row.view_count, "o_count": row.o_count}

    # --- Visibility ---

    def hide_entity(self, user_id: str, entity_type: str, entity_id: str, instance_id: str = "") -> int:
        """Hide one entity (and what cascades from it). Returns the new exclusion count."""
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        with self.store.session() as session:
            existing = session.exec(
                select(UserHiddenEntity).where(
                    UserHiddenEntity.user_id == user_id,
                    UserHiddenEntity.entity_type == entity_type,
                    UserHiddenEntity.entity_id == entity_id,
                    UserHiddenEntity.instance_id == instance_id,
                )
            ).first()
            if existing is None:
                session.add(
                    UserHiddenEntity(
                        user_id=user_id,
                        entity_type=entity_type,
                        entity_id=entity_id,
                        instance_id=instance_id,
                    )
                )
                session.commit()
        exclude_logger.info(f"{user_id} hid {entity_type} {entity_id}")
        return self.exclusions.recompute_for_user(user_id)

    def unhide_entity(self, user_id: str, entity_type: str, entity_id: str, instance_id: str = "") -> int:
        with self.store.session() as session:
            rows = session.exec(
                select(UserHiddenEntity).where(
                    UserHiddenEntity.user_id == user_id,
                    UserHiddenEntity.entity_type == entity_type,
                    UserHiddenEntity.entity_id == entity_id,
                    UserHiddenEntity.instance_id == instance_id,
                )
            ).all()
            for row in rows:
                session.delete(row)
            session.commit()
        exclude_logger.info(f"{user_id} unhid {entity_type} {entity_id}")
        return self.exclusions.recompute_for_user(user_id)

    def set_restriction(
        self,
        user_id: str,
        entity_type: str,
        mode: Optional[str],
        entity_ids: list[str],
        instance_id: str = "",
    ) -> int:
        """Replace the user's restriction on one entity type. mode=None removes it."""
        if entity_type not in RESTRICTABLE_TYPES:
            raise ValueError(f"Restrictions apply to {', '.join(RESTRICTABLE_TYPES)}, not {entity_type}")
        if mode is not None and mode not in RESTRICTION_MODES:
            raise ValueError(f"Unknown restriction mode: {mode}")

        with self.store.session() as session:
            row = session.exec(
                select(UserContentRestriction).where(
                    UserContentRestriction.user_id == user_id,
                    UserContentRestriction.entity_type == entity_type,
                    UserContentRestriction.instance_id == instance_id,
                )
            ).first()
            if mode is None:
                if row is not None:
                    session.delete(row)
            else:
                if row is None:
                    row = UserContentRestriction(
                        user_id=user_id, entity_type=entity_type, mode=mode, instance_id=instance_id
                    )
                row.mode = mode
                row.entity_ids = json.dumps([str(i) for i in entity_ids])
                session.add(row)
            session.commit()
        exclude_logger.info(f"{user_id} restriction on {entity_type}: {mode or 'removed'}")
        return self.exclusions.recompute_for_user(user_id)

    # --- Write-back ---

    def _push(self, instance_id: str, label: str, method: str, *args) -> None:
        if not self.write_back:
            return
        source = self.sources.get(instance_id)
        if source is None:
            return
        try:
            getattr(source, method)(*args)
        except MirrorError as exc:
            logger.warning(f"✗ {instance_id}: {label} not sent upstream: {exc}")
        else:
            logger.debug(f"✓ {instance_id}: {label}")
