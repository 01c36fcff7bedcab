"""Entity write layer.

All sync writes go through `EntityUpserter`. The caller owns the session and
decides when to commit; one page of entities is meant to be one transaction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

import sqlalchemy as sa
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel

from .errors import StorageError
from .logging_config import get_logger
from .models import ENTITY_MODELS, LINKS, link, links_for
from .payloads import EntityPayload
from .utils import chunked, utcnow

logger = get_logger("sync.upsert")

KEY_COLUMNS = ("id", "instance_id")
# Columns owned by the derived pass; an upstream refresh leaves them alone
DERIVED_COLUMNS = ("inherited_tag_ids",)
_CHUNK = 400


def _table(name: str) -> sa.Table:
    return SQLModel.metadata.tables[name]


class EntityUpserter:
    """Insert-or-update mirrored entities and replace their junction rows."""

    def __init__(self, session: Session):
        self.session = session

    def commit(self) -> None:
        """Commit the current transaction. Callers control when to commit."""
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError(f"Commit failed: {exc}") from exc

    def upsert_page(
        self,
        entity_type: str,
        instance_id: str,
        payloads: list[EntityPayload],
        now: Optional[datetime] = None,
    ) -> int:
        """Write one page of upstream entities. Returns the number of entities written.

        Rows are matched on (id, instance_id); a match is updated in place and
        resurrected if it had been soft-deleted. Every junction set a payload
        carries replaces the stored set for that entity.
        """
        if not payloads:
            return 0
        now = now or utcnow()
        table = ENTITY_MODELS[entity_type].__table__

        rows = []
        link_rows: dict[str, list[dict]] = {lk.table: [] for lk in links_for(entity_type)}
        for payload in payloads:
            row = payload.to_row(instance_id)
            row["synced_at"] = now
            row["deleted_at"] = None
            rows.append(row)
            for table_name, pairs in payload.link_rows(instance_id).items():
                link_rows.setdefault(table_name, []).extend(pairs)

        insert_stmt = sqlite_insert(table)
        update_cols = [
            c for c in rows[0] if c not in KEY_COLUMNS and c not in DERIVED_COLUMNS
        ]
        upsert_stmt = insert_stmt.on_conflict_do_update(
            index_elements=list(KEY_COLUMNS),
            set_={c: insert_stmt.excluded[c] for c in update_cols},
        )

        ids = [row["id"] for row in rows]
        try:
            self.session.execute(upsert_stmt, rows)
            for table_name, pairs in link_rows.items():
                self._replace_links(table_name, instance_id, ids, pairs)
            self.session.flush()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError(f"Upsert of {len(rows)} {entity_type} rows failed: {exc}") from exc
        return len(rows)

    def _replace_links(self, table_name: str, instance_id: str, owner_ids: list[str], pairs: list[dict]) -> None:
        lk = link(table_name)
        junction = _table(table_name)
        for chunk in chunked(owner_ids, _CHUNK):
            self.session.execute(
                sa.delete(junction).where(
                    junction.c[lk.owner_instance_col] == instance_id,
                    junction.c[lk.owner_col].in_(list(chunk)),
                )
            )
        if pairs:
            self.session.execute(sqlite_insert(junction).on_conflict_do_nothing(), pairs)

    def soft_delete_missing(
        self,
        entity_type: str,
        instance_id: str,
        upstream_ids: Iterable[str],
        now: Optional[datetime] = None,
    ) -> int:
        """Soft-delete live rows of one instance whose id upstream no longer reports."""
        now = now or utcnow()
        table = ENTITY_MODELS[entity_type].__table__
        seen = sa.table("sync_seen_ids", sa.column("id"))
        try:
            self.session.execute(sa.text("CREATE TEMP TABLE IF NOT EXISTS sync_seen_ids (id TEXT PRIMARY KEY)"))
            self.session.execute(sa.text("DELETE FROM sync_seen_ids"))
            params = [{"id": i} for i in upstream_ids]
            if params:
                self.session.execute(sa.text("INSERT OR IGNORE INTO sync_seen_ids (id) VALUES (:id)"), params)
            result = self.session.execute(
                sa.update(table)
                .where(
                    table.c.instance_id == instance_id,
                    table.c.deleted_at.is_(None),
                    table.c.id.not_in(sa.select(seen.c.id)),
                )
                .values(deleted_at=now)
            )
            self.session.execute(sa.text("DROP TABLE sync_seen_ids"))
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageError(f"Soft delete of stale {entity_type} rows failed: {exc}") from exc
        return result.rowcount or 0

    def mark_deleted(self, entity_type: str, instance_id: str, entity_ids: list[str]) -> int:
        table = ENTITY_MODELS[entity_type].__table__
        result = self.session.execute(
            sa.update(table)
            .where(
                table.c.instance_id == instance_id,
                table.c.id.in_(entity_ids),
                table.c.deleted_at.is_(None),
            )
            .values(deleted_at=utcnow())
        )
        return result.rowcount or 0

    def count_live(self, entity_type: str, instance_id: str) -> int:
        table = ENTITY_MODELS[entity_type].__table__
        return self.session.execute(
            sa.select(sa.func.count())
            .select_from(table)
            .where(table.c.instance_id == instance_id, table.c.deleted_at.is_(None))
        ).scalar_one()

    def purge_instance(self, instance_id: str) -> dict[str, int]:
        """Hard-delete every mirrored row of one instance. Overlay rows are kept."""
        removed = {}
        for lk in LINKS:
            junction = _table(lk.table)
            self.session.execute(
                sa.delete(junction).where(junction.c[lk.owner_instance_col] == instance_id)
            )
        for entity_type, model in ENTITY_MODELS.items():
            table = model.__table__
            result = self.session.execute(sa.delete(table).where(table.c.instance_id == instance_id))
            removed[entity_type] = result.rowcount or 0
        excluded = _table("user_excluded_entities")
        self.session.execute(sa.delete(excluded).where(excluded.c.instance_id == instance_id))
        return removed
