"""Initial schema: mirrored entities, junctions, sync state, user overlay

Revision ID: 0001
Revises: None
Create Date: 2026-01-01 00:00:00
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlmodel import SQLModel

from mirror import models  # noqa: F401
from mirror.models import FTS_SOURCES, fts_statements

# revision identifiers
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | None = None
depends_on: str | None = None


def _table_exists(name: str) -> bool:
    """Check whether a table already exists in the database."""
    conn = op.get_bind()
    result = conn.execute(
        sa.text("SELECT 1 FROM sqlite_master WHERE type IN ('table', 'view') AND name=:n"),
        {"n": name},
    )
    return result.fetchone() is not None


def _tables() -> list[sa.Table]:
    return [t for t in SQLModel.metadata.sorted_tables if t.name != "alembic_version"]


def upgrade() -> None:
    # Every CREATE is guarded so the migration is safe against a DB that was
    # created by SQLModel.metadata.create_all() and stamped afterwards.
    bind = op.get_bind()
    for table in _tables():
        if not _table_exists(table.name):
            table.create(bind=bind)

    # FTS shadows and their triggers
    for fts_table in FTS_SOURCES:
        for statement in fts_statements(fts_table):
            op.execute(statement)


def downgrade() -> None:
    for fts_table, (source, _columns) in FTS_SOURCES.items():
        for suffix in ("ai", "ad", "au"):
            op.execute(f"DROP TRIGGER IF EXISTS {source}_fts_{suffix}")
        op.execute(f"DROP TABLE IF EXISTS {fts_table}")
    for table in reversed(_tables()):
        if _table_exists(table.name):
            op.drop_table(table.name)
