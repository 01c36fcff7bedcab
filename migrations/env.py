"""Alembic migration environment.

Opens the database through a `Store` so that migrations use the exact same
connection setup (pragmas, SQL functions) the application does.
"""

from __future__ import annotations

from pathlib import Path

from alembic import context
from sqlmodel import SQLModel

from mirror import models as _models  # noqa: F401
from mirror.config import get_config
from mirror.database import Store

target_metadata = SQLModel.metadata


def _db_path() -> Path:
    configured = context.config.attributes.get("db_path")
    if configured is not None:
        return Path(configured)
    url = context.config.get_main_option("sqlalchemy.url")
    if url and url.startswith("sqlite:///"):
        return Path(url[len("sqlite:///"):])
    return get_config().database_path


def run_migrations_online() -> None:
    """Run migrations with a real database connection."""
    store = Store(_db_path())
    try:
        with store.engine.connect() as conn:
            context.configure(connection=conn, target_metadata=target_metadata)
            with context.begin_transaction():
                context.run_migrations()
    finally:
        store.close()


if context.is_offline_mode():
    raise RuntimeError("Offline migration mode is not supported. Run without --sql.")
else:
    run_migrations_online()
