"""Alembic migration helpers for stash-mirror.

This is the only module in the project that imports alembic directly.
Everything else (CLI, serve) goes through the functions below.
"""

from __future__ import annotations

import shutil
import sqlite3
from pathlib import Path

from alembic import command as alembic_command
from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory

from .config import PROJECT_ROOT


def _alembic_cfg(db_path: Path) -> AlembicConfig:
    """Build an AlembicConfig that points at our alembic.ini and the given database."""
    ini_path = PROJECT_ROOT / "alembic.ini"
    cfg = AlembicConfig(str(ini_path))
    # Absolute script_location so it works regardless of the working directory
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    cfg.attributes["db_path"] = Path(db_path)
    return cfg


def _backup_db(db_path: Path) -> None:
    """Copy mirror.db -> mirror.db.bak (overwrite previous backup)."""
    if db_path.exists():
        shutil.copy2(db_path, db_path.with_suffix(db_path.suffix + ".bak"))


def _alembic_version_exists(db_path: Path) -> bool:
    if not db_path.exists():
        return False
    conn = sqlite3.connect(db_path)
    try:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name='alembic_version'"
        )
        return cur.fetchone() is not None
    finally:
        conn.close()


def run_migrations(db_path: Path, backup: bool = True) -> None:
    """Run ``alembic upgrade head``, copying the database first when *backup* is set."""
    db_path = Path(db_path)
    if backup:
        _backup_db(db_path)
    alembic_command.upgrade(_alembic_cfg(db_path), "head")


def stamp_if_needed(db_path: Path) -> bool:
    """Stamp a database created by ``create_all`` to the current head.

    Returns True when a stamp was written. A database that already carries
    an alembic_version table, or does not exist yet, is left alone.
    """
    db_path = Path(db_path)
    if not db_path.exists() or _alembic_version_exists(db_path):
        return False
    alembic_command.stamp(_alembic_cfg(db_path), "head")
    return True


def get_status(db_path: Path) -> tuple[str | None, str]:
    """Return (current_revision, head_revision).

    current_revision is None when the DB does not exist or has never
    been stamped/migrated.
    """
    db_path = Path(db_path)
    script = ScriptDirectory.from_config(_alembic_cfg(db_path))
    head_rev: str = script.get_current_head() or "unknown"

    if not _alembic_version_exists(db_path):
        return None, head_rev

    conn = sqlite3.connect(db_path)
    try:
        row = conn.execute("SELECT version_num FROM alembic_version").fetchone()
        return (row[0] if row else None), head_rev
    finally:
        conn.close()
