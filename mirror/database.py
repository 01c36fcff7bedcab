"""Database connection and session management using SQLModel.

Writes go through SQLModel sessions, reads through plain sqlite3 connections
with a Row factory. Both point at the same WAL-mode file owned by a `Store`.
"""

from __future__ import annotations

import hashlib
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from .config import MirrorConfig
from .logging_config import get_logger

logger = get_logger("store")


def seeded_rank(seed, entity_id, instance_id) -> int:
    """Stable pseudo-random sort key for one row under one seed."""
    digest = hashlib.blake2b(
        f"{seed}|{instance_id}|{entity_id}".encode("utf-8"), digest_size=8
    ).digest()
    return int.from_bytes(digest, "big") >> 1


def _prepare_connection(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.create_function("seeded_rank", 3, seeded_rank, deterministic=True)


class Store:
    """Handle on one mirror database file."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._engine: Optional[Engine] = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self.open()
        return self._engine

    def open(self) -> "Store":
        if self._engine is not None:
            return self
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # check_same_thread=False: sessions are used from the scheduler thread too
        engine = create_engine(
            f"sqlite:///{self.db_path}",
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_connection, _record):
            _prepare_connection(dbapi_connection)

        with engine.connect() as conn:
            conn.exec_driver_sql("PRAGMA journal_mode=WAL;")
        self._engine = engine
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def init_db(self) -> None:
        """Create database tables (and the FTS shadows with their triggers)."""
        from . import models  # noqa: F401

        SQLModel.metadata.create_all(self.engine)

    def reset(self) -> None:
        """Delete the database file and recreate it."""
        self.close()
        for suffix in ("", "-wal", "-shm"):
            candidate = Path(f"{self.db_path}{suffix}")
            if candidate.exists():
                candidate.unlink()
        self.open()
        self.init_db()

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    def get_connection(self) -> sqlite3.Connection:
        """Return a sqlite3 connection with row factory for dict-like access."""
        connection = sqlite3.connect(self.db_path, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        _prepare_connection(connection)
        return connection

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for sqlite3 connections. Auto-closes on exit."""
        conn = self.get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def snapshot(self) -> Iterator[sqlite3.Connection]:
        """Connection inside one read transaction; every statement sees the same data."""
        with self.connection() as conn:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                conn.rollback()


def store_from_config(config: MirrorConfig) -> Store:
    return Store(config.database_path).open()
