"""Logging configuration for stash-mirror.

Every module logs through a child of the `mirror` logger named after what it
does: `mirror.sync`, `mirror.derive`, `mirror.exclude`, `mirror.query`,
`mirror.write_back` and so on. Dotted names nest (`sync.scheduler` is part of
`sync`), so one level setting covers the whole category.

Both handlers render the category as a tag:

    2025-01-01 10:00:00 - INFO     - [SYNC] ✓ main/scene full: 120 synced, 0 deleted (840 ms)
    [WRITE-BACK] ✗ main: scene 12 rating not sent upstream: timeout
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

ROOT_LOGGER = "mirror"
CATEGORIES = (
    "sync",
    "derive",
    "exclude",
    "query",
    "write_back",
    "source",
    "store",
    "config",
    "api",
    "cli",
)

_logging_initialized = False


def _get_data_dir() -> Path:
    """Return the data directory (same as config.DATA_DIR without circular import)."""
    env = os.environ.get("DATA_DIR")
    if env:
        return Path(env)
    return Path(__file__).resolve().parents[1]


def _level(name: str, default: int = logging.INFO) -> int:
    level = logging.getLevelName(str(name).strip().upper())
    return level if isinstance(level, int) else default


def category_of(logger_name: str) -> str:
    """`mirror.sync.scheduler` -> `sync`; loggers outside `mirror` keep their top name."""
    parts = logger_name.split(".")
    if parts[0] == ROOT_LOGGER and len(parts) > 1:
        return parts[1]
    return parts[0]


class CategoryFilter(logging.Filter):
    """Stamp each record with a `[CATEGORY]` tag for the formatters."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.tag = "[" + category_of(record.name).upper().replace("_", "-") + "]"
        return True


def setup_logging(
    log_level: str = "INFO",
    log_file: str = "mirror.log",
    category_levels: Optional[dict[str, str]] = None,
) -> None:
    """Initialize logging with file and console handlers.

    Args:
        log_level: Console level (DEBUG, INFO, WARNING, ERROR)
        log_file: File name inside DATA_DIR, rotated at 10MB with 5 backups
        category_levels: Per-category logger levels, e.g. {"query": "WARNING"}
    """
    global _logging_initialized

    if _logging_initialized:
        return

    data_dir = _get_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        data_dir / log_file,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.addFilter(CategoryFilter())
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(levelname)-8s - %(tag)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )

    console = Console(theme=Theme({"logging.level.info": "bold magenta"}))
    console_handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        show_time=False,
        show_path=False,
    )
    console_handler.setLevel(_level(log_level))
    console_handler.addFilter(CategoryFilter())
    console_handler.setFormatter(logging.Formatter("%(tag)s %(message)s"))

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    for category, level in (category_levels or {}).items():
        get_logger(category).setLevel(_level(level))

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    alembic_logger = logging.getLogger("alembic")
    alembic_logger.handlers = []
    alembic_logger.propagate = True

    _logging_initialized = True


def get_logger(category: str) -> logging.Logger:
    """Logger for one category, e.g. get_logger("sync") or get_logger("sync.scheduler")."""
    return logging.getLogger(f"{ROOT_LOGGER}.{category}")
