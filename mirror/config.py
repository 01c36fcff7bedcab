"""Config management for stash-mirror.

Reads `config.ini` from DATA_DIR (defaults to the project root). Upstream
instances are declared as one `[instance:<id>]` section each.
"""

from __future__ import annotations

import configparser
import dataclasses
import os
import pathlib
from typing import Optional

from .logging_config import get_logger

logger = get_logger("config")

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]

# DATA_DIR holds all persistent state (config.ini, mirror.db, mirror.log).
DATA_DIR = pathlib.Path(os.environ.get("DATA_DIR", str(PROJECT_ROOT)))
DEFAULT_CONFIG_PATH = DATA_DIR / "config.ini"

INSTANCE_PREFIX = "instance:"


@dataclasses.dataclass
class DatabaseConfig:
    path: pathlib.Path = dataclasses.field(default_factory=lambda: DATA_DIR / "mirror.db")


@dataclasses.dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 8090


@dataclasses.dataclass
class SyncConfig:
    interval_minutes: int = 60
    page_size: int = 500
    id_page_size: int = 5000
    max_incremental_failures: int = 3
    # Above this many upstream changes a smart sync runs a full pass instead
    incremental_change_limit: int = 10000
    write_back: bool = False
    request_timeout: int = 30


@dataclasses.dataclass
class QueryConfig:
    default_per_page: int = 40
    max_per_page: int = 500
    random_seed_bucket_minutes: int = 60


@dataclasses.dataclass
class LoggingConfig:
    level: str = "INFO"
    file: str = "mirror.log"
    # Per-category levels, e.g. {"query": "WARNING"}
    categories: dict[str, str] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class InstanceConfig:
    """One upstream Stash server."""

    id: str
    url: str
    api_key: str = ""
    name: str = ""
    enabled: bool = True

    @property
    def graphql_url(self) -> str:
        base = self.url.rstrip("/")
        return base if base.endswith("/graphql") else f"{base}/graphql"


@dataclasses.dataclass
class MirrorConfig:
    database: DatabaseConfig
    server: ServerConfig
    sync: SyncConfig
    query: QueryConfig
    instances: list[InstanceConfig]
    logging: LoggingConfig = dataclasses.field(default_factory=LoggingConfig)

    @property
    def database_path(self) -> pathlib.Path:
        return self.database.path

    @property
    def enabled_instances(self) -> list[InstanceConfig]:
        return [i for i in self.instances if i.enabled]

    def instance(self, instance_id: str) -> Optional[InstanceConfig]:
        for inst in self.instances:
            if inst.id == instance_id:
                return inst
        return None


def _parse_bool(value: str, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _load_instances(parser: configparser.ConfigParser) -> list[InstanceConfig]:
    instances = []
    for section in parser.sections():
        if not section.startswith(INSTANCE_PREFIX):
            continue
        instance_id = section[len(INSTANCE_PREFIX):].strip()
        url = parser.get(section, "url", fallback="").strip()
        if not instance_id or not url:
            logger.warning(f"Ignoring incomplete instance section [{section}]")
            continue
        instances.append(
            InstanceConfig(
                id=instance_id,
                url=url,
                api_key=parser.get(section, "api_key", fallback="").strip(),
                name=parser.get(section, "name", fallback=instance_id).strip(),
                enabled=_parse_bool(parser.get(section, "enabled", fallback="true"), True),
            )
        )
    return instances


def _load_logging(parser: configparser.ConfigParser) -> LoggingConfig:
    if not parser.has_section("logging"):
        return LoggingConfig()
    section = parser["logging"]
    return LoggingConfig(
        level=section.get("level", "INFO").strip(),
        file=section.get("file", "mirror.log").strip(),
        categories={
            key: value.strip() for key, value in section.items() if key not in ("level", "file")
        },
    )


def load_config(config_path: Optional[pathlib.Path] = None) -> MirrorConfig:
    """Load configuration from config.ini.

    Defaults to `config.ini` in DATA_DIR.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    parser = configparser.ConfigParser()
    parser.read(path)

    db_path = parser.get("database", "path", fallback="").strip()
    db_file = pathlib.Path(db_path).expanduser() if db_path else pathlib.Path("mirror.db")
    # Relative paths are relative to DATA_DIR, not the working directory
    database = DatabaseConfig(path=db_file if db_file.is_absolute() else DATA_DIR / db_file)

    server = ServerConfig(
        host=parser.get("server", "host", fallback="0.0.0.0"),
        port=parser.getint("server", "port", fallback=8090),
    )

    sync = SyncConfig(
        interval_minutes=parser.getint("sync", "interval_minutes", fallback=60),
        page_size=parser.getint("sync", "page_size", fallback=500),
        id_page_size=parser.getint("sync", "id_page_size", fallback=5000),
        max_incremental_failures=parser.getint(
            "sync", "max_incremental_failures", fallback=3
        ),
        incremental_change_limit=parser.getint(
            "sync", "incremental_change_limit", fallback=10000
        ),
        write_back=_parse_bool(parser.get("sync", "write_back", fallback="false"), False),
        request_timeout=parser.getint("sync", "request_timeout", fallback=30),
    )

    query = QueryConfig(
        default_per_page=parser.getint("query", "default_per_page", fallback=40),
        max_per_page=parser.getint("query", "max_per_page", fallback=500),
        random_seed_bucket_minutes=parser.getint(
            "query", "random_seed_bucket_minutes", fallback=60
        ),
    )

    return MirrorConfig(
        database=database,
        server=server,
        sync=sync,
        query=query,
        instances=_load_instances(parser),
        logging=_load_logging(parser),
    )


def write_default_config(
    config_path: pathlib.Path,
    instance_id: str,
    url: str,
    api_key: str = "",
) -> pathlib.Path:
    """Write a config.ini with default settings and a single upstream instance."""
    parser = configparser.ConfigParser()
    parser["database"] = {"path": str(DATA_DIR / "mirror.db")}
    parser["server"] = {"host": "0.0.0.0", "port": "8090"}
    parser["sync"] = {
        "interval_minutes": "60",
        "page_size": "500",
        "id_page_size": "5000",
        "max_incremental_failures": "3",
        "incremental_change_limit": "10000",
        "write_back": "false",
        "request_timeout": "30",
    }
    parser["query"] = {
        "default_per_page": "40",
        "max_per_page": "500",
        "random_seed_bucket_minutes": "60",
    }
    parser["logging"] = {"level": "INFO", "file": "mirror.log"}
    parser[f"{INSTANCE_PREFIX}{instance_id}"] = {
        "url": url,
        "api_key": api_key,
        "name": instance_id,
        "enabled": "true",
    }

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w") as handle:
        parser.write(handle)
    return config_path
