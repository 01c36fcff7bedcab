"""stash-mirror CLI entry point."""

from __future__ import annotations

from typing import Optional

import typer

from mirror.config import DEFAULT_CONFIG_PATH, MirrorConfig, load_config, write_default_config
from mirror.database import Store, store_from_config
from mirror.derived import run_derived_pipeline
from mirror.library import Library
from mirror.logging_config import get_logger, setup_logging
from mirror.migrations import get_status, run_migrations, stamp_if_needed
from mirror.models import ENTITY_MODELS, ENTITY_TYPES

__version__ = "0.1.0"

app = typer.Typer(add_completion=False, help="stash-mirror CLI")
logger = get_logger("cli")

STARTUP_BANNER = r"""
     _            _                     _
 ___| |_ __ _ ___| |__    _ __ ___ (_)_ __ _ __ ___  _ __
/ __| __/ _` / __| '_ \  | '_ ` _ \| | '__| '__/ _ \| '__|
\__ \ || (_| \__ \ | | | | | | | | | | |  | | | (_) | |
|___/\__\__,_|___/_| |_| |_| |_| |_|_|_|  |_|  \___/|_|
"""


def _ensure_config() -> MirrorConfig:
    """Load config.ini and set up logging from its [logging] section."""
    try:
        config = load_config()
    except FileNotFoundError:
        setup_logging()
        typer.echo("[ERROR] config.ini not found. Run: stash-mirror init --instance-id main --url http://stash:9999")
        raise typer.Exit(code=1)
    setup_logging(config.logging.level, config.logging.file, config.logging.categories)
    return config


def _open_store(config: MirrorConfig) -> tuple[Store, bool]:
    """Open the store and bring its schema to head. Returns (store, migrated)."""
    store = store_from_config(config)
    store.init_db()
    db_path = config.database_path

    # Stamp databases created by create_all, then upgrade to head.
    stamp_if_needed(db_path)
    current, head = get_status(db_path)
    if current != head:
        logger.info(f"Migrating database {current} -> {head} ...")
        run_migrations(db_path, backup=True)
        logger.info("Migration complete.")
        return store, True
    logger.debug(f"Database at {head} (up to date).")
    return store, False


@app.command()
def init(
    instance_id: str = typer.Option("main", "--instance-id", help="Identifier for the upstream instance"),
    url: str = typer.Option(..., "--url", help="Base URL of the Stash instance"),
    api_key: str = typer.Option("", "--api-key", help="Stash API key"),
) -> None:
    """Initialize config.ini with default settings."""
    config_path = write_default_config(DEFAULT_CONFIG_PATH, instance_id, url, api_key)
    typer.echo(f"[OK] Config created at {config_path}")


@app.command()
def sync(
    full: bool = typer.Option(False, "--full", help="Full sync with deletion detection"),
    incremental: bool = typer.Option(False, "--incremental", help="Only entities changed since the last sync"),
    smart: bool = typer.Option(False, "--smart", help="Pick full, incremental or nothing per type (default)"),
    instance: Optional[str] = typer.Option(None, "--instance", help="Only this instance"),
    entity: Optional[str] = typer.Option(None, "--entity", help=f"Only this type ({', '.join(ENTITY_TYPES)})"),
) -> None:
    """Sync the local mirror from upstream."""
    if full + incremental + smart > 1:
        typer.echo("[ERROR] Use only one of --full, --incremental, --smart.")
        raise typer.Exit(code=1)
    kind = "full" if full else "incremental" if incremental else "smart"

    config = _ensure_config()
    store, _ = _open_store(config)
    library = Library(store, config)
    try:
        results = library.trigger_sync(instance, entity, kind)
    except ValueError as exc:
        typer.echo(f"[ERROR] {exc}")
        raise typer.Exit(code=1)
    finally:
        store.close()

    for r in results:
        mark = "✓" if r.status in ("succeeded", "skipped", "coalesced") else "✗"
        line = f"{mark} {r.instance_id}/{r.entity_type}: {r.status}"
        if r.kind:
            line += f" ({r.kind}, {r.synced} synced, {r.deleted} deleted, {r.duration_ms} ms)"
        if r.error:
            line += f" - {r.error}"
        typer.echo(line)

    if any(r.status == "failed" for r in results):
        raise typer.Exit(code=1)


@app.command()
def status(
    instance: Optional[str] = typer.Option(None, "--instance", help="Only this instance"),
) -> None:
    """Show sync state per instance and entity type."""
    config = _ensure_config()
    store, _ = _open_store(config)
    library = Library(store, config)
    try:
        rows = library.get_sync_status(instance)
        ready = library.is_ready()
    except ValueError as exc:
        typer.echo(f"[ERROR] {exc}")
        raise typer.Exit(code=1)
    finally:
        store.close()

    typer.echo(f"Ready: {'yes' if ready else 'no'}")
    for s in rows:
        last = s.last_full_sync_actual.isoformat(timespec="seconds") if s.last_full_sync_actual else "never"
        line = (
            f"  {s.instance_id}/{s.entity_type}: {s.phase}, {s.total_entities} entities, "
            f"last full {last}"
        )
        if s.last_error:
            line += f", {s.consecutive_failures} failures ({s.last_error})"
        typer.echo(line)


@app.command()
def derive() -> None:
    """Recompute inherited tags, gallery inheritance and user exclusions."""
    config = _ensure_config()
    store, _ = _open_store(config)
    try:
        stats = run_derived_pipeline(store)
    finally:
        store.close()
    typer.echo(
        "✓ Derived metadata updated: "
        f"{stats['inherited_tags']} scenes retagged, "
        f"{stats['gallery_inheritance']} images inherited, "
        f"{stats['exclusion_users']} users' exclusions rebuilt."
    )


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Server host"),
    port: Optional[int] = typer.Option(None, "--port", help="Server port"),
    no_sync: bool = typer.Option(False, "--no-sync", help="Disable the background sync scheduler"),
) -> None:
    """Start the HTTP API with the background sync scheduler."""
    from mirror.api import run_server
    from mirror.scheduler import SyncScheduler

    typer.echo(typer.style(STARTUP_BANNER, fg=typer.colors.MAGENTA, bold=True))
    config = _ensure_config()
    if not config.enabled_instances:
        logger.warning("No enabled [instance:<id>] sections in config.ini")

    store, migrated = _open_store(config)
    library = Library(store, config)
    scheduler = None
    if no_sync:
        logger.info("Background sync disabled")
    else:
        scheduler = SyncScheduler(
            library.orchestrator,
            interval_minutes=config.sync.interval_minutes,
            migrations_applied=migrated,
        )

    try:
        run_server(config, library, host=host, port=port, scheduler=scheduler)
    except KeyboardInterrupt:
        pass
    finally:
        store.close()


@app.command()
def stats() -> None:
    """Show mirrored entity counts."""
    config = _ensure_config()
    store, _ = _open_store(config)
    try:
        with store.connection() as conn:
            counts = {}
            for entity_type, model in ENTITY_MODELS.items():
                cur = conn.execute(
                    f"SELECT instance_id, SUM(deleted_at IS NULL) AS live, "
                    f"SUM(deleted_at IS NOT NULL) AS deleted "
                    f"FROM {model.__tablename__} GROUP BY instance_id ORDER BY instance_id"
                )
                counts[entity_type] = [dict(row) for row in cur.fetchall()]
            excluded = conn.execute(
                "SELECT COUNT(DISTINCT user_id) AS users, COUNT(*) AS total FROM user_excluded_entities"
            ).fetchone()
    finally:
        store.close()

    typer.echo("Mirror Statistics:")
    for entity_type in ENTITY_TYPES:
        rows = counts[entity_type]
        if not rows:
            typer.echo(f"  {entity_type}: 0")
            continue
        for row in rows:
            typer.echo(f"  {entity_type} [{row['instance_id']}]: {row['live']} live, {row['deleted']} deleted")
    typer.echo(f"  Exclusions: {excluded['total']} rows for {excluded['users']} users")


@app.command()
def migrate(
    check: bool = typer.Option(False, "--check", help="Print status and exit (1 if not at head)"),
) -> None:
    """Run pending database migrations (or check status with --check)."""
    config = _ensure_config()  # config must exist before we touch the DB
    db_path = config.database_path
    store = store_from_config(config)
    store.init_db()  # ensure tables exist for a brand-new DB
    store.close()
    stamp_if_needed(db_path)

    current, head = get_status(db_path)

    if check:
        if current == head:
            typer.echo(f"[OK] Database at {head} (head).")
            raise typer.Exit(code=0)
        typer.echo(f"[WARN] Database behind: current {current}, head {head}")
        raise typer.Exit(code=1)

    if current == head:
        logger.info(f"Database already at {head} (head). Nothing to do.")
        raise typer.Exit(code=0)

    logger.info(f"Migrating database {current} -> {head} ...")
    run_migrations(db_path, backup=True)
    logger.info("Migration complete.")


@app.command()
def clear(
    instance: str = typer.Option(..., "--instance", help="Instance whose mirrored data is removed"),
    confirm: bool = typer.Option(False, "--confirm", help="Confirm destructive clear"),
) -> None:
    """Remove every mirrored entity of one instance. User overlay data is kept."""
    if not confirm:
        typer.echo(f"[ERROR] This will delete all data mirrored from '{instance}'. Use --confirm.")
        raise typer.Exit(code=1)
    config = _ensure_config()
    store, _ = _open_store(config)
    try:
        removed = Library(store, config).orchestrator.clear_instance(instance)
    finally:
        store.close()
    typer.echo(f"[INFO] Removed {sum(removed.values())} rows mirrored from {instance}")


@app.command()
def reset(
    confirm: bool = typer.Option(False, "--confirm", help="Confirm destructive reset"),
) -> None:
    """Delete the database and run a full sync from scratch."""
    if not confirm:
        typer.echo("[ERROR] This will delete your mirror database, including user data. Use --confirm.")
        raise typer.Exit(code=1)
    config = _ensure_config()
    store = Store(config.database_path)
    store.reset()
    store.close()

    typer.echo("[INFO] Database reset. Running full sync...")
    store, _ = _open_store(config)
    try:
        results = Library(store, config).trigger_sync(kind="full")
    finally:
        store.close()
    failed = [r for r in results if r.status == "failed"]
    typer.echo(f"✓ Full sync finished: {len(results) - len(failed)} ok, {len(failed)} failed.")


if __name__ == "__main__":
    app()
