"""Sync orchestration for stash-mirror.

Keeps the local mirror in step with every configured upstream instance.

Implements:
- full sync: page through everything, then soft-delete what upstream no longer has
- incremental sync: only entities updated since the last seen timestamp
- smart sync: pick full, incremental or nothing per entity type
- single-entity refresh for webhook style updates

Each (instance, entity type) pair runs at most one sync at a time; a trigger
that arrives while one is running is coalesced into it.
"""

from __future__ import annotations

import dataclasses
import enum
import threading
import time
from datetime import datetime
from typing import Iterable, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select

from .config import SyncConfig
from .database import Store
from .derived import run_derived_pipeline
from .errors import MirrorError, UpstreamShapeError
from .logging_config import get_logger
from .models import ENTITY_TYPES, SCHEMA_REVISION, SyncState
from .payloads import parse_payloads
from .upsert import EntityUpserter
from .utils import latest_timestamp, short_error, utcnow

logger = get_logger("sync")
derive_logger = get_logger("derive")


class SyncKind(str, enum.Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class SyncPhase(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Source(Protocol):
    def find_page(self, entity_type: str, page: int, per_page: int,
                  updated_since: Optional[str] = None) -> tuple[int, list[dict]]: ...

    def find_by_ids(self, entity_type: str, ids: list[str]) -> list[dict]: ...

    def find_ids(self, entity_type: str, page: int, per_page: int) -> tuple[Optional[int], list[str]]: ...

    def count_changed_since(self, entity_type: str, since: str) -> int: ...


@dataclasses.dataclass
class SyncResult:
    instance_id: str
    entity_type: str
    kind: Optional[str]
    status: str  # succeeded | failed | coalesced | skipped
    synced: int = 0
    deleted: int = 0
    duration_ms: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)


@dataclasses.dataclass
class SyncStatus:
    instance_id: str
    entity_type: str
    phase: str
    running_kind: Optional[str] = None
    last_sync_kind: Optional[str] = None
    last_full_sync_actual: Optional[datetime] = None
    last_incremental_sync_actual: Optional[datetime] = None
    last_sync_count: int = 0
    last_sync_duration_ms: int = 0
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    total_entities: int = 0

    def to_dict(self) -> dict:
        data = dataclasses.asdict(self)
        for key in ("last_full_sync_actual", "last_incremental_sync_actual"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class SyncOrchestrator:
    """Runs syncs against injected upstream sources and records their outcome."""

    def __init__(self, store: Store, sources: dict[str, Source], settings: SyncConfig):
        self.store = store
        self.sources = sources
        self.settings = settings
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._running: dict[tuple[str, str], SyncKind] = {}
        self._derive_lock = threading.Lock()

    # --- Locking ---

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def is_busy(self) -> bool:
        with self._guard:
            return bool(self._running)

    def all_running(self, instance_id: Optional[str] = None, entity_type: Optional[str] = None) -> bool:
        """True when every selected (instance, type) pair already has a sync running."""
        keys = [(inst, etype) for inst in self._instances(instance_id) for etype in self._types(entity_type)]
        with self._guard:
            return bool(keys) and all(key in self._running for key in keys)

    # --- State ---

    def _get_state(self, session, instance_id: str, entity_type: str) -> Optional[SyncState]:
        return session.exec(
            select(SyncState).where(
                SyncState.instance_id == instance_id,
                SyncState.entity_type == entity_type,
            )
        ).first()

    def load_state(self, instance_id: str, entity_type: str) -> Optional[SyncState]:
        with self.store.session() as session:
            state = self._get_state(session, instance_id, entity_type)
            if state is not None:
                session.expunge(state)
            return state

    def _record_success(
        self,
        instance_id: str,
        entity_type: str,
        kind: SyncKind,
        synced: int,
        max_updated: Optional[str],
        duration_ms: int,
    ) -> None:
        with self.store.session() as session:
            state = self._get_state(session, instance_id, entity_type) or SyncState(
                instance_id=instance_id, entity_type=entity_type
            )
            now = utcnow()
            # Timestamps only move forward when entities were actually seen
            if kind is SyncKind.FULL:
                state.last_full_sync_actual = now
                if max_updated:
                    state.last_full_sync_timestamp = max_updated
            else:
                state.last_incremental_sync_actual = now
                if max_updated:
                    state.last_incremental_sync_timestamp = latest_timestamp(
                        state.last_incremental_sync_timestamp, max_updated
                    )
            state.last_sync_kind = kind.value
            state.last_sync_count = synced
            state.last_sync_duration_ms = duration_ms
            state.last_error = None
            state.consecutive_failures = 0
            state.schema_revision = SCHEMA_REVISION
            state.total_entities = EntityUpserter(session).count_live(entity_type, instance_id)
            state.updated_at = now
            session.add(state)
            session.commit()

    def _record_failure(
        self,
        instance_id: str,
        entity_type: str,
        kind: Optional[SyncKind],
        exc: BaseException,
        duration_ms: int,
    ) -> None:
        try:
            with self.store.session() as session:
                state = self._get_state(session, instance_id, entity_type) or SyncState(
                    instance_id=instance_id, entity_type=entity_type
                )
                state.last_error = short_error(exc)
                state.consecutive_failures += 1
                state.last_sync_duration_ms = duration_ms
                if kind is not None:
                    state.last_sync_kind = kind.value
                state.updated_at = utcnow()
                session.add(state)
                session.commit()
        except SQLAlchemyError as db_exc:
            logger.error(f"Could not record failure for {instance_id}/{entity_type}: {db_exc}")

    # --- Single sync ---

    def _source(self, instance_id: str) -> Source:
        source = self.sources.get(instance_id)
        if source is None:
            raise ValueError(f"Unknown or disabled instance: {instance_id}")
        return source

    def run(self, instance_id: str, entity_type: str, kind: SyncKind) -> SyncResult:
        """Run one sync of one entity type for one instance.

        Never raises for upstream or storage failures: they are logged,
        recorded on the sync state and returned as a failed result.
        """
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        source = self._source(instance_id)
        key = (instance_id, entity_type)

        lock = self._lock_for(key)
        if not lock.acquire(blocking=False):
            logger.info(f"{instance_id}/{entity_type} already running, trigger coalesced")
            return SyncResult(instance_id, entity_type, kind.value, "coalesced")

        started = time.monotonic()
        try:
            state = self.load_state(instance_id, entity_type)
            since = None
            if state is not None:
                since = latest_timestamp(
                    state.last_full_sync_timestamp, state.last_incremental_sync_timestamp
                )
            if kind is SyncKind.INCREMENTAL and since is None:
                logger.info(f"{instance_id}/{entity_type}: no previous sync, running full")
                kind = SyncKind.FULL

            with self._guard:
                self._running[key] = kind

            logger.info(f"{instance_id}/{entity_type} {kind.value} sync started")
            deleted = 0
            if kind is SyncKind.FULL:
                synced, max_updated = self._copy_pages(source, instance_id, entity_type, None)
                deleted = self._remove_stale(source, instance_id, entity_type)
            else:
                synced, max_updated = self._copy_pages(source, instance_id, entity_type, since)

            duration_ms = int((time.monotonic() - started) * 1000)
            self._record_success(instance_id, entity_type, kind, synced, max_updated, duration_ms)
            logger.info(
                f"✓ {instance_id}/{entity_type} {kind.value}: "
                f"{synced} synced, {deleted} deleted ({duration_ms} ms)"
            )
            return SyncResult(instance_id, entity_type, kind.value, "succeeded", synced, deleted, duration_ms)
        except Exception as exc:
            duration_ms = int((time.monotonic() - started) * 1000)
            logger.error(f"✗ {instance_id}/{entity_type} {kind.value} failed: {exc}")
            self._record_failure(instance_id, entity_type, kind, exc, duration_ms)
            return SyncResult(
                instance_id, entity_type, kind.value, "failed",
                duration_ms=duration_ms, error=short_error(exc),
            )
        finally:
            with self._guard:
                self._running.pop(key, None)
            lock.release()

    def _copy_pages(
        self,
        source: Source,
        instance_id: str,
        entity_type: str,
        since: Optional[str],
    ) -> tuple[int, Optional[str]]:
        """Page through upstream and upsert each page in its own transaction."""
        per_page = self.settings.page_size
        page = 1
        synced = 0
        max_updated: Optional[str] = None

        while True:
            count, items = source.find_page(entity_type, page, per_page, updated_since=since)
            if not items:
                break
            payloads = parse_payloads(entity_type, items)
            with self.store.session() as session:
                upserter = EntityUpserter(session)
                upserter.upsert_page(entity_type, instance_id, payloads)
                upserter.commit()

            synced += len(payloads)
            max_updated = latest_timestamp(max_updated, *(p.updated_at for p in payloads))
            logger.debug(f"{instance_id}/{entity_type} page {page}: {synced}/{count}")

            if synced >= count or len(items) < per_page:
                break
            page += 1

        return synced, max_updated

    def _remove_stale(self, source: Source, instance_id: str, entity_type: str) -> int:
        """Soft-delete local rows whose id upstream no longer lists."""
        per_page = self.settings.id_page_size
        page = 1
        ids: list[str] = []
        expected = 0

        while True:
            count, page_ids = source.find_ids(entity_type, page, per_page)
            if count is None:
                raise UpstreamShapeError(
                    f"{entity_type} id listing returned no count; refusing to detect deletions"
                )
            expected = count
            ids.extend(page_ids)
            if not page_ids or len(ids) >= count or len(page_ids) < per_page:
                break
            page += 1

        unique_ids = set(ids)
        if len(unique_ids) < expected:
            # Upstream changed while we paged; a partial list would delete live rows
            logger.warning(
                f"{instance_id}/{entity_type}: got {len(unique_ids)} of {expected} ids, "
                f"skipping deletion detection this run"
            )
            return 0

        with self.store.session() as session:
            upserter = EntityUpserter(session)
            deleted = upserter.soft_delete_missing(entity_type, instance_id, unique_ids)
            upserter.commit()
        if deleted:
            logger.info(f"[-] {instance_id}/{entity_type}: {deleted} removed upstream")
        return deleted

    # --- Policy ---

    def choose_kind(self, instance_id: str, entity_type: str) -> Optional[SyncKind]:
        """Smart policy. None means upstream has nothing new for this type."""
        state = self.load_state(instance_id, entity_type)
        if state is None or state.last_full_sync_actual is None:
            return SyncKind.FULL
        if state.schema_revision != SCHEMA_REVISION:
            return SyncKind.FULL
        if state.consecutive_failures >= self.settings.max_incremental_failures:
            return SyncKind.FULL

        since = latest_timestamp(state.last_full_sync_timestamp, state.last_incremental_sync_timestamp)
        if since is None:
            return SyncKind.FULL
        changed = self._source(instance_id).count_changed_since(entity_type, since)
        if changed == 0:
            return None
        if changed > self.settings.incremental_change_limit:
            return SyncKind.FULL
        return SyncKind.INCREMENTAL

    # --- Passes over every type ---

    def _instances(self, instance_id: Optional[str]) -> list[str]:
        if instance_id is None:
            return list(self.sources)
        self._source(instance_id)
        return [instance_id]

    def _types(self, entity_type: Optional[str]) -> Iterable[str]:
        if entity_type is None:
            return ENTITY_TYPES
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        return (entity_type,)

    def sync(
        self,
        kind: str = "smart",
        instance_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        derive: bool = True,
    ) -> list[SyncResult]:
        """Sync the selected instances and types in dependency order.

        `kind` is "full", "incremental" or "smart". The derived pipeline runs
        once at the end when at least one sync succeeded.
        """
        if kind not in ("full", "incremental", "smart"):
            raise ValueError(f"Unknown sync kind: {kind}")
        results = []
        for inst in self._instances(instance_id):
            for etype in self._types(entity_type):
                if kind == "smart":
                    results.append(self._smart_one(inst, etype))
                else:
                    results.append(self.run(inst, etype, SyncKind(kind)))

        if derive and any(r.status == "succeeded" for r in results):
            self.derive()
        return results

    def _smart_one(self, instance_id: str, entity_type: str) -> SyncResult:
        try:
            chosen = self.choose_kind(instance_id, entity_type)
        except MirrorError as exc:
            logger.error(f"✗ {instance_id}/{entity_type} change probe failed: {exc}")
            self._record_failure(instance_id, entity_type, None, exc, 0)
            return SyncResult(instance_id, entity_type, None, "failed", error=short_error(exc))
        if chosen is None:
            logger.debug(f"{instance_id}/{entity_type}: no upstream changes")
            return SyncResult(instance_id, entity_type, None, "skipped")
        return self.run(instance_id, entity_type, chosen)

    def full_sync(self, instance_id: Optional[str] = None) -> list[SyncResult]:
        return self.sync("full", instance_id)

    def incremental_sync(self, instance_id: Optional[str] = None) -> list[SyncResult]:
        return self.sync("incremental", instance_id)

    def smart_sync(self, instance_id: Optional[str] = None) -> list[SyncResult]:
        return self.sync("smart", instance_id)

    def derive(self) -> Optional[dict]:
        """Run the derived metadata pipeline. Failures are logged, not raised."""
        with self._derive_lock:
            try:
                stats = run_derived_pipeline(self.store)
            except Exception as exc:
                derive_logger.error(f"✗ Derived metadata pass failed: {exc}")
                return None
        return stats

    # --- Single entity / administration ---

    def sync_single_entity(
        self,
        instance_id: str,
        entity_type: str,
        entity_id: str,
        action: str = "update",
    ) -> SyncResult:
        """Refresh (create/update) or soft-delete (delete) one entity.

        Runs under the same per-type lock as `run`, after any pass over the
        same instance and type has finished.
        """
        if entity_type not in ENTITY_TYPES:
            raise ValueError(f"Unknown entity type: {entity_type}")
        if action not in ("create", "update", "delete"):
            raise ValueError(f"Unknown action: {action}")
        source = self._source(instance_id)
        started = time.monotonic()
        synced = deleted = 0
        lock = self._lock_for((instance_id, entity_type))
        if not lock.acquire(blocking=False):
            # Waits for the running pass; its deletion sweep must not see this write
            logger.debug(f"{instance_id}/{entity_type}/{entity_id} waiting for running sync")
            lock.acquire()
        try:
            items = [] if action == "delete" else source.find_by_ids(entity_type, [entity_id])
            with self.store.session() as session:
                upserter = EntityUpserter(session)
                if items:
                    synced = upserter.upsert_page(entity_type, instance_id, parse_payloads(entity_type, items))
                else:
                    deleted = upserter.mark_deleted(entity_type, instance_id, [entity_id])
                upserter.commit()
        except MirrorError as exc:
            logger.error(f"✗ {instance_id}/{entity_type}/{entity_id} {action} failed: {exc}")
            return SyncResult(instance_id, entity_type, None, "failed", error=short_error(exc))
        finally:
            lock.release()

        self.derive()
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"{instance_id}/{entity_type}/{entity_id} {action}: {synced} synced, {deleted} deleted")
        return SyncResult(instance_id, entity_type, None, "succeeded", synced, deleted, duration_ms)

    def clear_instance(self, instance_id: str) -> dict[str, int]:
        """Hard-delete everything mirrored from one instance and forget its sync state."""
        with self.store.session() as session:
            upserter = EntityUpserter(session)
            removed = upserter.purge_instance(instance_id)
            for state in session.exec(select(SyncState).where(SyncState.instance_id == instance_id)).all():
                session.delete(state)
            upserter.commit()
        logger.info(f"Cleared instance {instance_id}: {sum(removed.values())} rows removed")
        return removed

    # --- Reporting ---

    def has_full_sync(self, instance_ids: Optional[list[str]] = None) -> bool:
        """True when every selected instance finished a full sync of every type."""
        instances = list(self.sources) if instance_ids is None else instance_ids
        if not instances:
            return False
        with self.store.session() as session:
            done = {
                (s.instance_id, s.entity_type)
                for s in session.exec(select(SyncState)).all()
                if s.last_full_sync_actual is not None
            }
        return all((inst, etype) in done for inst in instances for etype in ENTITY_TYPES)

    def status(self, instance_id: Optional[str] = None, entity_type: Optional[str] = None) -> list[SyncStatus]:
        with self.store.session() as session:
            states = {
                (s.instance_id, s.entity_type): s for s in session.exec(select(SyncState)).all()
            }
        with self._guard:
            running = dict(self._running)

        result = []
        for inst in self._instances(instance_id):
            for etype in self._types(entity_type):
                state = states.get((inst, etype))
                key = (inst, etype)
                if key in running:
                    phase = SyncPhase.RUNNING
                elif state is None or state.last_sync_kind is None:
                    phase = SyncPhase.IDLE
                elif state.last_error:
                    phase = SyncPhase.FAILED
                else:
                    phase = SyncPhase.SUCCEEDED
                status = SyncStatus(
                    instance_id=inst,
                    entity_type=etype,
                    phase=phase.value,
                    running_kind=running[key].value if key in running else None,
                )
                if state is not None:
                    status.last_sync_kind = state.last_sync_kind
                    status.last_full_sync_actual = state.last_full_sync_actual
                    status.last_incremental_sync_actual = state.last_incremental_sync_actual
                    status.last_sync_count = state.last_sync_count
                    status.last_sync_duration_ms = state.last_sync_duration_ms
                    status.last_error = state.last_error
                    status.consecutive_failures = state.consecutive_failures
                    status.total_entities = state.total_entities
                result.append(status)
        return result
