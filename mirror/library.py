"""Library facade: the surface other services and the HTTP API call into."""

from __future__ import annotations

from typing import Optional

from .config import MirrorConfig
from .database import Store
from .errors import NotReadyError
from .logging_config import get_logger
from .overlay import UserActions
from .query import QueryBuilder, QueryResult, QuerySpec
from .source import build_sources
from .sync import Source, SyncOrchestrator, SyncResult, SyncStatus

logger = get_logger("sync.library")


class Library:
    """Ties the store, the sync orchestrator and the query builder together.

    Sources default to one GraphQL client per enabled instance; tests pass
    their own.
    """

    def __init__(self, store: Store, config: MirrorConfig, sources: Optional[dict[str, Source]] = None):
        self.store = store
        self.config = config
        self.sources = build_sources(config) if sources is None else sources
        self.orchestrator = SyncOrchestrator(store, self.sources, config.sync)
        self.queries = QueryBuilder(store, config.query)
        self.actions = UserActions(store, self.sources, write_back=config.sync.write_back)

    def is_ready(self) -> bool:
        """True once every configured instance has completed a full sync."""
        return self.orchestrator.has_full_sync()

    def _require_ready(self) -> None:
        if not self.is_ready():
            raise NotReadyError("Library is not ready: initial full sync has not completed")

    def execute(self, spec: QuerySpec) -> QueryResult:
        self._require_ready()
        return self.queries.execute(spec)

    def get_by_ids(
        self,
        entity_type: str,
        ids: list[str],
        user_id: str,
        instance_id: Optional[str] = None,
        apply_exclusions: bool = True,
    ) -> list[dict]:
        self._require_ready()
        return self.queries.get_by_ids(entity_type, ids, user_id, instance_id, apply_exclusions)

    def trigger_sync(
        self,
        instance_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        kind: str = "smart",
    ) -> list[SyncResult]:
        logger.info(
            f"Triggered {kind} sync "
            f"(instance={instance_id or 'all'}, type={entity_type or 'all'})"
        )
        return self.orchestrator.sync(kind, instance_id, entity_type)

    def get_sync_status(
        self, instance_id: Optional[str] = None, entity_type: Optional[str] = None
    ) -> list[SyncStatus]:
        return self.orchestrator.status(instance_id, entity_type)
