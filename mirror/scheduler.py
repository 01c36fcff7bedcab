"""Background sync scheduling for stash-mirror.

One worker thread runs a startup sync, then a smart sync every
`sync.interval_minutes`. The thread owns its stop event; `stop()` sets it and
waits for the current pass to finish.
"""

from __future__ import annotations

from threading import Event, Thread
from typing import Optional

from .logging_config import get_logger
from .sync import SyncOrchestrator

logger = get_logger("sync.scheduler")


def startup_kind(orchestrator: SyncOrchestrator, migrations_applied: bool) -> str:
    """Full on a fresh mirror or right after a schema migration, smart otherwise."""
    if migrations_applied or not orchestrator.has_full_sync():
        return "full"
    return "smart"


class SyncScheduler:
    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        interval_minutes: int = 60,
        migrations_applied: bool = False,
        run_on_start: bool = True,
    ):
        self.orchestrator = orchestrator
        self.interval_seconds = max(1, interval_minutes) * 60
        self.migrations_applied = migrations_applied
        self.run_on_start = run_on_start
        self._stop = Event()
        self._thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(target=self._run, daemon=True, name="MirrorSyncScheduler")
        self._thread.start()
        logger.info(f"Sync scheduler started (every {self.interval_seconds // 60} min)")

    def stop(self, timeout: Optional[float] = 30.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Sync scheduler stopped")

    def tick(self) -> bool:
        """Run one periodic smart sync. Returns False when skipped."""
        if self.orchestrator.is_busy():
            logger.info("Previous sync still running, skipping this tick")
            return False
        self.orchestrator.smart_sync()
        return True

    def _run(self) -> None:
        if self.run_on_start and not self._stop.is_set():
            kind = startup_kind(self.orchestrator, self.migrations_applied)
            logger.info(f"Startup {kind} sync")
            try:
                self.orchestrator.sync(kind)
            except Exception as exc:
                logger.error(f"Startup sync crashed: {exc}")

        while not self._stop.wait(self.interval_seconds):
            try:
                self.tick()
            except Exception as exc:
                logger.error(f"Scheduled sync crashed: {exc}")
