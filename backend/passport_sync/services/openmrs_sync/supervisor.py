"""Serial trigger and periodic loop around :func:`run_sync`."""

from __future__ import annotations

import enum
import logging
import threading
import time
from typing import Callable

from sqlalchemy.orm import Session

from passport_sync.core.settings import Settings, settings as default_settings
from passport_sync.models.sync_state import SyncRunStatus
from passport_sync.services.openmrs_sync.errors import SyncAlreadyRunning
from passport_sync.services.openmrs_sync.source import ObservationSource
from passport_sync.services.openmrs_sync.sync_run import SyncRunSummary, run_sync

logger = logging.getLogger(__name__)


class SyncState(str, enum.Enum):
    idle = "idle"
    running = "running"


class SyncSupervisor:
    """Runs at most one sync at a time, on demand or every ``interval`` seconds."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        source_factory: Callable[[], ObservationSource],
        config: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._source_factory = source_factory
        self._config = config or default_settings
        self._run_lock = threading.Lock()
        self._state = SyncState.idle
        self._last_summary: SyncRunSummary | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def last_summary(self) -> SyncRunSummary | None:
        return self._last_summary

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def trigger(self, full_history: bool = False, trigger: str = "manual") -> SyncRunSummary:
        if not self._run_lock.acquire(blocking=False):
            raise SyncAlreadyRunning("An OpenMRS sync run is already in progress")
        try:
            self._state = SyncState.running
            summary = self._run(full_history=full_history, trigger=trigger)
            self._last_summary = summary
            return summary
        finally:
            # Outcome is reported through last_summary.
            self._state = SyncState.idle
            self._run_lock.release()

    def tick(self) -> SyncRunSummary | None:
        """One scheduled run; returns None when a manual run already holds the lock."""
        try:
            return self.trigger(trigger="schedule")
        except SyncAlreadyRunning:
            logger.info("Skipping scheduled OpenMRS sync; a run is already in progress")
            return None

    def status(self) -> dict[str, object]:
        return {
            "state": self._state.value,
            "busy": self._run_lock.locked(),
            "loop_running": self.is_running,
            "interval_seconds": self._config.sync_interval_seconds,
            "last_run": self._last_summary.as_dict() if self._last_summary else None,
        }

    def run_forever(
        self,
        stop_event: threading.Event | None = None,
        max_ticks: int | None = None,
    ) -> int:
        stop_event = stop_event or self._stop_event
        interval = self._config.sync_interval_seconds
        ticks = 0
        while not stop_event.is_set():
            started = time.monotonic()
            self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            elapsed = time.monotonic() - started
            stop_event.wait(max(1.0, interval - elapsed))
        return ticks

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self.run_forever,
            args=(self._stop_event,),
            name="openmrs-sync-supervisor",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "OpenMRS sync loop started (interval=%ss max_run=%ss batch=%s)",
            self._config.sync_interval_seconds,
            self._config.sync_max_run_seconds,
            self._config.sync_batch_size,
        )

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._thread is None:
            return
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("OpenMRS sync loop stopped")

    def _run(self, full_history: bool, trigger: str) -> SyncRunSummary:
        session = None
        try:
            session = self._session_factory()
            source = self._source_factory()
            return run_sync(
                session,
                source,
                full_history=full_history,
                batch_size=self._config.sync_batch_size,
                max_run_seconds=self._config.sync_max_run_seconds,
                trigger=trigger,
            )
        except Exception as exc:
            # A tick always produces a summary, even when setup itself blew up.
            logger.exception("OpenMRS sync run crashed")
            return SyncRunSummary(
                status=SyncRunStatus.failed.value,
                source_system=self._config.sync_source_system,
                full_history=full_history,
                trigger=trigger,
                error=f"{type(exc).__name__}: {exc}",
            )
        finally:
            if session is not None:
                session.close()


_supervisor_instance: SyncSupervisor | None = None


def get_sync_supervisor() -> SyncSupervisor:
    """Process-wide supervisor wired to the configured database and OpenMRS source."""
    global _supervisor_instance
    if _supervisor_instance is None:
        from passport_sync.db.session import SessionLocal
        from passport_sync.services.openmrs_sync.mysql_source import (
            OpenMrsSqlConfig,
            OpenMrsSqlSource,
        )

        def _source_factory() -> ObservationSource:
            config = OpenMrsSqlConfig.from_env()
            config.require_enabled()
            return OpenMrsSqlSource(config)

        _supervisor_instance = SyncSupervisor(SessionLocal, _source_factory)
    return _supervisor_instance


def set_sync_supervisor(supervisor: SyncSupervisor | None) -> None:
    global _supervisor_instance
    _supervisor_instance = supervisor
