"""One bounded, idempotent OpenMRS → clinical record sync run.

A run reads observations after the stored checkpoint (or all of them for a
full-history replay) in (date_created, obs_id) order, resolves each person to
a patient, maps and writes the record, and commits after every observation so
work done before an abort is kept. The checkpoint is advanced only when the
run completes; a failed run leaves it where it was and the next run repeats
the window, which the insert-once writer turns into no-ops.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from passport_sync.core.logging import sync_run_id_var
from passport_sync.models.sync_state import SyncCheckpoint, SyncRun, SyncRunStatus
from passport_sync.services.openmrs_sync.errors import (
    DestinationUnavailable,
    SourceUnavailable,
    SyncError,
)
from passport_sync.services.openmrs_sync.identity import (
    NameMatchResolver,
    PatientResolver,
    ResolutionOutcome,
)
from passport_sync.services.openmrs_sync.mapper import map_observation
from passport_sync.services.openmrs_sync.source import ObservationSource
from passport_sync.services.openmrs_sync.types import (
    SourceObservation,
    SyncWatermark,
    normalize_datetime,
)
from passport_sync.services.openmrs_sync.writer import WriteOutcome, write_record

logger = logging.getLogger(__name__)


@dataclass
class SyncRunSummary:
    status: str = SyncRunStatus.running.value
    source_system: str = "openmrs"
    full_history: bool = False
    trigger: str = "schedule"
    run_id: int | None = None
    fetched: int = 0
    inserted: int = 0
    already_present: int = 0
    skipped_no_match: int = 0
    skipped_ambiguous: int = 0
    failed: int = 0
    deadline_reached: bool = False
    checkpoint_before: dict[str, str | None] | None = None
    checkpoint_after: dict[str, str | None] | None = None
    last_source_id: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    duration_seconds: float | None = None
    error: str | None = None
    failed_source_ids: list[str] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.skipped_no_match + self.skipped_ambiguous

    @property
    def succeeded(self) -> bool:
        return self.status == SyncRunStatus.succeeded.value

    def as_dict(self) -> dict[str, object]:
        data = asdict(self)
        data["skipped"] = self.skipped
        return data


def load_checkpoint(session: Session, source_system: str) -> SyncWatermark | None:
    row = session.scalar(
        select(SyncCheckpoint).where(SyncCheckpoint.source_system == source_system)
    )
    if row is None or row.last_recorded_at is None:
        return None
    return SyncWatermark(
        recorded_at=normalize_datetime(row.last_recorded_at),
        source_id=row.last_source_id,
    )


def save_checkpoint(session: Session, source_system: str, watermark: SyncWatermark) -> None:
    row = session.scalar(
        select(SyncCheckpoint).where(SyncCheckpoint.source_system == source_system)
    )
    if row is None:
        row = SyncCheckpoint(source_system=source_system)
        session.add(row)
    elif row.last_recorded_at is not None:
        current = SyncWatermark(
            recorded_at=normalize_datetime(row.last_recorded_at),
            source_id=row.last_source_id,
        )
        # Full-history replays must not move the watermark backwards.
        if watermark.sort_key() <= current.sort_key():
            return
    row.last_recorded_at = watermark.recorded_at
    row.last_source_id = watermark.source_id


def run_sync(
    session: Session,
    source: ObservationSource,
    *,
    full_history: bool = False,
    resolver: PatientResolver | None = None,
    batch_size: int | None = None,
    max_run_seconds: float | None = None,
    trigger: str = "schedule",
    progress_every: int | None = None,
) -> SyncRunSummary:
    source_system = source.source_system
    summary = SyncRunSummary(
        source_system=source_system,
        full_history=full_history,
        trigger=trigger,
        started_at=_utcnow().isoformat(),
    )
    started = time.monotonic()
    resolver = resolver or NameMatchResolver(source_system=source_system)

    try:
        checkpoint = load_checkpoint(session, source_system)
        run_row = _start_run_row(session, summary, checkpoint)
    except SQLAlchemyError as exc:
        session.rollback()
        summary.status = SyncRunStatus.failed.value
        summary.error = f"DestinationUnavailable: {exc}"
        _finish_timing(summary, started)
        logger.error("OpenMRS sync could not start: %s", exc)
        return summary

    token = sync_run_id_var.set(summary.run_id)
    since = None if full_history else checkpoint
    last_seen: SyncWatermark | None = None
    try:
        logger.info(
            "OpenMRS sync started (full_history=%s since=%s)",
            full_history,
            summary.checkpoint_before,
        )
        for observation in _iter_run_observations(source, since, batch_size, full_history):
            summary.fetched += 1
            _process_observation(session, observation, resolver, summary)
            last_seen = observation.watermark()
            _maybe_emit_progress(summary, progress_every, started)
            if max_run_seconds is not None and time.monotonic() - started >= max_run_seconds:
                summary.deadline_reached = True
                logger.warning(
                    "OpenMRS sync hit its %ss budget after %s observations; stopping early",
                    max_run_seconds,
                    summary.fetched,
                )
                break
    except (SourceUnavailable, DestinationUnavailable) as exc:
        session.rollback()
        summary.status = SyncRunStatus.failed.value
        summary.error = f"{type(exc).__name__}: {exc}"
        logger.error("OpenMRS sync failed: %s", summary.error)
    except Exception as exc:
        session.rollback()
        summary.status = SyncRunStatus.failed.value
        summary.error = f"{type(exc).__name__}: {exc}"
        logger.exception("OpenMRS sync aborted by an unexpected error")
    else:
        summary.status = SyncRunStatus.succeeded.value
        if last_seen is not None:
            summary.last_source_id = last_seen.source_id
    finally:
        sync_run_id_var.reset(token)

    _finish_timing(summary, started)
    try:
        if summary.succeeded and last_seen is not None:
            save_checkpoint(session, source_system, last_seen)
        checkpoint_after = load_checkpoint(session, source_system) if summary.succeeded else checkpoint
        summary.checkpoint_after = _watermark_dict(checkpoint_after)
        _finish_run_row(run_row, summary, checkpoint_after)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        summary.status = SyncRunStatus.failed.value
        summary.error = f"DestinationUnavailable: {exc}"
        summary.checkpoint_after = summary.checkpoint_before
        logger.error("OpenMRS sync could not record its outcome: %s", exc)

    logger.info(
        "OpenMRS sync %s: fetched=%s inserted=%s already_present=%s skipped=%s failed=%s checkpoint=%s",
        summary.status,
        summary.fetched,
        summary.inserted,
        summary.already_present,
        summary.skipped,
        summary.failed,
        summary.checkpoint_after,
    )
    return summary


def _iter_run_observations(
    source: ObservationSource,
    since: SyncWatermark | None,
    batch_size: int | None,
    full_history: bool,
) -> Iterator[SourceObservation]:
    """Incremental runs read one page; full-history runs page until the source runs dry."""
    if not full_history or batch_size is None:
        yield from source.iter_observations(since=since, limit=batch_size)
        return
    cursor = since
    while True:
        page_size = 0
        for observation in source.iter_observations(since=cursor, limit=batch_size):
            page_size += 1
            cursor = observation.watermark()
            yield observation
        if page_size < batch_size:
            return


def _process_observation(
    session: Session,
    observation: SourceObservation,
    resolver: PatientResolver,
    summary: SyncRunSummary,
) -> None:
    try:
        resolution = resolver.resolve(
            session,
            observation.source_person_id,
            observation.person_given_name,
            observation.person_family_name,
        )
        if resolution.patient_id is None:
            session.commit()
            if resolution.outcome == ResolutionOutcome.no_match:
                summary.skipped_no_match += 1
            else:
                summary.skipped_ambiguous += 1
            logger.info(
                "Skipping observation %s: person %s %s",
                observation.source_id,
                observation.source_person_id,
                resolution.outcome.value,
            )
            return
        record = map_observation(observation, resolution.patient_id, summary.source_system)
        outcome = write_record(session, record)
        session.commit()
    except SyncError:
        raise
    except SQLAlchemyError as exc:
        raise DestinationUnavailable(str(exc)) from exc
    except Exception:
        session.rollback()
        summary.failed += 1
        summary.failed_source_ids.append(observation.source_id)
        logger.exception("Failed to sync OpenMRS observation %s", observation.source_id)
        return
    if outcome == WriteOutcome.inserted:
        summary.inserted += 1
    else:
        summary.already_present += 1


def _start_run_row(
    session: Session,
    summary: SyncRunSummary,
    checkpoint: SyncWatermark | None,
) -> SyncRun:
    summary.checkpoint_before = _watermark_dict(checkpoint)
    row = SyncRun(
        source_system=summary.source_system,
        status=SyncRunStatus.running,
        trigger=summary.trigger,
        full_history=summary.full_history,
        checkpoint_before=checkpoint.recorded_at if checkpoint else None,
    )
    session.add(row)
    session.commit()
    summary.run_id = row.id
    return row


def _finish_run_row(
    row: SyncRun,
    summary: SyncRunSummary,
    checkpoint_after: SyncWatermark | None,
) -> None:
    row.status = SyncRunStatus(summary.status)
    row.finished_at = _utcnow()
    row.checkpoint_after = checkpoint_after.recorded_at if checkpoint_after else None
    row.fetched = summary.fetched
    row.inserted = summary.inserted
    row.already_present = summary.already_present
    row.skipped_no_match = summary.skipped_no_match
    row.skipped_ambiguous = summary.skipped_ambiguous
    row.failed = summary.failed
    row.error = summary.error[:2000] if summary.error else None


def _watermark_dict(watermark: SyncWatermark | None) -> dict[str, str | None] | None:
    if watermark is None:
        return None
    return watermark.model_dump(mode="json")


def _finish_timing(summary: SyncRunSummary, started: float) -> None:
    summary.finished_at = _utcnow().isoformat()
    summary.duration_seconds = round(time.monotonic() - started, 3)


def _maybe_emit_progress(
    summary: SyncRunSummary,
    progress_every: int | None,
    started: float,
) -> None:
    if not progress_every or progress_every <= 0:
        return
    if summary.fetched % progress_every != 0:
        return
    elapsed = max(time.monotonic() - started, 0.001)
    payload = {
        "event": "openmrs_sync_progress",
        "processed": summary.fetched,
        "inserted": summary.inserted,
        "skipped": summary.skipped,
        "observations_per_second": round(summary.fetched / elapsed, 2),
        "timestamp": round(time.time(), 3),
    }
    print(json.dumps(payload, sort_keys=True))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)
