from __future__ import annotations

import argparse
import json
import logging
import subprocess
import sys
import threading
import time
from pathlib import Path

from sqlalchemy import select

from passport_sync.core.logging import configure_logging
from passport_sync.core.settings import settings
from passport_sync.db.session import SessionLocal
from passport_sync.models import Base
from passport_sync.models.sync_state import SyncRun
from passport_sync.services.openmrs_sync.errors import SyncError
from passport_sync.services.openmrs_sync.fixture_source import FixtureSource
from passport_sync.services.openmrs_sync.identity import link_patient
from passport_sync.services.openmrs_sync.mysql_source import OpenMrsSqlConfig, OpenMrsSqlSource
from passport_sync.services.openmrs_sync.supervisor import SyncSupervisor
from passport_sync.services.openmrs_sync.sync_run import load_checkpoint, run_sync

logger = logging.getLogger("passport_sync.openmrs_sync")

WORKER_MODULE = "passport_sync.scripts.openmrs_sync"


def _parse_link_arg(raw: str) -> tuple[str, int]:
    person, sep, patient = raw.partition(":")
    if not sep or not person.strip() or not patient.strip():
        raise RuntimeError("Invalid --link value: expected PERSON_ID:PATIENT_ID.")
    try:
        patient_id = int(patient.strip())
    except ValueError as exc:
        raise RuntimeError(f"Invalid --link patient id: {patient.strip()}") from exc
    if patient_id <= 0:
        raise RuntimeError("Invalid --link patient id: must be positive.")
    return person.strip(), patient_id


def _build_source(args: argparse.Namespace):
    if args.source == "fixtures":
        base_path = Path(args.fixtures_path) if args.fixtures_path else None
        return FixtureSource(base_path=base_path, source_system=settings.sync_source_system)
    config = OpenMrsSqlConfig.from_env()
    if args.connect_timeout_seconds is not None:
        config.timeout_seconds = args.connect_timeout_seconds
    config.require_enabled()
    return OpenMrsSqlSource(config)


def _open_session():
    session = SessionLocal()
    Base.metadata.create_all(bind=session.get_bind())
    return session


def _run_once(args: argparse.Namespace) -> int:
    try:
        source = _build_source(args)
    except RuntimeError as exc:
        print(str(exc))
        return 2
    session = _open_session()
    try:
        summary = run_sync(
            session,
            source,
            full_history=args.full_history,
            batch_size=args.batch_size or settings.sync_batch_size,
            max_run_seconds=args.max_run_seconds or settings.sync_max_run_seconds,
            trigger="cli",
            progress_every=args.progress_every,
        )
    finally:
        session.close()
    print(json.dumps(summary.as_dict(), indent=2, sort_keys=True))
    return 0 if summary.succeeded else 1


def _dry_run(args: argparse.Namespace) -> int:
    try:
        source = _build_source(args)
    except RuntimeError as exc:
        print(str(exc))
        return 2
    session = _open_session()
    try:
        since = None if args.full_history else load_checkpoint(session, source.source_system)
    finally:
        session.close()
    try:
        summary = source.dry_run_summary(since=since, limit=args.limit)
    except (RuntimeError, SyncError) as exc:
        print(str(exc))
        return 1
    print(json.dumps(summary, indent=2, sort_keys=True, default=str))
    return 0


def _status(args: argparse.Namespace) -> int:
    session = _open_session()
    try:
        source_system = settings.sync_source_system
        checkpoint = load_checkpoint(session, source_system)
        last_run = session.scalar(
            select(SyncRun)
            .where(SyncRun.source_system == source_system)
            .order_by(SyncRun.id.desc())
            .limit(1)
        )
        payload = {
            "source_system": source_system,
            "checkpoint": checkpoint.model_dump(mode="json") if checkpoint else None,
            "last_run": _run_row_dict(last_run) if last_run else None,
        }
    finally:
        session.close()
    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


def _link(args: argparse.Namespace) -> int:
    try:
        person_id, patient_id = _parse_link_arg(args.link)
    except RuntimeError as exc:
        print(str(exc))
        return 2
    session = _open_session()
    try:
        try:
            link = link_patient(session, settings.sync_source_system, person_id, patient_id)
        except LookupError as exc:
            session.rollback()
            print(str(exc))
            return 1
        session.commit()
        payload = {
            "source_system": link.source_system,
            "source_person_id": link.source_person_id,
            "patient_id": link.patient_id,
            "method": link.method.value,
        }
    finally:
        session.close()
    print(json.dumps(payload, indent=2, sort_keys=True))
    return 0


def _loop(args: argparse.Namespace) -> int:
    try:
        _build_source(args)
    except RuntimeError as exc:
        print(str(exc))
        return 2
    overrides = {
        name: value
        for name, value in {
            "sync_interval_seconds": args.interval_seconds,
            "sync_batch_size": args.batch_size,
            "sync_max_run_seconds": args.max_run_seconds,
        }.items()
        if value
    }
    config = settings.model_copy(update=overrides)
    _open_session().close()
    supervisor = SyncSupervisor(SessionLocal, lambda: _build_source(args), config)
    stop_event = threading.Event()
    try:
        supervisor.run_forever(stop_event, max_ticks=args.max_ticks)
    except KeyboardInterrupt:
        stop_event.set()
        logger.info("OpenMRS sync loop interrupted")
    summary = supervisor.last_summary
    if summary is not None:
        print(json.dumps(summary.as_dict(), indent=2, sort_keys=True))
    return 0


def _worker_command(args: argparse.Namespace) -> list[str]:
    command = [sys.executable, "-m", WORKER_MODULE, "--once", "--source", args.source]
    if args.fixtures_path:
        command.extend(["--fixtures-path", args.fixtures_path])
    if args.batch_size:
        command.extend(["--batch-size", str(args.batch_size)])
    if args.max_run_seconds:
        command.extend(["--max-run-seconds", str(args.max_run_seconds)])
    if args.connect_timeout_seconds is not None:
        command.extend(["--connect-timeout-seconds", str(args.connect_timeout_seconds)])
    return command


def _supervise(args: argparse.Namespace) -> int:
    interval = args.interval_seconds or settings.sync_interval_seconds
    max_run = args.max_run_seconds or settings.sync_max_run_seconds
    # The worker gets a grace period past its own cooperative deadline before it is killed.
    kill_after = max_run + max(5, interval)
    command = _worker_command(args)
    ticks = 0
    failures = 0
    try:
        while args.max_ticks is None or ticks < args.max_ticks:
            ticks += 1
            started = time.monotonic()
            try:
                completed = subprocess.run(command, timeout=kill_after, check=False)
            except subprocess.TimeoutExpired:
                failures += 1
                logger.warning("OpenMRS sync worker exceeded %ss and was killed", kill_after)
            else:
                if completed.returncode != 0:
                    failures += 1
                    logger.warning(
                        "OpenMRS sync worker exited with code %s; retrying next tick",
                        completed.returncode,
                    )
            if args.max_ticks is not None and ticks >= args.max_ticks:
                break
            time.sleep(max(1.0, interval - (time.monotonic() - started)))
    except KeyboardInterrupt:
        logger.info("OpenMRS sync supervisor interrupted")
    print(json.dumps({"ticks": ticks, "failed_ticks": failures}, indent=2, sort_keys=True))
    return 0


def _run_row_dict(row: SyncRun) -> dict[str, object]:
    return {
        "id": row.id,
        "status": row.status.value,
        "trigger": row.trigger,
        "full_history": row.full_history,
        "started_at": row.started_at.isoformat() if row.started_at else None,
        "finished_at": row.finished_at.isoformat() if row.finished_at else None,
        "fetched": row.fetched,
        "inserted": row.inserted,
        "already_present": row.already_present,
        "skipped_no_match": row.skipped_no_match,
        "skipped_ambiguous": row.skipped_ambiguous,
        "failed": row.failed,
        "error": row.error,
    }


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Sync OpenMRS observations into Patient Passport clinical records."
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run one sync and exit.")
    mode.add_argument("--loop", action="store_true", help="Run syncs in-process on a fixed interval.")
    mode.add_argument(
        "--supervise",
        action="store_true",
        help="Re-run '--once' as a child process every interval, killing stalled workers.",
    )
    mode.add_argument("--status", action="store_true", help="Print checkpoint and last run.")
    mode.add_argument(
        "--dry-run",
        action="store_true",
        help="Read-only connectivity check with pending count and sample rows.",
    )
    mode.add_argument(
        "--link",
        metavar="PERSON:PATIENT",
        help="Manually link an OpenMRS person id to a patient id.",
    )
    parser.add_argument(
        "--source",
        default="openmrs",
        choices=("openmrs", "fixtures"),
        help="Observation source (default: openmrs).",
    )
    parser.add_argument("--fixtures-path", default=None, help="Directory holding observations.json.")
    parser.add_argument(
        "--full-history",
        action="store_true",
        help="Ignore the checkpoint and replay every observation.",
    )
    parser.add_argument("--limit", type=int, default=10, help="Sample size for --dry-run.")
    parser.add_argument("--batch-size", type=int, default=None, help="Max observations per run.")
    parser.add_argument("--max-run-seconds", type=int, default=None, help="Per-run time budget.")
    parser.add_argument("--interval-seconds", type=int, default=None, help="Loop/supervise cadence.")
    parser.add_argument("--connect-timeout-seconds", type=int, default=None)
    parser.add_argument("--max-ticks", type=int, default=None, help="Stop after N loop ticks.")
    parser.add_argument(
        "--progress-every",
        type=int,
        default=None,
        help="Emit a JSON progress line every N observations.",
    )
    args = parser.parse_args(argv)

    for name in (
        "batch_size",
        "max_run_seconds",
        "interval_seconds",
        "connect_timeout_seconds",
        "max_ticks",
        "limit",
    ):
        value = getattr(args, name)
        if value is not None and value <= 0:
            print(f"--{name.replace('_', '-')} must be a positive integer.")
            return 2
    if args.full_history and not (args.once or args.dry_run):
        print("--full-history is only supported with --once or --dry-run.")
        return 2
    if args.fixtures_path and args.source != "fixtures":
        print("--fixtures-path requires --source fixtures.")
        return 2

    configure_logging()

    if args.once:
        return _run_once(args)
    if args.dry_run:
        return _dry_run(args)
    if args.status:
        return _status(args)
    if args.link:
        return _link(args)
    if args.loop:
        return _loop(args)
    if args.supervise:
        return _supervise(args)
    parser.print_usage()
    print("Choose one of --once, --loop, --supervise, --status, --dry-run, --link.")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
