"""Logging configuration for the sync API and CLI entry points."""

from __future__ import annotations

import contextvars
import logging

from passport_sync.core.settings import settings

sync_run_id_var: contextvars.ContextVar[int | None] = contextvars.ContextVar(
    "sync_run_id",
    default=None,
)


class SyncRunFilter(logging.Filter):
    """Attach the active sync run id to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "sync_run_id", None) is None:
            run_id = sync_run_id_var.get()
            record.sync_run_id = run_id if run_id is not None else "-"
        return True


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s run=%(sync_run_id)s",
    )
    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if not any(isinstance(f, SyncRunFilter) for f in handler.filters):
            handler.addFilter(SyncRunFilter())
