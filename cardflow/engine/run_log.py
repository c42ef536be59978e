"""Durable append-only per-run log.

Appends are a single server-side concatenation so concurrent writers cannot
overwrite each other's lines.
"""

import logging
from datetime import datetime
from typing import Iterable
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from cardflow.models.run import Run

logger = logging.getLogger(__name__)


def format_log_entry(message: str, at: datetime = None) -> str:
    """Format one log line as ``[<iso timestamp>] <message>\\n``."""
    timestamp = (at or datetime.utcnow()).isoformat()
    return f"[{timestamp}] {message}\n"


def append_run_log(db: Session, run_id: UUID, message: str) -> None:
    """Atomically append a single line to the run's log."""
    _append(db, run_id, format_log_entry(message))


def append_run_logs(db: Session, run_id: UUID, messages: Iterable[str]) -> None:
    """Atomically append several lines sharing one timestamp."""
    now = datetime.utcnow()
    entries = "".join(format_log_entry(m, now) for m in messages)
    if entries:
        _append(db, run_id, entries)


def _append(db: Session, run_id: UUID, entries: str) -> None:
    result = db.execute(
        update(Run)
        .where(Run.id == run_id)
        .values(log=func.coalesce(Run.log, "") + entries)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        logger.warning(f"Log append for missing run {run_id} dropped")


def read_run_log(db: Session, run_id: UUID) -> str:
    """Return the run's full log text (empty when the run does not exist)."""
    value = db.query(Run.log).filter(Run.id == run_id).scalar()
    return value or ""
