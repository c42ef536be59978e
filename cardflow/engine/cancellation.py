"""Cooperative run cancellation.

The persisted ``CANCELLED`` status is the source of truth. The in-memory flag
map only lets an executor in the same process notice a cancellation without
a database round trip; continuation invocations need not share memory, so
every miss falls back to the database.
"""

import logging
import threading
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from cardflow.engine import store
from cardflow.engine.errors import RunNotActive, RunNotFound
from cardflow.engine.handlers import release_unfinished_items
from cardflow.engine.run_log import append_run_log
from cardflow.models.run import Run
from cardflow.schemas.enums import ACTIVE_RUN_STATUSES, RunPhase, RunStatus

logger = logging.getLogger(__name__)

# In-memory cancellation flags (per run id)
_cancellation_flags: dict[UUID, bool] = {}
_flags_lock = threading.Lock()


def request_cancellation(db: Session, run_id: UUID) -> None:
    """Cancel a QUEUED/RUNNING run.

    Takes effect at the run's next executor step; an item already being
    processed finishes normally.

    Raises:
        RunNotFound: unknown run id.
        RunNotActive: the run already reached a terminal status.
    """
    run = store.get_run(db, run_id)
    if run is None:
        raise RunNotFound(run_id)

    won = store.transition_run(
        db,
        run_id,
        ACTIVE_RUN_STATUSES,
        status=RunStatus.CANCELLED.value,
        phase=RunPhase.COMPLETED.value,
        phase_detail="Cancellation requested",
    )
    if not won:
        current = store.get_run(db, run_id)
        raise RunNotActive(run_id, current.status if current else run.status)

    with _flags_lock:
        _cancellation_flags[run_id] = True

    append_run_log(db, run_id, "Cancellation requested")
    logger.info(f"Cancellation requested for run {run_id}")


def is_cancelled(db: Session, run_id: UUID) -> bool:
    """Check the fast-path flag first, then the persisted status."""
    with _flags_lock:
        if _cancellation_flags.get(run_id):
            return True

    run = store.get_run(db, run_id)
    if run and run.status == RunStatus.CANCELLED.value:
        with _flags_lock:
            _cancellation_flags[run_id] = True
        return True

    return False


def clear_cancellation(run_id: UUID) -> None:
    """Drop the in-memory flag (run cleanup)."""
    with _flags_lock:
        _cancellation_flags.pop(run_id, None)


def finish_cancellation(db: Session, run: Run) -> None:
    """Clean up after a cancelled run, once.

    Items that never started, and items left in flight by a dead invocation,
    go back to PENDING and their subjects get their pre-run status back.
    Stamps the completion time. Later calls find ``completed_at`` set and do
    nothing.
    """
    if run.completed_at is not None:
        clear_cancellation(run.id)
        return

    unprocessed = release_unfinished_items(db, run)
    now = datetime.utcnow()
    store.update_run(
        db,
        run.id,
        completed_at=now,
        duration_ms=int((now - run.started_at).total_seconds() * 1000) if run.started_at else None,
        phase_detail="Cancelled",
    )
    clear_cancellation(run.id)
    append_run_log(db, run.id, f"Run cancelled by user ({unprocessed} item(s) not processed)")
    logger.info(f"Run {run.id} cancelled, {unprocessed} item(s) not processed")
