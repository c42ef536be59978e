"""Stale-run detection and reclamation.

A run whose last sign of life (heartbeat, start or creation time) is older
than ``STALE_THRESHOLD_SECONDS`` while still QUEUED/RUNNING is presumed
orphaned: its continuation chain broke and nothing will ever advance it.
The check is lazy, performed on the read paths that also enforce the
one-active-run-per-scope rule; those reclaim the run as FAILED. The periodic
sweep instead resumes stale runs through a fresh continuation.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from cardflow.config import settings
from cardflow.engine import store
from cardflow.engine.cancellation import clear_cancellation
from cardflow.engine.errors import ContinuationError
from cardflow.engine.handlers import release_unfinished_items
from cardflow.engine.run_log import append_run_log
from cardflow.engine.trigger import ContinuationTrigger
from cardflow.models.run import Run
from cardflow.schemas.enums import ACTIVE_RUN_STATUSES, RunPhase, RunStatus, WorkItemStatus

logger = logging.getLogger(__name__)

STALE_ERROR_MSG = "stale"


@dataclass
class ActiveRunCheck:
    """Outcome of looking up the active run for a scope."""

    run_id: Optional[UUID] = None
    recovered_from_stale: bool = False
    previous_run_id: Optional[UUID] = None


@dataclass
class StaleSweepResult:
    total_found: int = 0
    resumed_run_ids: List[UUID] = field(default_factory=list)
    failed_run_ids: List[UUID] = field(default_factory=list)


def stale_threshold() -> timedelta:
    return timedelta(seconds=settings.STALE_THRESHOLD_SECONDS)


def last_activity_at(run: Run) -> datetime:
    """Most recent of heartbeat, start and creation time."""
    stamps = [t for t in (run.heartbeat_at, run.started_at, run.created_at) if t is not None]
    return max(stamps) if stamps else datetime.utcnow()


def is_stale(run: Run, now: Optional[datetime] = None) -> bool:
    """True for an active run that has shown no activity for too long."""
    if run.status not in ACTIVE_RUN_STATUSES:
        return False
    now = now or datetime.utcnow()
    return now - last_activity_at(run) > stale_threshold()


def reclaim_stale_run(db: Session, run: Run, idle: Optional[timedelta] = None) -> bool:
    """Mark an orphaned run FAILED and free its subjects.

    The status change is conditional so two racing readers reclaim once.
    Returns True if this caller performed the reclaim.
    """
    now = datetime.utcnow()
    idle = idle or now - last_activity_at(run)
    won = store.transition_run(
        db,
        run.id,
        ACTIVE_RUN_STATUSES,
        status=RunStatus.FAILED.value,
        phase=RunPhase.FAILED.value,
        error_msg=STALE_ERROR_MSG,
        phase_detail="Run became stale (continuation chain lost)",
        completed_at=now,
        duration_ms=int((now - run.started_at).total_seconds() * 1000) if run.started_at else None,
    )
    if not won:
        return False

    clear_cancellation(run.id)
    release_unfinished_items(
        db, run, in_flight_status=WorkItemStatus.FAILED.value, error_msg=STALE_ERROR_MSG
    )
    append_run_log(
        db,
        run.id,
        f"Run marked failed: no activity for {int(idle.total_seconds())}s (stale)",
    )
    logger.warning(f"Reclaimed stale run {run.id} (idle {idle.total_seconds():.0f}s)")
    return True


def check_run(db: Session, run: Run) -> bool:
    """Reclaim ``run`` if it is stale. Returns True when it was reclaimed."""
    if is_stale(run):
        return reclaim_stale_run(db, run)
    return False


def check_active_run(db: Session, project_id: UUID, kind: str) -> ActiveRunCheck:
    """Look up the scope's active run, reclaiming it first if it is stale."""
    run = store.find_active_run(db, project_id, kind)
    if run is None:
        return ActiveRunCheck()

    if check_run(db, run):
        logger.info(f"Active {kind} run for project {project_id} was stale, scope freed")
        return ActiveRunCheck(run_id=None, recovered_from_stale=True, previous_run_id=run.id)

    return ActiveRunCheck(run_id=run.id)


def resume_stale_run(db: Session, run: Run, trigger: ContinuationTrigger) -> bool:
    """Restart a stale run's continuation chain.

    Orphaned in-flight items go back to PENDING (their subjects stay QUEUED)
    and a fresh ``process-next`` is sent; with nothing left to process that
    invocation finalizes the run. Falls back to failing the run when the
    hand-off is not accepted.

    Returns True if the run was resumed.
    """
    idle = datetime.utcnow() - last_activity_at(run)
    if not store.claim_stale_run(db, run):
        logger.info(f"Stale run {run.id} was touched meanwhile, leaving it")
        return False

    released = store.release_in_flight_items(db, run.id, WorkItemStatus.PENDING.value)
    remaining = store.count_items(db, run.id, [WorkItemStatus.PENDING.value])
    append_run_log(
        db,
        run.id,
        f"Stale run resumed: {len(released)} in-flight item(s) reset, {remaining} pending",
    )

    try:
        trigger.trigger_initial(run.id)
    except ContinuationError as e:
        logger.error(f"Could not resume stale run {run.id}: {e}")
        append_run_log(db, run.id, f"Resume failed: {e}")
        reclaim_stale_run(db, store.get_run(db, run.id), idle=idle)
        return False

    logger.warning(f"Resumed stale run {run.id} ({remaining} item(s) pending)")
    return True


def recover_all_stale_runs(db: Session, trigger: ContinuationTrigger) -> StaleSweepResult:
    """Sweep every active run and resume the stale ones."""
    result = StaleSweepResult()
    for run in store.list_active_runs(db):
        if not is_stale(run):
            continue
        result.total_found += 1
        if resume_stale_run(db, run, trigger):
            result.resumed_run_ids.append(run.id)
        elif store.get_run(db, run.id).status == RunStatus.FAILED.value:
            result.failed_run_ids.append(run.id)

    logger.info(
        f"Stale sweep: {result.total_found} stale run(s) found, "
        f"{len(result.resumed_run_ids)} resumed, {len(result.failed_run_ids)} failed"
    )
    return result
