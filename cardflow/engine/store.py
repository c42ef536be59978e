"""Persistence for runs and their work items.

Every mutation is a single ``UPDATE ... WHERE id = ?`` touching only the named
columns and is committed immediately, so partial updates from different
callers never overwrite each other's fields. Counters are incremented
server-side.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cardflow.engine.errors import RunAlreadyActive
from cardflow.engine.run_log import format_log_entry
from cardflow.models.run import Run, WorkItem
from cardflow.schemas.enums import (
    ACTIVE_RUN_STATUSES,
    IN_FLIGHT_ITEM_STATUSES,
    RunPhase,
    RunStatus,
    WorkItemStatus,
)

logger = logging.getLogger(__name__)

# (subject_id, label, prior subject status)
SubjectRef = Tuple[UUID, str, Optional[str]]


def create_run(
    db: Session,
    project_id: UUID,
    kind: str,
    subjects: Sequence[SubjectRef],
    input_config: Optional[dict] = None,
    retry_of_run_id: Optional[UUID] = None,
) -> Run:
    """Insert a QUEUED run together with one PENDING work item per subject.

    Commits everything pending on the session in the same transaction, so
    callers may stage subject updates before calling this.

    Raises:
        RunAlreadyActive: another QUEUED/RUNNING run exists for the scope.
    """
    run = Run(
        project_id=project_id,
        kind=kind,
        status=RunStatus.QUEUED.value,
        phase=RunPhase.INITIALIZING.value,
        total_items=len(subjects),
        completed_items=0,
        failed_items=0,
        skipped_items=0,
        produced_artifact_count=0,
        tokens_used=0,
        input_config=input_config or {},
        retry_of_run_id=retry_of_run_id,
        log=format_log_entry(f"Run created with {len(subjects)} item(s)"),
    )
    try:
        db.add(run)
        db.flush()  # Flush to get the auto-generated id

        for index, (subject_id, label, prior_status) in enumerate(subjects):
            db.add(
                WorkItem(
                    run_id=run.id,
                    subject_id=subject_id,
                    subject_label=label,
                    subject_prior_status=prior_status,
                    order=index,
                    status=WorkItemStatus.PENDING.value,
                )
            )

        db.commit()
    except IntegrityError:
        db.rollback()
        active = find_active_run(db, project_id, kind)
        raise RunAlreadyActive(kind, active.id if active else None)

    logger.info(f"Created run {run.id} ({kind}) with {len(subjects)} items")
    return run


def get_run(db: Session, run_id: UUID) -> Optional[Run]:
    """Load a run, bypassing any stale copy in the session identity map."""
    return db.query(Run).filter(Run.id == run_id).populate_existing().first()


def find_active_run(db: Session, project_id: UUID, kind: str) -> Optional[Run]:
    """Return the QUEUED/RUNNING run for a scope, if any."""
    return (
        db.query(Run)
        .filter(
            Run.project_id == project_id,
            Run.kind == kind,
            Run.status.in_(ACTIVE_RUN_STATUSES),
        )
        .order_by(Run.created_at.desc())
        .populate_existing()
        .first()
    )


def list_active_runs(db: Session) -> List[Run]:
    """All QUEUED/RUNNING runs across every scope."""
    return (
        db.query(Run)
        .filter(Run.status.in_(ACTIVE_RUN_STATUSES))
        .order_by(Run.created_at)
        .populate_existing()
        .all()
    )


def list_runs(
    db: Session,
    project_id: UUID,
    kind: Optional[str] = None,
    limit: int = 20,
) -> List[Run]:
    """List a project's runs, newest first."""
    query = db.query(Run).filter(Run.project_id == project_id)
    if kind:
        query = query.filter(Run.kind == kind)
    return query.order_by(Run.created_at.desc()).limit(limit).all()


def list_items(
    db: Session,
    run_id: UUID,
    statuses: Optional[Iterable[str]] = None,
) -> List[WorkItem]:
    """A run's work items in processing order."""
    query = db.query(WorkItem).filter(WorkItem.run_id == run_id)
    if statuses is not None:
        query = query.filter(WorkItem.status.in_(list(statuses)))
    return query.order_by(WorkItem.order).populate_existing().all()


def next_pending_item(db: Session, run_id: UUID) -> Optional[WorkItem]:
    """First PENDING work item by ``order``."""
    return (
        db.query(WorkItem)
        .filter(
            WorkItem.run_id == run_id,
            WorkItem.status == WorkItemStatus.PENDING.value,
        )
        .order_by(WorkItem.order)
        .populate_existing()
        .first()
    )


def count_items(db: Session, run_id: UUID, statuses: Iterable[str]) -> int:
    return (
        db.query(func.count(WorkItem.id))
        .filter(WorkItem.run_id == run_id, WorkItem.status.in_(list(statuses)))
        .scalar()
    )


def has_in_flight_item(db: Session, run_id: UUID) -> bool:
    """True when some item is between claim and outcome."""
    return count_items(db, run_id, IN_FLIGHT_ITEM_STATUSES) > 0


def update_run(db: Session, run_id: UUID, **fields) -> None:
    """Update the named run columns."""
    db.execute(
        update(Run)
        .where(Run.id == run_id)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def transition_run(
    db: Session,
    run_id: UUID,
    from_statuses: Iterable[str],
    **fields,
) -> bool:
    """Update the run only if its status is still one of ``from_statuses``.

    Returns True when this caller won the transition.
    """
    result = db.execute(
        update(Run)
        .where(Run.id == run_id, Run.status.in_(list(from_statuses)))
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def touch_heartbeat(db: Session, run_id: UUID) -> None:
    """Stamp the run's heartbeat with the current time."""
    update_run(db, run_id, heartbeat_at=datetime.utcnow())


def update_work_item(db: Session, item_id: UUID, **fields) -> None:
    """Update the named work item columns."""
    db.execute(
        update(WorkItem)
        .where(WorkItem.id == item_id)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def claim_work_item(db: Session, item_id: UUID, status: str) -> bool:
    """Move a PENDING item to ``status``; False if someone else claimed it."""
    result = db.execute(
        update(WorkItem)
        .where(
            WorkItem.id == item_id,
            WorkItem.status == WorkItemStatus.PENDING.value,
        )
        .values(status=status, started_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def record_item_outcome(
    db: Session,
    item: WorkItem,
    status: str,
    duration_ms: int,
    artifacts_created: int = 0,
    artifacts_replaced: int = 0,
    tokens_used: int = 0,
    error_msg: Optional[str] = None,
) -> bool:
    """Finish an in-flight work item and bump the run's counters in one transaction.

    Anything else staged on the session (saved artifacts, subject status) is
    committed together with the outcome. If the item was released meanwhile
    (stale reclaim, cancellation cleanup) nothing is written, the staged
    changes are rolled back and False is returned.
    """
    now = datetime.utcnow()
    result = db.execute(
        update(WorkItem)
        .where(
            WorkItem.id == item.id,
            WorkItem.status.in_(IN_FLIGHT_ITEM_STATUSES),
        )
        .values(
            status=status,
            completed_at=now,
            duration_ms=duration_ms,
            artifacts_created=artifacts_created,
            artifacts_replaced=artifacts_replaced,
            tokens_used=tokens_used,
            error_msg=error_msg,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.warning(f"Item {item.id} of run {item.run_id} was released, outcome {status} dropped")
        return False

    counters = {"heartbeat_at": now}
    if status == WorkItemStatus.COMPLETED.value:
        counters["completed_items"] = Run.completed_items + 1
        counters["produced_artifact_count"] = Run.produced_artifact_count + artifacts_created
    elif status == WorkItemStatus.FAILED.value:
        counters["failed_items"] = Run.failed_items + 1
    elif status == WorkItemStatus.SKIPPED.value:
        counters["skipped_items"] = Run.skipped_items + 1
    if tokens_used:
        counters["tokens_used"] = Run.tokens_used + tokens_used

    db.execute(
        update(Run)
        .where(Run.id == item.run_id)
        .values(**counters)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return True


def release_in_flight_items(
    db: Session,
    run_id: UUID,
    status: str,
    error_msg: Optional[str] = None,
) -> List[WorkItem]:
    """Move the run's LOADING/PROCESSING/SAVING items to PENDING or FAILED.

    Each item moves only if it is still in flight, so an executor finishing
    it concurrently either records its outcome first or loses. Items moved
    to FAILED count towards ``failed_items``.

    Returns:
        The released items.
    """
    released = []
    for item in list_items(db, run_id, IN_FLIGHT_ITEM_STATUSES):
        values = {"status": status, "error_msg": error_msg}
        if status == WorkItemStatus.FAILED.value:
            values["completed_at"] = datetime.utcnow()
        else:
            values["started_at"] = None
        result = db.execute(
            update(WorkItem)
            .where(
                WorkItem.id == item.id,
                WorkItem.status.in_(IN_FLIGHT_ITEM_STATUSES),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        if status == WorkItemStatus.FAILED.value:
            db.execute(
                update(Run)
                .where(Run.id == run_id)
                .values(failed_items=Run.failed_items + 1)
                .execution_options(synchronize_session=False)
            )
        released.append(item)
    db.commit()

    if released:
        logger.info(f"Released {len(released)} in-flight item(s) of run {run_id} as {status}")
    return released


def claim_stale_run(db: Session, run: Run) -> bool:
    """Stamp a fresh heartbeat on ``run`` unless someone touched it since it was read.

    Lets exactly one of several concurrent sweeps resume a stale run.
    """
    if run.heartbeat_at is None:
        unchanged = Run.heartbeat_at.is_(None)
    else:
        unchanged = Run.heartbeat_at == run.heartbeat_at
    result = db.execute(
        update(Run)
        .where(Run.id == run.id, Run.status.in_(ACTIVE_RUN_STATUSES), unchanged)
        .values(heartbeat_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1
