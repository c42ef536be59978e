"""Run routes."""

import hmac
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session, sessionmaker

from cardflow.config import settings
from cardflow.database import SessionLocal, get_db
from cardflow.engine import monitor, store
from cardflow.engine.controller import RunController
from cardflow.engine.errors import (
    ContinuationError,
    NoEligibleSubjects,
    NoFailedItems,
    ProjectNotFound,
    RunAlreadyActive,
    RunEngineError,
    RunNotActive,
    RunNotFound,
)
from cardflow.engine.executor import process_next_in_new_session
from cardflow.engine.run_log import read_run_log
from cardflow.engine.trigger import (
    SECRET_HEADER,
    ContinuationTrigger,
    HttpContinuationTrigger,
    validate_batch_secret,
)
from cardflow.generators.base import BaseGenerator
from cardflow.generators.factory import get_generator
from cardflow.schemas.enums import RunKind, RunStatus
from cardflow.schemas.run import (
    ActiveRunResponse,
    ProcessNextResponse,
    RecoveryResponse,
    RunCreate,
    RunCreated,
    RunProgress,
    RunSummary,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["runs"])


def get_continuation_trigger() -> ContinuationTrigger:
    return HttpContinuationTrigger()


def get_session_factory() -> sessionmaker:
    """Session factory for executor steps that outlive the request session."""
    return SessionLocal


def _http_error(e: RunEngineError) -> HTTPException:
    """Translate a run engine error into an HTTP error."""
    if isinstance(e, (ProjectNotFound, RunNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, RunAlreadyActive):
        return HTTPException(
            status_code=409,
            detail={"message": str(e), "run_id": str(e.run_id) if e.run_id else None},
        )
    if isinstance(e, RunNotActive):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (NoEligibleSubjects, NoFailedItems)):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, ContinuationError):
        return HTTPException(status_code=502, detail=f"Run could not be started: {e}")
    return HTTPException(status_code=500, detail=str(e))


@router.post("/projects/{project_id}/runs", response_model=RunCreated)
def create_run(
    project_id: uuid.UUID,
    data: RunCreate,
    db: Session = Depends(get_db),
    trigger: ContinuationTrigger = Depends(get_continuation_trigger),
):
    """Create a run and start processing it."""
    controller = RunController(db, trigger)
    try:
        run = controller.create_run(project_id, data.kind, data.subject_ids, data.config)
    except RunEngineError as e:
        raise _http_error(e)

    logger.info(f"Created run {run.id} for project {project_id}")
    return RunCreated(run_id=run.id, kind=data.kind, total_items=run.total_items)


@router.get("/projects/{project_id}/runs", response_model=List[RunSummary])
def list_runs(
    project_id: uuid.UUID,
    kind: Optional[RunKind] = None,
    limit: int = 20,
    db: Session = Depends(get_db),
):
    """List a project's runs, newest first."""
    runs = RunController(db).list_runs(project_id, kind, limit)
    return [
        RunSummary(
            run_id=r.id,
            kind=r.kind,
            status=r.status,
            total_items=r.total_items,
            completed_items=r.completed_items,
            failed_items=r.failed_items,
            skipped_items=r.skipped_items,
            created_at=r.created_at,
            completed_at=r.completed_at,
        )
        for r in runs
    ]


@router.get("/projects/{project_id}/active-run", response_model=ActiveRunResponse)
def get_active_run(
    project_id: uuid.UUID,
    kind: RunKind,
    db: Session = Depends(get_db),
):
    """Active run for the (project, kind) scope; reclaims it if stale."""
    check = RunController(db).get_active_run(project_id, kind)
    return ActiveRunResponse(
        run_id=check.run_id,
        recovered_from_stale=check.recovered_from_stale,
        previous_run_id=check.previous_run_id,
    )


@router.get("/runs/{run_id}", response_model=RunProgress)
def get_run_progress(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    """Get run status and progress."""
    try:
        return RunController(db).get_progress(run_id)
    except RunEngineError as e:
        raise _http_error(e)


@router.get("/runs/{run_id}/log", response_class=PlainTextResponse)
def get_run_log(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    """Get the run's durable log."""
    if store.get_run(db, run_id) is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return read_run_log(db, run_id)


@router.post("/runs/{run_id}/cancel")
def cancel_run(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    """Request cancellation; takes effect at the run's next step."""
    try:
        RunController(db).cancel(run_id)
    except RunEngineError as e:
        raise _http_error(e)

    return {"run_id": str(run_id), "message": "Cancellation requested"}


@router.post("/runs/{run_id}/retry-failed", response_model=RunCreated)
def retry_failed(
    run_id: uuid.UUID,
    db: Session = Depends(get_db),
    trigger: ContinuationTrigger = Depends(get_continuation_trigger),
):
    """Create a new run over the failed items of a run."""
    try:
        run = RunController(db, trigger).retry_failed(run_id)
    except RunEngineError as e:
        raise _http_error(e)

    return RunCreated(run_id=run.id, kind=RunKind(run.kind), total_items=run.total_items)


@router.post("/runs/{run_id}/process-next", status_code=202, response_model=ProcessNextResponse)
def process_next(
    run_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    x_batch_secret: Optional[str] = Header(None, alias=SECRET_HEADER),
    db: Session = Depends(get_db),
    session_factory: sessionmaker = Depends(get_session_factory),
    generator: BaseGenerator = Depends(get_generator),
    trigger: ContinuationTrigger = Depends(get_continuation_trigger),
):
    """
    Internal continuation endpoint: accept the run and process one item.

    The step runs after the response is sent, so the caller's hand-off
    returns as soon as the run is accepted.
    """
    if not validate_batch_secret(x_batch_secret):
        logger.warning(f"Rejected process-next for run {run_id}: bad secret")
        raise HTTPException(status_code=401, detail="Unauthorized")

    run = store.get_run(db, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")

    if run.status in (RunStatus.SUCCEEDED.value, RunStatus.PARTIAL.value, RunStatus.FAILED.value):
        raise HTTPException(status_code=409, detail=f"Run already {run.status}")

    background_tasks.add_task(
        process_next_in_new_session,
        run_id,
        session_factory=session_factory,
        generator=generator,
        trigger=trigger,
    )

    return ProcessNextResponse(run_id=run_id, accepted=True, message="Processing next item")


@router.get("/cron/recover-stale-runs", response_model=RecoveryResponse)
def recover_stale_runs(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
    trigger: ContinuationTrigger = Depends(get_continuation_trigger),
):
    """Sweep every active run and resume the stale ones."""
    if settings.CRON_SECRET:
        expected = f"Bearer {settings.CRON_SECRET}"
        if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
            logger.warning("Rejected stale-run sweep: bad cron secret")
            raise HTTPException(status_code=401, detail="Unauthorized")

    active_before = len(store.list_active_runs(db))
    result = monitor.recover_all_stale_runs(db, trigger)
    active_after = len(store.list_active_runs(db))

    return RecoveryResponse(
        total_found=result.total_found,
        resumed_run_ids=result.resumed_run_ids,
        failed_run_ids=result.failed_run_ids,
        checked_at=datetime.utcnow(),
        details={
            "active_runs_before": active_before,
            "active_runs_after": active_after,
            "stale_threshold_seconds": settings.STALE_THRESHOLD_SECONDS,
        },
    )
