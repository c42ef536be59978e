"""Run controller: the entry point callers use to create and observe runs."""

import logging
from datetime import datetime
from typing import List, Optional, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from cardflow.engine import monitor, store
from cardflow.engine.cancellation import clear_cancellation, request_cancellation
from cardflow.engine.errors import (
    ContinuationError,
    NoEligibleSubjects,
    NoFailedItems,
    ProjectNotFound,
    RunAlreadyActive,
    RunNotFound,
)
from cardflow.engine.handlers import get_handler, release_unfinished_items
from cardflow.engine.monitor import ActiveRunCheck
from cardflow.engine.run_log import append_run_log
from cardflow.engine.trigger import ContinuationTrigger, HttpContinuationTrigger
from cardflow.models.project import Project
from cardflow.models.run import Run
from cardflow.schemas.enums import (
    ACTIVE_RUN_STATUSES,
    IN_FLIGHT_ITEM_STATUSES,
    RunKind,
    RunPhase,
    RunStatus,
    WorkItemStatus,
)
from cardflow.schemas.run import RunConfig, RunProgress, WorkItemProgress

logger = logging.getLogger(__name__)


class RunController:
    """Creates runs, reports progress, cancels and retries."""

    def __init__(self, db: Session, trigger: Optional[ContinuationTrigger] = None):
        self.db = db
        self.trigger = trigger or HttpContinuationTrigger()

    def create_run(
        self,
        project_id: UUID,
        kind: RunKind,
        subject_ids: Optional[Sequence[UUID]] = None,
        config: Optional[RunConfig] = None,
        retry_of_run_id: Optional[UUID] = None,
    ) -> Run:
        """
        Create a run for the (project, kind) scope and start its chain.

        Args:
            project_id: Scope of the run
            kind: What the run generates
            subject_ids: Explicit subjects in processing order, or None for
                the kind's default selection
            config: Job parameters
            retry_of_run_id: Run this one retries, if any

        Returns:
            The created Run

        Raises:
            ProjectNotFound: unknown project.
            RunAlreadyActive: a QUEUED/RUNNING run exists for the scope.
            NoEligibleSubjects: nothing to process.
            ContinuationError: the initial hand-off failed; the run is FAILED.
        """
        kind = RunKind(kind).value
        if self.db.get(Project, project_id) is None:
            raise ProjectNotFound(project_id)

        check = monitor.check_active_run(self.db, project_id, kind)
        if check.run_id is not None:
            raise RunAlreadyActive(kind, check.run_id)

        handler = get_handler(kind)
        subjects = handler.select_subjects(self.db, project_id, subject_ids)
        if not subjects:
            raise NoEligibleSubjects(kind)

        config = config or RunConfig()
        refs = handler.mark_queued(subjects)
        run = store.create_run(
            self.db,
            project_id,
            kind,
            refs,
            input_config=config.model_dump(mode="json"),
            retry_of_run_id=retry_of_run_id,
        )

        try:
            self.trigger.trigger_initial(run.id)
        except ContinuationError as e:
            self._fail_start(run, e)
            raise

        return run

    def _fail_start(self, run: Run, error: ContinuationError) -> None:
        logger.error(f"Initial trigger for run {run.id} failed: {error}")
        now = datetime.utcnow()
        won = store.transition_run(
            self.db,
            run.id,
            ACTIVE_RUN_STATUSES,
            status=RunStatus.FAILED.value,
            phase=RunPhase.FAILED.value,
            phase_detail="Could not start run",
            error_msg=str(error),
            completed_at=now,
        )
        append_run_log(self.db, run.id, f"Initial trigger failed: {error}")
        if won:
            clear_cancellation(run.id)
            release_unfinished_items(self.db, store.get_run(self.db, run.id))

    def get_progress(self, run_id: UUID) -> RunProgress:
        """Progress snapshot; reclaims the run first if it went stale."""
        run = store.get_run(self.db, run_id)
        if run is None:
            raise RunNotFound(run_id)

        reclaimed = monitor.check_run(self.db, run)
        if reclaimed:
            run = store.get_run(self.db, run_id)
        recovered = reclaimed or run.error_msg == monitor.STALE_ERROR_MSG

        items = store.list_items(self.db, run_id)
        current = next((i for i in items if i.status in IN_FLIGHT_ITEM_STATUSES), None)

        now = datetime.utcnow()
        elapsed_ms = None
        if run.started_at:
            elapsed_ms = int(((run.completed_at or now) - run.started_at).total_seconds() * 1000)

        processed = run.completed_items + run.failed_items + run.skipped_items
        estimated_remaining_ms = None
        if run.status in ACTIVE_RUN_STATUSES and elapsed_ms and processed:
            estimated_remaining_ms = int(elapsed_ms / processed * (run.total_items - processed))

        return RunProgress(
            run_id=run.id,
            project_id=run.project_id,
            kind=run.kind,
            status=run.status,
            phase=run.phase,
            phase_detail=run.phase_detail,
            total_items=run.total_items,
            completed_items=run.completed_items,
            failed_items=run.failed_items,
            skipped_items=run.skipped_items,
            produced_artifact_count=run.produced_artifact_count,
            tokens_used=run.tokens_used,
            current_item_index=current.order if current else None,
            current_subject_id=current.subject_id if current else None,
            current_label=current.subject_label if current else None,
            items=[
                WorkItemProgress(
                    subject_id=i.subject_id,
                    label=i.subject_label,
                    order=i.order,
                    status=i.status,
                    artifacts_created=i.artifacts_created,
                    artifacts_replaced=i.artifacts_replaced,
                    tokens_used=i.tokens_used,
                    error=i.error_msg,
                    duration_ms=i.duration_ms,
                )
                for i in items
            ],
            created_at=run.created_at,
            started_at=run.started_at,
            completed_at=run.completed_at,
            elapsed_ms=elapsed_ms,
            estimated_remaining_ms=estimated_remaining_ms,
            error=run.error_msg,
            retry_of_run_id=run.retry_of_run_id,
            recovered_from_stale=recovered,
            previous_run_id=run.id if recovered else None,
        )

    def get_active_run(self, project_id: UUID, kind: RunKind) -> ActiveRunCheck:
        return monitor.check_active_run(self.db, project_id, RunKind(kind).value)

    def list_runs(
        self,
        project_id: UUID,
        kind: Optional[RunKind] = None,
        limit: int = 20,
    ) -> List[Run]:
        return store.list_runs(self.db, project_id, RunKind(kind).value if kind else None, limit)

    def cancel(self, run_id: UUID) -> None:
        request_cancellation(self.db, run_id)

    def retry_failed(self, run_id: UUID) -> Run:
        """
        Create a new run over the failed subjects of ``run_id``.

        The new run reuses the source run's configuration and keeps the
        failed items' original relative order.

        Raises:
            RunNotFound: unknown run id.
            NoFailedItems: the run has no failed items.
        """
        source = store.get_run(self.db, run_id)
        if source is None:
            raise RunNotFound(run_id)

        failed = store.list_items(self.db, run_id, [WorkItemStatus.FAILED.value])
        if not failed:
            raise NoFailedItems(run_id)

        logger.info(f"Retrying {len(failed)} failed item(s) of run {run_id}")
        return self.create_run(
            source.project_id,
            source.kind,
            subject_ids=[i.subject_id for i in failed],
            config=RunConfig(**(source.input_config or {})),
            retry_of_run_id=source.id,
        )
