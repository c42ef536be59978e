"""Run executor: advances a run by exactly one work item per invocation."""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from cardflow.database import SessionLocal
from cardflow.engine import store
from cardflow.engine.cancellation import clear_cancellation, finish_cancellation, is_cancelled
from cardflow.engine.errors import RunNotFound
from cardflow.engine.handlers import get_handler, release_unfinished_items
from cardflow.engine.run_log import append_run_log
from cardflow.engine.trigger import ContinuationTrigger, HttpContinuationTrigger
from cardflow.generators.base import BaseGenerator
from cardflow.generators.factory import get_generator
from cardflow.models.run import Run, WorkItem
from cardflow.schemas.enums import (
    ACTIVE_RUN_STATUSES,
    ConflictPolicy,
    RunPhase,
    RunStatus,
    SubjectStatus,
    WorkItemStatus,
)
from cardflow.schemas.run import RunConfig

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    """Outcome of one executor step."""

    done: bool
    # False: another invocation owns the run
    continue_chain: bool = True
    message: str = ""


def compute_final_status(completed: int, failed: int, skipped: int) -> RunStatus:
    """Terminal status from the run's counters. Skips never count as failures."""
    if failed == 0:
        return RunStatus.SUCCEEDED
    if completed == 0:
        return RunStatus.FAILED
    return RunStatus.PARTIAL


def _elapsed_ms(since: Optional[datetime], until: datetime) -> Optional[int]:
    if since is None:
        return None
    return int((until - since).total_seconds() * 1000)


class Executor:
    """Executes one step of a run and hands off to the next invocation."""

    def __init__(
        self,
        db: Session,
        generator: Optional[BaseGenerator] = None,
        trigger: Optional[ContinuationTrigger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.generator = generator or get_generator()
        self.trigger = trigger or HttpContinuationTrigger()
        self.sleep = sleep

    def process_next(self, run_id: UUID) -> StepResult:
        """Run one step; if the run is not done, trigger the next invocation."""
        result = self.step(run_id)
        if not result.done and result.continue_chain:
            self.trigger.trigger_next(run_id)
        return result

    def step(self, run_id: UUID) -> StepResult:
        """Run one step without issuing a hand-off.

        Raises:
            RunNotFound: unknown run id.
        """
        run = store.get_run(self.db, run_id)
        if run is None:
            raise RunNotFound(run_id)

        try:
            return self._step(run)
        except Exception as e:
            logger.error(f"Fatal error in run {run_id}: {e}", exc_info=True)
            self._fail_run(run_id, e)
            return StepResult(done=True, message=f"Run failed: {e}")

    def _step(self, run: Run) -> StepResult:
        if run.status == RunStatus.CANCELLED.value:
            finish_cancellation(self.db, run)
            return StepResult(done=True, message="Run cancelled")

        if run.status not in ACTIVE_RUN_STATUSES:
            logger.info(f"Run {run.id} already {run.status}, nothing to do")
            return StepResult(done=True, message=f"Run already {run.status}")

        if store.has_in_flight_item(self.db, run.id):
            logger.info(f"Run {run.id} has an item in progress, not starting another")
            return StepResult(done=False, continue_chain=False, message="Item already in progress")

        if run.status == RunStatus.QUEUED.value:
            if not self._start(run):
                # Lost the start to a concurrent cancel or step; re-read
                return self._step(store.get_run(self.db, run.id))

        config = RunConfig(**(run.input_config or {}))

        item = store.next_pending_item(self.db, run.id)
        if item is None:
            return self._finalize(run)

        self._process_item(run, item, config)

        remaining = store.count_items(self.db, run.id, [WorkItemStatus.PENDING.value])
        delay_ms = config.pacing_delay_ms
        if remaining and delay_ms and not is_cancelled(self.db, run.id):
            logger.info(f"Pacing run {run.id}: waiting {delay_ms}ms before next item")
            self.sleep(delay_ms / 1000)

        return StepResult(done=False, message=f"{remaining} item(s) remaining")

    def _start(self, run: Run) -> bool:
        now = datetime.utcnow()
        won = store.transition_run(
            self.db,
            run.id,
            [RunStatus.QUEUED.value],
            status=RunStatus.RUNNING.value,
            phase=RunPhase.LOADING.value,
            phase_detail="Starting",
            started_at=now,
            heartbeat_at=now,
        )
        if won:
            append_run_log(self.db, run.id, f"Run started: {run.total_items} item(s) to process")
            logger.info(f"Run {run.id} started")
        return won

    def _set_phase(self, run_id: UUID, phase: RunPhase, **fields) -> bool:
        """Move a RUNNING run to ``phase``; never touches a run that left RUNNING."""
        return store.transition_run(
            self.db,
            run_id,
            [RunStatus.RUNNING.value],
            phase=phase.value,
            heartbeat_at=datetime.utcnow(),
            **fields,
        )

    def _process_item(self, run: Run, item: WorkItem, config: RunConfig) -> None:
        handler = get_handler(run.kind)
        run_id = run.id
        item_id = item.id
        subject_id = item.subject_id
        label = item.subject_label
        position = item.order + 1
        total = run.total_items

        store.touch_heartbeat(self.db, run_id)
        if not store.claim_work_item(self.db, item_id, WorkItemStatus.LOADING.value):
            logger.info(f"Item {item_id} of run {run_id} already claimed")
            return

        self._set_phase(
            run_id,
            RunPhase.LOADING,
            phase_detail=f"Processing item {position} of {total}: {label}",
        )
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            subject = handler.load_subject(self.db, subject_id)
            if subject is None:
                raise ValueError(f"Subject {subject_id} no longer exists")

            existing = handler.existing_artifact_count(self.db, subject)
            if existing and config.conflict_policy == ConflictPolicy.SKIP:
                subject.generation_status = item.subject_prior_status or SubjectStatus.PENDING.value
                if not store.record_item_outcome(
                    self.db,
                    item,
                    WorkItemStatus.SKIPPED.value,
                    duration_ms=elapsed(),
                ):
                    return
                append_run_log(self.db, run_id, f"⊘ {label}: skipped ({existing} existing artifact(s))")
                return

            store.update_work_item(self.db, item_id, status=WorkItemStatus.PROCESSING.value)
            self._set_phase(run_id, RunPhase.PROCESSING)

            payload = handler.build_payload(self.db, subject, run)
            result = self.generator.generate(run.kind, payload, config)
            store.touch_heartbeat(self.db, run_id)

            store.update_work_item(self.db, item_id, status=WorkItemStatus.SAVING.value)
            self._set_phase(run_id, RunPhase.SAVING)

            # Reload: the status updates above committed and expired the subject
            subject = handler.load_subject(self.db, subject_id)
            created, replaced = handler.persist(
                self.db, run, subject, result.artifacts, config.conflict_policy
            )
            handler.mark_outcome(self.db, subject, SubjectStatus.COMPLETED.value, run)
            if not store.record_item_outcome(
                self.db,
                item,
                WorkItemStatus.COMPLETED.value,
                duration_ms=elapsed(),
                artifacts_created=created,
                artifacts_replaced=replaced,
                tokens_used=result.tokens_used,
            ):
                return

            message = f"✓ {label}: {created} artifact(s) created"
            if replaced:
                message += f", {replaced} replaced"
            append_run_log(self.db, run_id, message)
            logger.info(f"Run {run_id} item {position}/{total} completed ({created} artifacts)")

        except Exception as e:
            self.db.rollback()
            error = str(e) or e.__class__.__name__
            logger.error(f"Run {run_id} item {position}/{total} failed: {error}", exc_info=True)

            subject = handler.load_subject(self.db, subject_id)
            if subject is not None:
                handler.mark_outcome(self.db, subject, SubjectStatus.FAILED.value, run, error=error)
            if store.record_item_outcome(
                self.db,
                item,
                WorkItemStatus.FAILED.value,
                duration_ms=elapsed(),
                error_msg=error,
            ):
                append_run_log(self.db, run_id, f"✗ {label}: {error}")

    def _finalize(self, run: Run) -> StepResult:
        if not self._set_phase(run.id, RunPhase.FINALIZING, phase_detail="Finalizing"):
            return self._step(store.get_run(self.db, run.id))

        run = store.get_run(self.db, run.id)
        final = compute_final_status(run.completed_items, run.failed_items, run.skipped_items)
        now = datetime.utcnow()

        won = store.transition_run(
            self.db,
            run.id,
            [RunStatus.RUNNING.value],
            status=final.value,
            phase=RunPhase.COMPLETED.value,
            phase_detail=None,
            completed_at=now,
            heartbeat_at=now,
            duration_ms=_elapsed_ms(run.started_at, now),
        )
        if not won:
            return self._step(store.get_run(self.db, run.id))

        clear_cancellation(run.id)
        summary = (
            f"Run finished: {final.value} - {run.completed_items} completed, "
            f"{run.failed_items} failed, {run.skipped_items} skipped, "
            f"{run.produced_artifact_count} artifact(s) produced"
        )
        append_run_log(self.db, run.id, summary)
        logger.info(f"Run {run.id} {summary}")
        return StepResult(done=True, message=summary)

    def _fail_run(self, run_id: UUID, error: Exception) -> None:
        """Mark the run FAILED after an error outside the per-item boundary."""
        self.db.rollback()
        message = str(error) or error.__class__.__name__
        run = store.get_run(self.db, run_id)
        if run is None:
            return

        now = datetime.utcnow()
        won = store.transition_run(
            self.db,
            run_id,
            ACTIVE_RUN_STATUSES,
            status=RunStatus.FAILED.value,
            phase=RunPhase.FAILED.value,
            phase_detail="Run failed",
            error_msg=message,
            completed_at=now,
            duration_ms=_elapsed_ms(run.started_at, now),
        )
        append_run_log(self.db, run_id, f"FATAL ERROR: {message}")
        if won:
            clear_cancellation(run_id)
            release_unfinished_items(
                self.db, run, in_flight_status=WorkItemStatus.FAILED.value, error_msg=message
            )


def process_next_in_new_session(
    run_id: UUID,
    session_factory: sessionmaker = SessionLocal,
    generator: Optional[BaseGenerator] = None,
    trigger: Optional[ContinuationTrigger] = None,
) -> None:
    """Background-task entry point: one step on a session of its own."""
    db = session_factory()
    try:
        result = Executor(db, generator=generator, trigger=trigger).process_next(run_id)
        logger.info(f"process-next for run {run_id}: done={result.done} ({result.message})")
    except RunNotFound:
        logger.error(f"process-next for unknown run {run_id}")
    except Exception as e:
        logger.error(f"process-next for run {run_id} crashed: {e}", exc_info=True)
    finally:
        db.close()
