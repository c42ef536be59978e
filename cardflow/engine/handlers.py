"""Per-kind adapters between the run engine and the domain tables.

A handler knows which subjects a run kind processes, how to describe them to a
generator, whether they already carry output, and how to save what the
generator produced.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from cardflow.engine import store
from cardflow.models.backlog import Epic, Story, Subtask
from cardflow.models.document import Card, Upload
from cardflow.models.project import Project
from cardflow.models.run import Run, WorkItem
from cardflow.schemas.artifacts import CardSchema, StorySchema, SubtaskSchema
from cardflow.schemas.enums import ConflictPolicy, RunKind, SubjectStatus, WorkItemStatus

logger = logging.getLogger(__name__)


class KindHandler:
    """Base class for run-kind handlers."""

    kind: RunKind
    subject_model = None
    artifact_model = None
    artifact_fk = ""

    def select_subjects(
        self,
        db: Session,
        project_id: UUID,
        subject_ids: Optional[Sequence[UUID]] = None,
    ) -> List[Any]:
        """Subjects a new run should process, in processing order.

        With explicit ids the caller's order is kept and ids that do not
        belong to the project are dropped.
        """
        if subject_ids:
            by_id = {s.id: s for s in self._project_subjects(db, project_id, subject_ids)}
            seen = set()
            ordered = []
            for subject_id in subject_ids:
                if subject_id in by_id and subject_id not in seen:
                    ordered.append(by_id[subject_id])
                    seen.add(subject_id)
            return ordered
        return self._default_subjects(db, project_id)

    def _project_subjects(self, db: Session, project_id: UUID, subject_ids: Sequence[UUID]) -> List[Any]:
        raise NotImplementedError

    def _default_subjects(self, db: Session, project_id: UUID) -> List[Any]:
        raise NotImplementedError

    def label(self, subject) -> str:
        raise NotImplementedError

    def load_subject(self, db: Session, subject_id: UUID):
        return db.get(self.subject_model, subject_id)

    def existing_artifact_count(self, db: Session, subject) -> int:
        fk = getattr(self.artifact_model, self.artifact_fk)
        return db.query(func.count(self.artifact_model.id)).filter(fk == subject.id).scalar()

    def build_payload(self, db: Session, subject, run: Run) -> Dict[str, Any]:
        """Describe the subject to a generator."""
        raise NotImplementedError

    def persist(
        self,
        db: Session,
        run: Run,
        subject,
        artifacts: List[Dict[str, Any]],
        policy: ConflictPolicy,
    ) -> Tuple[int, int]:
        """Stage the generated artifacts for the subject. Does not commit.

        Rows this run saved earlier for the subject are removed first so a
        repeated save of the same item does not duplicate output.

        Returns:
            (created, replaced)
        """
        fk = getattr(self.artifact_model, self.artifact_fk)
        db.query(self.artifact_model).filter(
            fk == subject.id,
            self.artifact_model.run_id == run.id,
        ).delete(synchronize_session=False)

        replaced = 0
        if policy == ConflictPolicy.REPLACE:
            replaced = (
                db.query(self.artifact_model)
                .filter(fk == subject.id)
                .delete(synchronize_session=False)
            )

        for data in artifacts:
            db.add(self._build_artifact(run, subject, data))

        return len(artifacts), replaced

    def _build_artifact(self, run: Run, subject, data: Dict[str, Any]):
        raise NotImplementedError

    def mark_queued(self, subjects: Sequence[Any]) -> List[Tuple[UUID, str, Optional[str]]]:
        """Stage subjects as QUEUED; returns the work item refs for the run."""
        refs = []
        for subject in subjects:
            refs.append((subject.id, self.label(subject), subject.generation_status))
            subject.generation_status = SubjectStatus.QUEUED.value
        return refs

    def mark_outcome(self, db: Session, subject, status: str, run: Run, error: Optional[str] = None) -> None:
        """Stage the subject's status after its item finished."""
        subject.generation_status = status

    def revert_subjects(self, db: Session, items: Sequence[WorkItem]) -> int:
        """Restore the pre-run status of the subjects behind ``items``. Does not commit."""
        reverted = 0
        for item in items:
            subject = self.load_subject(db, item.subject_id)
            if subject is None:
                continue
            if subject.generation_status == SubjectStatus.QUEUED.value:
                subject.generation_status = item.subject_prior_status or SubjectStatus.PENDING.value
                reverted += 1
        return reverted


class AnalyzeDocumentsHandler(KindHandler):
    """Uploads in, use-case cards out."""

    kind = RunKind.ANALYZE_DOCUMENTS
    subject_model = Upload
    artifact_model = Card
    artifact_fk = "upload_id"

    def _project_subjects(self, db, project_id, subject_ids):
        return (
            db.query(Upload)
            .filter(Upload.project_id == project_id, Upload.id.in_(list(subject_ids)))
            .all()
        )

    def _default_subjects(self, db, project_id):
        # Not yet analysed, or failed last time
        return (
            db.query(Upload)
            .filter(
                Upload.project_id == project_id,
                Upload.generation_status.in_([SubjectStatus.PENDING.value, SubjectStatus.FAILED.value]),
            )
            .order_by(Upload.created_at, Upload.filename)
            .all()
        )

    def label(self, subject) -> str:
        return subject.filename or "Untitled"

    def build_payload(self, db, subject, run):
        project = db.get(Project, subject.project_id)
        return {
            "title": subject.filename,
            "file_type": subject.file_type,
            "text": subject.raw_content,
            "project_context": project.description if project else None,
        }

    def _build_artifact(self, run, subject, data):
        card = CardSchema(**data)
        return Card(
            project_id=subject.project_id,
            upload_id=subject.id,
            run_id=run.id,
            **card.model_dump(),
        )

    def mark_outcome(self, db, subject, status, run, error=None):
        subject.generation_status = status
        subject.last_run_id = run.id
        subject.last_error = error


class GenerateStoriesHandler(KindHandler):
    """Epics in, user stories out."""

    kind = RunKind.GENERATE_STORIES
    subject_model = Epic
    artifact_model = Story
    artifact_fk = "epic_id"

    def _project_subjects(self, db, project_id, subject_ids):
        return (
            db.query(Epic)
            .filter(Epic.project_id == project_id, Epic.id.in_(list(subject_ids)))
            .all()
        )

    def _default_subjects(self, db, project_id):
        return (
            db.query(Epic)
            .filter(Epic.project_id == project_id)
            .order_by(Epic.priority, Epic.code)
            .all()
        )

    def label(self, subject) -> str:
        return f"{subject.code}: {subject.title}"

    def build_payload(self, db, subject, run):
        return {
            "code": subject.code,
            "title": subject.title,
            "theme": subject.theme,
            "description": subject.description,
            "business_value": subject.business_value,
            "acceptance_criteria": subject.acceptance_criteria or [],
            "dependencies": subject.dependencies or [],
            "effort": subject.effort,
            "impact": subject.impact,
            "priority": subject.priority,
        }

    def _build_artifact(self, run, subject, data):
        story = StorySchema(**data)
        return Story(
            epic_id=subject.id,
            run_id=run.id,
            generation_status=SubjectStatus.PENDING.value,
            **story.model_dump(),
        )


class GenerateSubtasksHandler(KindHandler):
    """Stories in, implementation subtasks out."""

    kind = RunKind.GENERATE_SUBTASKS
    subject_model = Story
    artifact_model = Subtask
    artifact_fk = "story_id"

    def _project_subjects(self, db, project_id, subject_ids):
        return (
            db.query(Story)
            .join(Epic, Story.epic_id == Epic.id)
            .filter(Epic.project_id == project_id, Story.id.in_(list(subject_ids)))
            .all()
        )

    def _default_subjects(self, db, project_id):
        return (
            db.query(Story)
            .join(Epic, Story.epic_id == Epic.id)
            .filter(Epic.project_id == project_id)
            .order_by(Epic.priority, Epic.code, Story.code)
            .all()
        )

    def label(self, subject) -> str:
        return f"{subject.code}: {subject.title}"

    def build_payload(self, db, subject, run):
        epic = db.get(Epic, subject.epic_id)
        return {
            "code": subject.code,
            "title": subject.title,
            "user_story": subject.user_story,
            "persona": subject.persona,
            "acceptance_criteria": subject.acceptance_criteria or [],
            "technical_notes": subject.technical_notes,
            "epic": {"code": epic.code, "title": epic.title} if epic else {},
        }

    def _build_artifact(self, run, subject, data):
        subtask = SubtaskSchema(**data)
        return Subtask(
            story_id=subject.id,
            run_id=run.id,
            **subtask.model_dump(),
        )


# Handler registry
HANDLERS: Dict[str, KindHandler] = {
    RunKind.ANALYZE_DOCUMENTS.value: AnalyzeDocumentsHandler(),
    RunKind.GENERATE_STORIES.value: GenerateStoriesHandler(),
    RunKind.GENERATE_SUBTASKS.value: GenerateSubtasksHandler(),
}


def get_handler(kind: str) -> KindHandler:
    """Look up the handler for a run kind."""
    key = kind.value if isinstance(kind, RunKind) else kind
    handler = HANDLERS.get(key)
    if not handler:
        raise ValueError(f"Unknown run kind: {kind}")
    return handler


def release_unfinished_items(
    db: Session,
    run: Run,
    in_flight_status: str = WorkItemStatus.PENDING.value,
    error_msg: Optional[str] = None,
) -> int:
    """Free the subjects of a run that stopped before finishing its items. Commits.

    In-flight items (orphaned by a dead invocation) are moved to
    ``in_flight_status`` first. The subjects of those items and of the
    still-PENDING ones get their pre-run status back, making them eligible
    for a fresh run.

    Returns:
        The number of unfinished items.
    """
    released = store.release_in_flight_items(db, run.id, in_flight_status, error_msg=error_msg)
    pending = (
        db.query(WorkItem)
        .filter(
            WorkItem.run_id == run.id,
            WorkItem.status == WorkItemStatus.PENDING.value,
        )
        .order_by(WorkItem.order)
        .all()
    )
    released_ids = {item.id for item in released}
    unfinished = released + [item for item in pending if item.id not in released_ids]
    if not unfinished:
        return 0
    reverted = get_handler(run.kind).revert_subjects(db, unfinished)
    db.commit()
    logger.info(f"Reverted {reverted} subject(s) of run {run.id}")
    return len(unfinished)
