"""Project, upload and backlog routes."""

import hashlib
import logging
import uuid
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from sqlalchemy.orm import Session

from cardflow.database import get_db
from cardflow.models.backlog import Epic, Story, Subtask
from cardflow.models.document import Card, Upload
from cardflow.models.project import Project
from cardflow.schemas.enums import SubjectStatus
from cardflow.schemas.project import (
    CardResponse,
    EpicCreate,
    EpicResponse,
    ProjectCreate,
    ProjectResponse,
    StoryResponse,
    SubtaskResponse,
    UploadCreate,
    UploadResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects", tags=["projects"])

TEXT_EXTENSIONS = (".txt", ".md", ".text")


def _get_project(db: Session, project_id: uuid.UUID) -> Project:
    project = db.get(Project, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


@router.post("", response_model=ProjectResponse)
def create_project(
    data: ProjectCreate,
    db: Session = Depends(get_db),
):
    """Create a new project."""
    project = Project(name=data.name, description=data.description)
    db.add(project)
    db.commit()

    logger.info(f"Created project {project.id}")
    return project


@router.get("", response_model=List[ProjectResponse])
def list_projects(db: Session = Depends(get_db)):
    """List all projects, newest first."""
    return db.query(Project).order_by(Project.created_at.desc()).all()


@router.get("/{project_id}", response_model=ProjectResponse)
def get_project(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    return _get_project(db, project_id)


def _upsert_upload(db: Session, project: Project, filename: str, content: str, file_type: str) -> UploadResponse:
    """Insert an upload unless the project already holds the same content."""
    content_hash = hashlib.sha256(content.encode()).hexdigest()

    existing = (
        db.query(Upload)
        .filter(Upload.project_id == project.id, Upload.content_hash == content_hash)
        .first()
    )
    if existing:
        logger.info(f"Upload already exists: {existing.id}")
        return UploadResponse(
            id=existing.id,
            filename=existing.filename,
            generation_status=existing.generation_status,
            word_count=existing.word_count or 0,
            existed=True,
        )

    upload = Upload(
        project_id=project.id,
        filename=filename,
        file_type=file_type,
        raw_content=content,
        content_hash=content_hash,
        word_count=len(content.split()),
        generation_status=SubjectStatus.PENDING.value,
    )
    db.add(upload)
    db.commit()

    logger.info(f"Created upload {upload.id} ({upload.word_count} words)")
    return UploadResponse(
        id=upload.id,
        filename=upload.filename,
        generation_status=upload.generation_status,
        word_count=upload.word_count,
        existed=False,
    )


@router.post("/{project_id}/uploads", response_model=UploadResponse)
def add_upload(
    project_id: uuid.UUID,
    data: UploadCreate,
    db: Session = Depends(get_db),
):
    """
    Add an already-extracted document: insert if new, return existing if duplicate.

    Args:
        project_id: Owning project
        data: Filename and text content
        db: Database session

    Returns:
        UploadResponse, with ``existed`` set for duplicates
    """
    project = _get_project(db, project_id)
    if not data.content.strip():
        raise HTTPException(status_code=400, detail="Upload contains no text")
    return _upsert_upload(db, project, data.filename, data.content, data.file_type)


@router.post("/{project_id}/uploads/file", response_model=UploadResponse)
async def upload_text_file(
    project_id: uuid.UUID,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    """Upload a plain-text or markdown file."""
    project = _get_project(db, project_id)

    filename_lower = file.filename.lower() if file.filename else ""
    if not filename_lower.endswith(TEXT_EXTENSIONS):
        raise HTTPException(
            status_code=400,
            detail="Unsupported file type. Only text and markdown files are supported.",
        )

    file_content = await file.read()
    try:
        content = file_content.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="File must be UTF-8 encoded text")

    if not content.strip():
        raise HTTPException(status_code=400, detail="File contains no text")

    return _upsert_upload(db, project, file.filename, content, file.content_type or "text/plain")


@router.get("/{project_id}/uploads", response_model=List[UploadResponse])
def list_uploads(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    _get_project(db, project_id)
    return (
        db.query(Upload)
        .filter(Upload.project_id == project_id)
        .order_by(Upload.created_at)
        .all()
    )


@router.post("/{project_id}/epics", response_model=EpicResponse)
def create_epic(
    project_id: uuid.UUID,
    data: EpicCreate,
    db: Session = Depends(get_db),
):
    """Create an epic for story generation."""
    _get_project(db, project_id)
    epic = Epic(
        project_id=project_id,
        generation_status=SubjectStatus.PENDING.value,
        **data.model_dump(),
    )
    db.add(epic)
    db.commit()

    logger.info(f"Created epic {epic.code} ({epic.id})")
    return epic


@router.get("/{project_id}/epics", response_model=List[EpicResponse])
def list_epics(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    _get_project(db, project_id)
    return (
        db.query(Epic)
        .filter(Epic.project_id == project_id)
        .order_by(Epic.priority, Epic.code)
        .all()
    )


@router.get("/{project_id}/stories", response_model=List[StoryResponse])
def list_stories(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    _get_project(db, project_id)
    return (
        db.query(Story)
        .join(Epic, Story.epic_id == Epic.id)
        .filter(Epic.project_id == project_id)
        .order_by(Epic.priority, Epic.code, Story.code)
        .all()
    )


@router.get("/{project_id}/cards", response_model=List[CardResponse])
def list_cards(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    _get_project(db, project_id)
    return (
        db.query(Card)
        .filter(Card.project_id == project_id)
        .order_by(Card.created_at)
        .all()
    )


@router.get("/{project_id}/subtasks", response_model=List[SubtaskResponse])
def list_subtasks(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
):
    _get_project(db, project_id)
    return (
        db.query(Subtask)
        .join(Story, Subtask.story_id == Story.id)
        .join(Epic, Story.epic_id == Epic.id)
        .filter(Epic.project_id == project_id)
        .order_by(Story.code, Subtask.code)
        .all()
    )
