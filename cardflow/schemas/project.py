"""Project, upload and backlog schemas."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class ProjectCreate(BaseModel):
    """Schema for creating a project."""

    name: str
    description: Optional[str] = None


class ProjectResponse(BaseModel):
    """Project response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class UploadCreate(BaseModel):
    """Schema for adding an already-extracted document."""

    filename: str
    content: str
    file_type: str = "text/plain"


class UploadResponse(BaseModel):
    """Response after adding an upload."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    filename: str
    generation_status: str
    word_count: int = 0
    existed: bool = False


class EpicCreate(BaseModel):
    """Schema for creating an epic."""

    code: str
    title: str
    theme: Optional[str] = None
    description: Optional[str] = None
    business_value: Optional[str] = None
    acceptance_criteria: Optional[List[str]] = None
    priority: Optional[int] = None


class EpicResponse(BaseModel):
    """Epic response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    title: str
    priority: Optional[int] = None
    generation_status: str


class StoryResponse(BaseModel):
    """Story response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    epic_id: UUID
    code: str
    title: str
    user_story: str
    persona: Optional[str] = None
    generation_status: str


class CardResponse(BaseModel):
    """Card response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    upload_id: UUID
    title: str
    priority: Optional[str] = None


class SubtaskResponse(BaseModel):
    """Subtask response."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    story_id: UUID
    code: str
    title: str
    effort: Optional[str] = None
