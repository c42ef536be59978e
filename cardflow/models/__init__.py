"""SQLAlchemy ORM models."""

from cardflow.models.project import Project
from cardflow.models.document import Upload, Card
from cardflow.models.backlog import Epic, Story, Subtask
from cardflow.models.run import Run, WorkItem

__all__ = [
    "Project",
    "Upload",
    "Card",
    "Epic",
    "Story",
    "Subtask",
    "Run",
    "WorkItem",
]
