"""Epic, Story and Subtask models."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from cardflow.database import Base


class Epic(Base):
    """Epic grouping related use-case cards."""

    __tablename__ = "epics"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    code = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    theme = Column(Text)
    description = Column(Text)
    business_value = Column(Text)
    acceptance_criteria = Column(JSON().with_variant(JSONB(), "postgresql"))
    dependencies = Column(JSON().with_variant(JSONB(), "postgresql"))
    effort = Column(Text)
    impact = Column(Text)
    priority = Column(Integer)
    generation_status = Column(Text, nullable=False, default="PENDING")
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    project = relationship("Project", back_populates="epics")
    stories = relationship("Story", back_populates="epic", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_epics_project_id", "project_id"),
        {"schema": None},
    )


class Story(Base):
    """User story generated for an epic."""

    __tablename__ = "stories"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    epic_id = Column(Uuid, ForeignKey("epics.id", ondelete="CASCADE"), nullable=False)
    run_id = Column(Uuid)
    code = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    user_story = Column(Text, nullable=False)
    persona = Column(Text)
    acceptance_criteria = Column(JSON().with_variant(JSONB(), "postgresql"))
    technical_notes = Column(Text)
    priority = Column(Text)
    effort = Column(Text)
    generation_status = Column(Text, nullable=False, default="PENDING")
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    epic = relationship("Epic", back_populates="stories")
    subtasks = relationship("Subtask", back_populates="story", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_stories_epic_id", "epic_id"),
        {"schema": None},
    )


class Subtask(Base):
    """Implementation subtask generated for a story."""

    __tablename__ = "subtasks"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    story_id = Column(Uuid, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    run_id = Column(Uuid)
    code = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    description = Column(Text)
    effort = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    story = relationship("Story", back_populates="subtasks")

    __table_args__ = (
        Index("idx_subtasks_story_id", "story_id"),
        {"schema": None},
    )
