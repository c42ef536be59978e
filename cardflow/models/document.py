"""Upload and Card models."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from cardflow.database import Base


class Upload(Base):
    """Uploaded document with its already-extracted text."""

    __tablename__ = "uploads"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    filename = Column(Text, nullable=False)
    file_type = Column(Text, default="text/plain")
    raw_content = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False)
    word_count = Column(Integer, default=0)
    generation_status = Column(Text, nullable=False, default="PENDING")  # 'PENDING', 'QUEUED', 'COMPLETED', 'FAILED'
    last_run_id = Column(Uuid)
    last_error = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    project = relationship("Project", back_populates="uploads")
    cards = relationship("Card", back_populates="upload", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("project_id", "content_hash", name="uq_uploads_project_hash"),
        Index("idx_uploads_project_status", "project_id", "generation_status"),
        {"schema": None},
    )


class Card(Base):
    """Use-case card extracted from an upload."""

    __tablename__ = "cards"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    upload_id = Column(Uuid, ForeignKey("uploads.id", ondelete="CASCADE"), nullable=False)
    run_id = Column(Uuid)
    title = Column(Text, nullable=False)
    problem = Column(Text)
    target_users = Column(Text)
    current_state = Column(Text)
    desired_outcomes = Column(Text)
    constraints = Column(Text)
    systems = Column(Text)
    priority = Column(Text)
    impact = Column(Text)
    raw_text = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    upload = relationship("Upload", back_populates="cards")

    __table_args__ = (
        Index("idx_cards_upload_id", "upload_id"),
        {"schema": None},
    )
