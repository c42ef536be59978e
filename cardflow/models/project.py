"""Project model."""

import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, Text, Uuid
from sqlalchemy.orm import relationship

from cardflow.database import Base


class Project(Base):
    """Project is the scope every run, upload and epic belongs to."""

    __tablename__ = "projects"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    description = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    uploads = relationship("Upload", back_populates="project", cascade="all, delete-orphan")
    epics = relationship("Epic", back_populates="project", cascade="all, delete-orphan")
