"""Run and WorkItem models."""

import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, Text, Uuid, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from cardflow.database import Base

_ACTIVE_STATUS_CLAUSE = text("status IN ('QUEUED', 'RUNNING')")


class Run(Base):
    """Run represents one batch job processing a fixed set of work items."""

    __tablename__ = "runs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id = Column(Uuid, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    kind = Column(Text, nullable=False)  # 'ANALYZE_DOCUMENTS', 'GENERATE_STORIES', 'GENERATE_SUBTASKS'
    status = Column(Text, nullable=False)  # 'QUEUED', 'RUNNING', 'SUCCEEDED', 'PARTIAL', 'FAILED', 'CANCELLED'
    phase = Column(Text, nullable=False)
    phase_detail = Column(Text)

    total_items = Column(Integer, nullable=False, default=0)
    completed_items = Column(Integer, nullable=False, default=0)
    failed_items = Column(Integer, nullable=False, default=0)
    skipped_items = Column(Integer, nullable=False, default=0)
    produced_artifact_count = Column(Integer, nullable=False, default=0)
    tokens_used = Column(Integer, nullable=False, default=0)

    input_config = Column(JSON().with_variant(JSONB(), "postgresql"))
    retry_of_run_id = Column(Uuid)

    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    heartbeat_at = Column(DateTime)
    duration_ms = Column(Integer)

    error_msg = Column(Text)
    log = Column(Text, nullable=False, default="")

    # Relationships
    items = relationship(
        "WorkItem",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="WorkItem.order",
    )

    __table_args__ = (
        Index("idx_runs_project_kind", "project_id", "kind"),
        # At most one queued/running run per (project, kind)
        Index(
            "uq_runs_active_scope",
            "project_id",
            "kind",
            unique=True,
            postgresql_where=_ACTIVE_STATUS_CLAUSE,
            sqlite_where=_ACTIVE_STATUS_CLAUSE,
        ),
        {"schema": None},
    )


class WorkItem(Base):
    """One unit of work (document, epic or story) within a run."""

    __tablename__ = "work_items"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    run_id = Column(Uuid, ForeignKey("runs.id", ondelete="CASCADE"), nullable=False)
    subject_id = Column(Uuid, nullable=False)
    subject_label = Column(Text, nullable=False, default="")
    subject_prior_status = Column(Text)
    order = Column(Integer, nullable=False)
    status = Column(Text, nullable=False)  # 'PENDING', 'LOADING', 'PROCESSING', 'SAVING', 'COMPLETED', 'FAILED', 'SKIPPED'

    artifacts_created = Column(Integer, nullable=False, default=0)
    artifacts_replaced = Column(Integer, nullable=False, default=0)
    tokens_used = Column(Integer, nullable=False, default=0)
    error_msg = Column(Text)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    duration_ms = Column(Integer)

    # Relationships
    run = relationship("Run", back_populates="items")

    __table_args__ = (
        Index("idx_work_items_run_order", "run_id", "order"),
        Index("idx_work_items_run_status", "run_id", "status"),
        {"schema": None},
    )
