"""Initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-16 00:00:00.000000

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(JSONB(), "postgresql")
ACTIVE_STATUS_CLAUSE = sa.text("status IN ('QUEUED', 'RUNNING')")


def upgrade() -> None:
    # Check if tables already exist and skip if so
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = inspector.get_table_names()

    if "runs" in existing_tables:
        return

    # Create projects table
    op.create_table(
        "projects",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )

    # Create uploads table
    op.create_table(
        "uploads",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("project_id", sa.Uuid, sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("filename", sa.Text, nullable=False),
        sa.Column("file_type", sa.Text),
        sa.Column("raw_content", sa.Text, nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        sa.Column("word_count", sa.Integer),
        sa.Column("generation_status", sa.Text, nullable=False, server_default="PENDING"),
        sa.Column("last_run_id", sa.Uuid),
        sa.Column("last_error", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.UniqueConstraint("project_id", "content_hash", name="uq_uploads_project_hash"),
    )
    op.create_index("idx_uploads_project_status", "uploads", ["project_id", "generation_status"])

    # Create cards table
    op.create_table(
        "cards",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("project_id", sa.Uuid, sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("upload_id", sa.Uuid, sa.ForeignKey("uploads.id", ondelete="CASCADE"), nullable=False),
        sa.Column("run_id", sa.Uuid),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("problem", sa.Text),
        sa.Column("target_users", sa.Text),
        sa.Column("current_state", sa.Text),
        sa.Column("desired_outcomes", sa.Text),
        sa.Column("constraints", sa.Text),
        sa.Column("systems", sa.Text),
        sa.Column("priority", sa.Text),
        sa.Column("impact", sa.Text),
        sa.Column("raw_text", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_cards_upload_id", "cards", ["upload_id"])

    # Create epics table
    op.create_table(
        "epics",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("project_id", sa.Uuid, sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("code", sa.Text, nullable=False),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("theme", sa.Text),
        sa.Column("description", sa.Text),
        sa.Column("business_value", sa.Text),
        sa.Column("acceptance_criteria", JSON_TYPE),
        sa.Column("dependencies", JSON_TYPE),
        sa.Column("effort", sa.Text),
        sa.Column("impact", sa.Text),
        sa.Column("priority", sa.Integer),
        sa.Column("generation_status", sa.Text, nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_epics_project_id", "epics", ["project_id"])

    # Create stories table
    op.create_table(
        "stories",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("epic_id", sa.Uuid, sa.ForeignKey("epics.id", ondelete="CASCADE"), nullable=False),
        sa.Column("run_id", sa.Uuid),
        sa.Column("code", sa.Text, nullable=False),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("user_story", sa.Text, nullable=False),
        sa.Column("persona", sa.Text),
        sa.Column("acceptance_criteria", JSON_TYPE),
        sa.Column("technical_notes", sa.Text),
        sa.Column("priority", sa.Text),
        sa.Column("effort", sa.Text),
        sa.Column("generation_status", sa.Text, nullable=False, server_default="PENDING"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_stories_epic_id", "stories", ["epic_id"])

    # Create subtasks table
    op.create_table(
        "subtasks",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("story_id", sa.Uuid, sa.ForeignKey("stories.id", ondelete="CASCADE"), nullable=False),
        sa.Column("run_id", sa.Uuid),
        sa.Column("code", sa.Text, nullable=False),
        sa.Column("title", sa.Text, nullable=False),
        sa.Column("description", sa.Text),
        sa.Column("effort", sa.Text),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index("idx_subtasks_story_id", "subtasks", ["story_id"])

    # Create runs table
    op.create_table(
        "runs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("project_id", sa.Uuid, sa.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False),
        sa.Column("kind", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("phase", sa.Text, nullable=False),
        sa.Column("phase_detail", sa.Text),
        sa.Column("total_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completed_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("produced_artifact_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tokens_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("input_config", JSON_TYPE),
        sa.Column("retry_of_run_id", sa.Uuid),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("heartbeat_at", sa.DateTime),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("error_msg", sa.Text),
        sa.Column("log", sa.Text, nullable=False, server_default=""),
    )
    op.create_index("idx_runs_project_kind", "runs", ["project_id", "kind"])
    # At most one queued/running run per (project, kind)
    op.create_index(
        "uq_runs_active_scope",
        "runs",
        ["project_id", "kind"],
        unique=True,
        postgresql_where=ACTIVE_STATUS_CLAUSE,
        sqlite_where=ACTIVE_STATUS_CLAUSE,
    )

    # Create work_items table
    op.create_table(
        "work_items",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("run_id", sa.Uuid, sa.ForeignKey("runs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("subject_id", sa.Uuid, nullable=False),
        sa.Column("subject_label", sa.Text, nullable=False, server_default=""),
        sa.Column("subject_prior_status", sa.Text),
        sa.Column("order", sa.Integer, nullable=False),
        sa.Column("status", sa.Text, nullable=False),
        sa.Column("artifacts_created", sa.Integer, nullable=False, server_default="0"),
        sa.Column("artifacts_replaced", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tokens_used", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_msg", sa.Text),
        sa.Column("started_at", sa.DateTime),
        sa.Column("completed_at", sa.DateTime),
        sa.Column("duration_ms", sa.Integer),
    )
    op.create_index("idx_work_items_run_order", "work_items", ["run_id", "order"])
    op.create_index("idx_work_items_run_status", "work_items", ["run_id", "status"])


def downgrade() -> None:
    op.drop_table("work_items")
    op.drop_table("runs")
    op.drop_table("subtasks")
    op.drop_table("stories")
    op.drop_table("epics")
    op.drop_table("cards")
    op.drop_table("uploads")
    op.drop_table("projects")
