"""Run-related Pydantic schemas."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from cardflow.schemas.enums import (
    ConflictPolicy,
    GenerationMode,
    PacingMode,
    PersonaSet,
    RunKind,
)

# Delay between items per pacing mode
PACING_DELAY_MS: Dict[str, int] = {
    PacingMode.NONE.value: 0,
    PacingMode.FAST.value: 500,
    PacingMode.SAFE.value: 2000,
}


class RunConfig(BaseModel):
    """Job parameters stored on the run as ``input_config``."""

    mode: GenerationMode = GenerationMode.STANDARD
    persona_set: PersonaSet = PersonaSet.CORE
    pacing: PacingMode = PacingMode.SAFE
    conflict_policy: ConflictPolicy = ConflictPolicy.SKIP
    max_cards_per_upload: int = Field(default=20, ge=1, le=100)

    @property
    def pacing_delay_ms(self) -> int:
        return PACING_DELAY_MS[self.pacing.value]


class RunCreate(BaseModel):
    """Schema for creating a new run."""

    kind: RunKind
    subject_ids: Optional[List[UUID]] = None
    config: RunConfig = Field(default_factory=RunConfig)


class RunCreated(BaseModel):
    """Response after creating a run."""

    run_id: UUID
    kind: RunKind
    total_items: int


class WorkItemProgress(BaseModel):
    """Per-item view inside a progress snapshot."""

    subject_id: UUID
    label: str
    order: int
    status: str
    artifacts_created: int = 0
    artifacts_replaced: int = 0
    tokens_used: int = 0
    error: Optional[str] = None
    duration_ms: Optional[int] = None


class RunProgress(BaseModel):
    """Point-in-time progress snapshot of a run."""

    run_id: UUID
    project_id: UUID
    kind: str
    status: str
    phase: str
    phase_detail: Optional[str] = None
    total_items: int
    completed_items: int
    failed_items: int
    skipped_items: int
    produced_artifact_count: int
    tokens_used: int = 0
    current_item_index: Optional[int] = None
    current_subject_id: Optional[UUID] = None
    current_label: Optional[str] = None
    items: List[WorkItemProgress]
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    elapsed_ms: Optional[int] = None
    estimated_remaining_ms: Optional[int] = None
    error: Optional[str] = None
    retry_of_run_id: Optional[UUID] = None
    recovered_from_stale: bool = False
    previous_run_id: Optional[UUID] = None


class RunSummary(BaseModel):
    """Row in a run listing."""

    run_id: UUID
    kind: str
    status: str
    total_items: int
    completed_items: int
    failed_items: int
    skipped_items: int
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ActiveRunResponse(BaseModel):
    """Result of the active-run check for a (project, kind) scope."""

    run_id: Optional[UUID] = None
    recovered_from_stale: bool = False
    previous_run_id: Optional[UUID] = None


class ProcessNextResponse(BaseModel):
    """Acknowledgement from the internal continuation endpoint."""

    run_id: UUID
    accepted: bool
    message: str


class RecoveryResponse(BaseModel):
    """Result of a stale-run sweep."""

    total_found: int
    resumed_run_ids: List[UUID]
    failed_run_ids: List[UUID]
    checked_at: datetime
    details: Dict[str, Any] = Field(default_factory=dict)
