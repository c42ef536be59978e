"""Status, phase and option enumerations shared by models, engine and API."""

from enum import Enum


class RunKind(str, Enum):
    """Kinds of batch run."""
    ANALYZE_DOCUMENTS = "ANALYZE_DOCUMENTS"
    GENERATE_STORIES = "GENERATE_STORIES"
    GENERATE_SUBTASKS = "GENERATE_SUBTASKS"


class RunStatus(str, Enum):
    """Run lifecycle states."""
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ACTIVE_RUN_STATUSES = (RunStatus.QUEUED.value, RunStatus.RUNNING.value)


class RunPhase(str, Enum):
    """Fine-grained progress marker within a run."""
    INITIALIZING = "INITIALIZING"
    LOADING = "LOADING"
    PROCESSING = "PROCESSING"
    SAVING = "SAVING"
    FINALIZING = "FINALIZING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class WorkItemStatus(str, Enum):
    """Per-item states within a run."""
    PENDING = "PENDING"
    LOADING = "LOADING"
    PROCESSING = "PROCESSING"
    SAVING = "SAVING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


IN_FLIGHT_ITEM_STATUSES = (
    WorkItemStatus.LOADING.value,
    WorkItemStatus.PROCESSING.value,
    WorkItemStatus.SAVING.value,
)


class SubjectStatus(str, Enum):
    """Generation state of a subject (upload, epic or story)."""
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class GenerationMode(str, Enum):
    COMPACT = "compact"
    STANDARD = "standard"
    DETAILED = "detailed"


class PersonaSet(str, Enum):
    LIGHTWEIGHT = "lightweight"
    CORE = "core"
    FULL = "full"


class PacingMode(str, Enum):
    """Delay inserted between items to stay under provider rate limits."""
    NONE = "none"
    FAST = "fast"
    SAFE = "safe"


class ConflictPolicy(str, Enum):
    """What to do with a subject that already has generated artifacts."""
    SKIP = "skip"
    REPLACE = "replace"
