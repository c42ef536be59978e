"""Run engine exceptions.

Request-validation errors are raised synchronously to the caller before any
run is created or mutated. Item-level errors never leave the executor.
"""

from typing import Optional
from uuid import UUID


class RunEngineError(Exception):
    """Base class for run engine errors."""


class ProjectNotFound(RunEngineError):
    def __init__(self, project_id: UUID):
        super().__init__(f"Project {project_id} not found")
        self.project_id = project_id


class RunNotFound(RunEngineError):
    def __init__(self, run_id: UUID):
        super().__init__(f"Run {run_id} not found")
        self.run_id = run_id


class RunAlreadyActive(RunEngineError):
    """A queued or running run already exists for the (project, kind) scope."""

    def __init__(self, kind: str, run_id: Optional[UUID] = None):
        super().__init__(f"A {kind} run is already in progress for this project")
        self.kind = kind
        self.run_id = run_id


class NoEligibleSubjects(RunEngineError):
    def __init__(self, kind: str):
        super().__init__(f"No eligible subjects found for {kind}")
        self.kind = kind


class NoFailedItems(RunEngineError):
    def __init__(self, run_id: UUID):
        super().__init__(f"Run {run_id} has no failed items to retry")
        self.run_id = run_id


class RunNotActive(RunEngineError):
    def __init__(self, run_id: UUID, status: str):
        super().__init__(f"Run {run_id} is not active (status: {status})")
        self.run_id = run_id
        self.status = status


class ContinuationError(RunEngineError):
    """The hand-off request to the continuation endpoint failed."""
