"""Run-level invariants that must hold at every observed point."""

import uuid

import pytest

from cardflow.engine import store
from cardflow.engine.controller import RunController
from cardflow.engine.errors import NoEligibleSubjects, ProjectNotFound, RunAlreadyActive
from cardflow.schemas.enums import ACTIVE_RUN_STATUSES, PacingMode, RunKind, RunPhase, RunStatus
from cardflow.schemas.run import RunConfig

from conftest import make_epics, make_project

TERMINAL_PHASES = (RunPhase.COMPLETED.value, RunPhase.FAILED.value)


def _assert_consistent(run):
    assert run.completed_items + run.failed_items + run.skipped_items <= run.total_items
    is_terminal = run.status not in ACTIVE_RUN_STATUSES
    assert is_terminal == (run.phase in TERMINAL_PHASES)


def test_counters_and_phase_consistent_at_every_step(test_db, executor, trigger):
    project = make_project(test_db)
    make_epics(test_db, project, ["Search", "Checkout [fail]", "Profile", "Billing"])
    run = RunController(test_db, trigger).create_run(
        project.id, RunKind.GENERATE_STORIES, config=RunConfig(pacing=PacingMode.NONE)
    )
    _assert_consistent(store.get_run(test_db, run.id))

    for _ in range(10):
        result = executor.process_next(run.id)
        _assert_consistent(store.get_run(test_db, run.id))
        if result.done:
            break

    final = store.get_run(test_db, run.id)
    assert final.completed_items + final.failed_items + final.skipped_items == final.total_items


def test_one_active_run_per_scope(test_db, trigger):
    project = make_project(test_db)
    make_epics(test_db, project, ["Search"])
    controller = RunController(test_db, trigger)
    first = controller.create_run(project.id, RunKind.GENERATE_STORIES)

    with pytest.raises(RunAlreadyActive) as exc_info:
        controller.create_run(project.id, RunKind.GENERATE_STORIES)

    assert exc_info.value.run_id == first.id


def test_store_enforces_scope_uniqueness(test_db):
    """The database rejects a second active run even past the controller check."""
    project = make_project(test_db)
    first = store.create_run(test_db, project.id, RunKind.GENERATE_STORIES.value, [])

    with pytest.raises(RunAlreadyActive) as exc_info:
        store.create_run(test_db, project.id, RunKind.GENERATE_STORIES.value, [])

    assert exc_info.value.run_id == first.id
    assert len(store.list_runs(test_db, project.id)) == 1


def test_other_kinds_do_not_conflict(test_db):
    project = make_project(test_db)
    store.create_run(test_db, project.id, RunKind.GENERATE_STORIES.value, [])
    store.create_run(test_db, project.id, RunKind.GENERATE_SUBTASKS.value, [])

    assert len(store.list_active_runs(test_db)) == 2


def test_finished_runs_free_the_scope(test_db):
    project = make_project(test_db)
    first = store.create_run(test_db, project.id, RunKind.GENERATE_STORIES.value, [])
    store.update_run(test_db, first.id, status=RunStatus.SUCCEEDED.value, phase=RunPhase.COMPLETED.value)

    second = store.create_run(test_db, project.id, RunKind.GENERATE_STORIES.value, [])

    assert second.id != first.id


def test_create_run_validation(test_db, trigger):
    controller = RunController(test_db, trigger)
    with pytest.raises(ProjectNotFound):
        controller.create_run(uuid.uuid4(), RunKind.GENERATE_STORIES)

    project = make_project(test_db)
    with pytest.raises(NoEligibleSubjects):
        controller.create_run(project.id, RunKind.GENERATE_STORIES)

    # Nothing was created or triggered
    assert store.list_runs(test_db, project.id) == []
    assert trigger.initial == []
