"""Tests for stale-run detection and reclamation."""

from datetime import datetime, timedelta

from cardflow.engine import monitor, store
from cardflow.engine.controller import RunController
from cardflow.engine.run_log import read_run_log
from cardflow.models.backlog import Epic
from cardflow.models.document import Upload
from cardflow.models.run import Run
from cardflow.schemas.enums import (
    PacingMode,
    RunKind,
    RunPhase,
    RunStatus,
    SubjectStatus,
    WorkItemStatus,
)
from cardflow.schemas.run import RunConfig

from conftest import make_epics, make_project, make_upload, run_until_done

NO_PACING = RunConfig(pacing=PacingMode.NONE)


def _age(db, run_id, seconds):
    then = datetime.utcnow() - timedelta(seconds=seconds)
    store.update_run(db, run_id, created_at=then, started_at=then, heartbeat_at=then)


def test_last_activity_prefers_latest_stamp(test_db, trigger):
    project = make_project(test_db)
    make_epics(test_db, project, ["Search"])
    run = RunController(test_db, trigger).create_run(project.id, RunKind.GENERATE_STORIES)
    now = datetime.utcnow()
    store.update_run(
        test_db,
        run.id,
        created_at=now - timedelta(minutes=10),
        started_at=now - timedelta(minutes=9),
        heartbeat_at=now - timedelta(seconds=5),
    )

    run = store.get_run(test_db, run.id)
    assert monitor.last_activity_at(run) == run.heartbeat_at
    assert not monitor.is_stale(run)


def test_stale_run_reclaimed_on_progress_read(test_db, trigger):
    project = make_project(test_db)
    epics = make_epics(test_db, project, ["Search", "Checkout"])
    controller = RunController(test_db, trigger)
    run = controller.create_run(project.id, RunKind.GENERATE_STORIES, config=NO_PACING)
    _age(test_db, run.id, 600)

    progress = controller.get_progress(run.id)

    assert progress.recovered_from_stale
    assert progress.previous_run_id == run.id
    assert progress.status == RunStatus.FAILED.value
    assert progress.phase == RunPhase.FAILED.value
    assert progress.error == "stale"
    for epic in epics:
        assert test_db.get(Epic, epic.id).generation_status == SubjectStatus.PENDING.value
    assert "(stale)" in read_run_log(test_db, run.id)

    # The scope is free again
    second = controller.create_run(project.id, RunKind.GENERATE_STORIES, config=NO_PACING)
    assert second.id != run.id


def test_active_run_check_reclaims_stale_run(test_db, trigger):
    project = make_project(test_db)
    make_epics(test_db, project, ["Search"])
    controller = RunController(test_db, trigger)
    run = controller.create_run(project.id, RunKind.GENERATE_STORIES)
    _age(test_db, run.id, 600)

    check = controller.get_active_run(project.id, RunKind.GENERATE_STORIES)

    assert check.run_id is None
    assert check.recovered_from_stale
    assert check.previous_run_id == run.id


def test_fresh_active_run_is_reported(test_db, trigger):
    project = make_project(test_db)
    make_epics(test_db, project, ["Search"])
    controller = RunController(test_db, trigger)
    run = controller.create_run(project.id, RunKind.GENERATE_STORIES)

    check = controller.get_active_run(project.id, RunKind.GENERATE_STORIES)

    assert check.run_id == run.id
    assert not check.recovered_from_stale
    assert not controller.get_progress(run.id).recovered_from_stale


def test_reclaim_happens_once(test_db, trigger):
    project = make_project(test_db)
    make_epics(test_db, project, ["Search"])
    run = RunController(test_db, trigger).create_run(project.id, RunKind.GENERATE_STORIES)
    _age(test_db, run.id, 600)
    stale = store.get_run(test_db, run.id)

    assert monitor.reclaim_stale_run(test_db, stale)
    assert not monitor.reclaim_stale_run(test_db, stale)


def _orphan_first_item(db, run_id):
    """Leave the first item mid-flight, as a crashed invocation would."""
    item = store.next_pending_item(db, run_id)
    store.transition_run(db, run_id, [RunStatus.QUEUED.value], status=RunStatus.RUNNING.value)
    assert store.claim_work_item(db, item.id, WorkItemStatus.PROCESSING.value)
    return item


def test_reclaim_frees_subject_of_orphaned_item(test_db, trigger):
    project = make_project(test_db)
    upload = make_upload(test_db, project)
    controller = RunController(test_db, trigger)
    run = controller.create_run(project.id, RunKind.ANALYZE_DOCUMENTS, config=NO_PACING)
    item = _orphan_first_item(test_db, run.id)
    _age(test_db, run.id, 600)

    progress = controller.get_progress(run.id)

    assert progress.status == RunStatus.FAILED.value
    assert progress.recovered_from_stale
    assert progress.current_label is None
    assert [i.status for i in progress.items] == [WorkItemStatus.FAILED.value]
    assert progress.items[0].error == "stale"
    assert progress.failed_items == 1
    assert test_db.get(Upload, upload.id).generation_status == SubjectStatus.PENDING.value

    # The upload is picked up again by default
    second = controller.create_run(project.id, RunKind.ANALYZE_DOCUMENTS, config=NO_PACING)
    assert [i.subject_id for i in store.list_items(test_db, second.id)] == [item.subject_id]


def test_late_outcome_of_released_item_is_dropped(test_db, trigger):
    project = make_project(test_db)
    make_upload(test_db, project)
    controller = RunController(test_db, trigger)
    run = controller.create_run(project.id, RunKind.ANALYZE_DOCUMENTS, config=NO_PACING)
    item = _orphan_first_item(test_db, run.id)
    _age(test_db, run.id, 600)
    controller.get_progress(run.id)

    recorded = store.record_item_outcome(test_db, item, WorkItemStatus.COMPLETED.value, duration_ms=10)

    assert not recorded
    run = store.get_run(test_db, run.id)
    assert (run.completed_items, run.failed_items) == (0, 1)


def test_sweep_resumes_stale_runs(test_db, trigger):
    controller = RunController(test_db, trigger)
    stale_ids = []
    for name in ("Alpha", "Beta"):
        project = make_project(test_db, name=name)
        make_epics(test_db, project, ["Search"])
        run = controller.create_run(project.id, RunKind.GENERATE_STORIES, config=NO_PACING)
        _age(test_db, run.id, 600)
        stale_ids.append(run.id)

    fresh_project = make_project(test_db, name="Gamma")
    make_epics(test_db, fresh_project, ["Search"])
    fresh = controller.create_run(fresh_project.id, RunKind.GENERATE_STORIES, config=NO_PACING)
    trigger.initial.clear()

    result = monitor.recover_all_stale_runs(test_db, trigger)

    assert result.total_found == 2
    assert sorted(result.resumed_run_ids) == sorted(stale_ids)
    assert result.failed_run_ids == []
    assert sorted(trigger.initial) == sorted(stale_ids)
    assert store.get_run(test_db, fresh.id).status == RunStatus.QUEUED.value
    for run_id in stale_ids:
        assert not monitor.is_stale(store.get_run(test_db, run_id))


def test_sweep_resets_orphaned_item_and_run_completes(test_db, executor, trigger):
    project = make_project(test_db)
    epics = make_epics(test_db, project, ["Search", "Checkout"])
    run = RunController(test_db, trigger).create_run(project.id, RunKind.GENERATE_STORIES, config=NO_PACING)
    item = _orphan_first_item(test_db, run.id)
    _age(test_db, run.id, 600)

    result = monitor.recover_all_stale_runs(test_db, trigger)

    assert result.resumed_run_ids == [run.id]
    assert test_db.get(Epic, item.subject_id).generation_status == SubjectStatus.QUEUED.value
    assert store.count_items(test_db, run.id, [WorkItemStatus.PENDING.value]) == 2
    assert "Stale run resumed: 1 in-flight item(s) reset, 2 pending" in read_run_log(test_db, run.id)

    run_until_done(executor, run.id)

    run = store.get_run(test_db, run.id)
    assert run.status == RunStatus.SUCCEEDED.value
    assert run.completed_items == 2
    for epic in epics:
        assert test_db.get(Epic, epic.id).generation_status == SubjectStatus.COMPLETED.value


def test_sweep_fails_run_when_resume_is_not_accepted(test_db, trigger):
    project = make_project(test_db)
    epics = make_epics(test_db, project, ["Search"])
    run = RunController(test_db, trigger).create_run(project.id, RunKind.GENERATE_STORIES, config=NO_PACING)
    _orphan_first_item(test_db, run.id)
    _age(test_db, run.id, 600)
    trigger.fail_initial = True

    result = monitor.recover_all_stale_runs(test_db, trigger)

    assert result.resumed_run_ids == []
    assert result.failed_run_ids == [run.id]
    run = store.get_run(test_db, run.id)
    assert run.status == RunStatus.FAILED.value
    assert run.error_msg == "stale"
    assert test_db.get(Epic, epics[0].id).generation_status == SubjectStatus.PENDING.value
    assert "Resume failed" in read_run_log(test_db, run.id)
    assert "no activity for 6" in read_run_log(test_db, run.id)


def test_sweep_skips_run_touched_since_read(test_db, trigger):
    project = make_project(test_db)
    make_epics(test_db, project, ["Search"])
    run = RunController(test_db, trigger).create_run(project.id, RunKind.GENERATE_STORIES, config=NO_PACING)
    _age(test_db, run.id, 600)
    seen = Run(id=run.id, heartbeat_at=store.get_run(test_db, run.id).heartbeat_at)
    store.touch_heartbeat(test_db, run.id)

    assert not store.claim_stale_run(test_db, seen)
    assert store.claim_stale_run(test_db, store.get_run(test_db, run.id))
