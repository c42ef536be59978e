"""Tests for per-kind subject selection and persistence."""

import uuid

from cardflow.engine.handlers import get_handler
from cardflow.models.backlog import Story
from cardflow.schemas.enums import ConflictPolicy, RunKind, SubjectStatus

from conftest import make_epics, make_project, make_story, make_upload


def test_explicit_selection_keeps_caller_order(test_db):
    project = make_project(test_db)
    other = make_project(test_db, name="Other")
    e1, e2, e3 = make_epics(test_db, project, ["Search", "Checkout", "Profile"])
    (foreign,) = make_epics(test_db, other, ["Elsewhere"])
    handler = get_handler(RunKind.GENERATE_STORIES)

    subjects = handler.select_subjects(
        test_db,
        project.id,
        [e3.id, foreign.id, e1.id, uuid.uuid4(), e3.id],
    )

    assert [s.id for s in subjects] == [e3.id, e1.id]


def test_default_story_selection_orders_by_priority(test_db):
    project = make_project(test_db)
    epics = make_epics(test_db, project, ["Search", "Checkout"])
    epics[0].priority = 5
    test_db.commit()

    subjects = get_handler(RunKind.GENERATE_STORIES).select_subjects(test_db, project.id)

    assert [s.id for s in subjects] == [epics[1].id, epics[0].id]


def test_default_upload_selection_skips_completed(test_db):
    project = make_project(test_db)
    pending = make_upload(test_db, project, "a.txt", "alpha")
    failed = make_upload(test_db, project, "b.txt", "beta")
    done = make_upload(test_db, project, "c.txt", "gamma")
    failed.generation_status = SubjectStatus.FAILED.value
    done.generation_status = SubjectStatus.COMPLETED.value
    test_db.commit()

    subjects = get_handler(RunKind.ANALYZE_DOCUMENTS).select_subjects(test_db, project.id)

    assert {s.id for s in subjects} == {pending.id, failed.id}


def test_subtask_selection_spans_project_epics(test_db):
    project = make_project(test_db)
    e1, e2 = make_epics(test_db, project, ["Search", "Checkout"])
    s2 = make_story(test_db, e2, code="E2-S1")
    s1 = make_story(test_db, e1, code="E1-S1")

    subjects = get_handler(RunKind.GENERATE_SUBTASKS).select_subjects(test_db, project.id)

    assert [s.id for s in subjects] == [s1.id, s2.id]


def test_mark_queued_records_prior_status(test_db):
    project = make_project(test_db)
    (epic,) = make_epics(test_db, project, ["Search"])
    epic.generation_status = SubjectStatus.FAILED.value
    test_db.commit()

    refs = get_handler(RunKind.GENERATE_STORIES).mark_queued([epic])

    assert refs == [(epic.id, "E1: Search", SubjectStatus.FAILED.value)]
    assert epic.generation_status == SubjectStatus.QUEUED.value


def test_repeated_persist_does_not_duplicate(test_db):
    """Saving the same item twice leaves one copy of its output."""

    class FakeRun:
        id = uuid.uuid4()

    project = make_project(test_db)
    (epic,) = make_epics(test_db, project, ["Search"])
    handler = get_handler(RunKind.GENERATE_STORIES)
    artifacts = [{"code": "E1-S1", "title": "Find items", "user_story": "As a shopper..."}]

    handler.persist(test_db, FakeRun, epic, artifacts, ConflictPolicy.SKIP)
    test_db.commit()
    created, replaced = handler.persist(test_db, FakeRun, epic, artifacts, ConflictPolicy.SKIP)
    test_db.commit()

    assert (created, replaced) == (1, 0)
    assert test_db.query(Story).filter(Story.epic_id == epic.id).count() == 1
