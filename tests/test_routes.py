"""HTTP route tests."""

import uuid
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from cardflow.config import settings
from cardflow.database import get_db
from cardflow.engine import store
from cardflow.engine.run_log import read_run_log
from cardflow.engine.trigger import SECRET_HEADER
from cardflow.generators.factory import get_generator
from cardflow.generators.stand_in import StandInGenerator
from cardflow.main import app
from cardflow.routes.runs import get_continuation_trigger, get_session_factory
from cardflow.schemas.enums import RunStatus

from conftest import RecordingTrigger

SECRET = {SECRET_HEADER: settings.BATCH_SECRET}


@pytest.fixture
def recording_trigger():
    return RecordingTrigger()


@pytest.fixture
def client(file_session_factory, recording_trigger):
    def override_get_db():
        db = file_session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: file_session_factory
    app.dependency_overrides[get_continuation_trigger] = lambda: recording_trigger
    app.dependency_overrides[get_generator] = lambda: StandInGenerator(sleep=lambda s: None)

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def project_id(client):
    response = client.post("/projects", json={"name": "Checkout revamp"})
    assert response.status_code == 200
    return response.json()["id"]


def _add_upload(client, project_id, content="Shoppers abandon carts at the payment step."):
    return client.post(
        f"/projects/{project_id}/uploads",
        json={"filename": "interview.txt", "content": content},
    )


def _create_run(client, project_id, kind="ANALYZE_DOCUMENTS"):
    return client.post(
        f"/projects/{project_id}/runs",
        json={"kind": kind, "config": {"pacing": "none"}},
    )


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


def test_upload_deduplicates_content(client, project_id):
    first = _add_upload(client, project_id)
    second = _add_upload(client, project_id)

    assert first.status_code == 200
    assert not first.json()["existed"]
    assert second.json()["existed"]
    assert second.json()["id"] == first.json()["id"]
    assert len(client.get(f"/projects/{project_id}/uploads").json()) == 1


def test_upload_text_file(client, project_id):
    response = client.post(
        f"/projects/{project_id}/uploads/file",
        files={"file": ("notes.md", b"# Notes\nCustomers want saved carts.", "text/markdown")},
    )

    assert response.status_code == 200
    assert response.json()["word_count"] == 6


def test_upload_rejects_binary_types(client, project_id):
    response = client.post(
        f"/projects/{project_id}/uploads/file",
        files={"file": ("deck.pdf", b"%PDF-1.4", "application/pdf")},
    )

    assert response.status_code == 400


def test_create_run_and_process_to_completion(client, project_id, recording_trigger, file_session_factory):
    _add_upload(client, project_id)

    response = _create_run(client, project_id)
    assert response.status_code == 200
    run_id = response.json()["run_id"]
    assert response.json()["total_items"] == 1
    assert [str(r) for r in recording_trigger.initial] == [run_id]

    # First hand-off processes the only item, second one finalizes
    for _ in range(2):
        response = client.post(f"/runs/{run_id}/process-next", headers=SECRET)
        assert response.status_code == 202
        assert response.json()["accepted"]

    progress = client.get(f"/runs/{run_id}").json()
    assert progress["status"] == RunStatus.SUCCEEDED.value
    assert progress["completed_items"] == 1
    assert progress["produced_artifact_count"] >= 1
    assert progress["items"][0]["label"] == "interview.txt"

    cards = client.get(f"/projects/{project_id}/cards").json()
    assert len(cards) == progress["produced_artifact_count"]

    log = client.get(f"/runs/{run_id}/log")
    assert log.status_code == 200
    assert "Run finished: SUCCEEDED" in log.text

    # Finished runs are not accepted again
    assert client.post(f"/runs/{run_id}/process-next", headers=SECRET).status_code == 409


def test_process_next_rejects_bad_secret_without_mutation(client, project_id, file_session_factory):
    _add_upload(client, project_id)
    run_id = _create_run(client, project_id).json()["run_id"]

    db = file_session_factory()
    try:
        log_before = read_run_log(db, uuid.UUID(run_id))
    finally:
        db.close()

    response = client.post(f"/runs/{run_id}/process-next", headers={SECRET_HEADER: "wrong"})
    assert response.status_code == 401
    assert client.post(f"/runs/{run_id}/process-next").status_code == 401

    db = file_session_factory()
    try:
        run = store.get_run(db, uuid.UUID(run_id))
        assert run.status == RunStatus.QUEUED.value
        assert run.started_at is None
        assert read_run_log(db, run.id) == log_before
    finally:
        db.close()


def test_process_next_unknown_run(client):
    response = client.post(f"/runs/{uuid.uuid4()}/process-next", headers=SECRET)
    assert response.status_code == 404


def test_duplicate_active_run_conflicts(client, project_id):
    _add_upload(client, project_id)
    first = _create_run(client, project_id).json()["run_id"]

    response = _create_run(client, project_id)

    assert response.status_code == 409
    assert response.json()["detail"]["run_id"] == first

    active = client.get(f"/projects/{project_id}/active-run", params={"kind": "ANALYZE_DOCUMENTS"}).json()
    assert active["run_id"] == first


def test_create_run_without_subjects(client, project_id):
    response = _create_run(client, project_id, kind="GENERATE_STORIES")
    assert response.status_code == 400


def test_create_run_unknown_project(client):
    response = _create_run(client, str(uuid.uuid4()))
    assert response.status_code == 404


def test_initial_trigger_failure_returns_502(client, project_id, recording_trigger):
    _add_upload(client, project_id)
    recording_trigger.fail_initial = True

    response = _create_run(client, project_id)

    assert response.status_code == 502
    (run,) = client.get(f"/projects/{project_id}/runs").json()
    assert run["status"] == RunStatus.FAILED.value


def test_cancel_then_process_next(client, project_id):
    _add_upload(client, project_id)
    run_id = _create_run(client, project_id).json()["run_id"]

    assert client.post(f"/runs/{run_id}/cancel").status_code == 200
    assert client.post(f"/runs/{run_id}/cancel").status_code == 409

    # Cancelled runs are still accepted so cleanup can run
    assert client.post(f"/runs/{run_id}/process-next", headers=SECRET).status_code == 202

    progress = client.get(f"/runs/{run_id}").json()
    assert progress["status"] == RunStatus.CANCELLED.value
    assert progress["completed_at"] is not None
    uploads = client.get(f"/projects/{project_id}/uploads").json()
    assert uploads[0]["generation_status"] == "PENDING"


def test_retry_failed_without_failures(client, project_id):
    _add_upload(client, project_id)
    run_id = _create_run(client, project_id).json()["run_id"]
    for _ in range(2):
        client.post(f"/runs/{run_id}/process-next", headers=SECRET)

    response = client.post(f"/runs/{run_id}/retry-failed")

    assert response.status_code == 400


def test_retry_failed_creates_scoped_run(client, project_id, recording_trigger):
    _add_upload(client, project_id, content="All good here.")
    client.post(
        f"/projects/{project_id}/uploads",
        json={"filename": "broken [fail].txt", "content": "This one breaks."},
    )
    run_id = _create_run(client, project_id).json()["run_id"]
    for _ in range(3):
        client.post(f"/runs/{run_id}/process-next", headers=SECRET)
    assert client.get(f"/runs/{run_id}").json()["status"] == RunStatus.PARTIAL.value

    response = client.post(f"/runs/{run_id}/retry-failed")

    assert response.status_code == 200
    retry = client.get(f"/runs/{response.json()['run_id']}").json()
    assert retry["retry_of_run_id"] == run_id
    assert [i["label"] for i in retry["items"]] == ["broken [fail].txt"]


def test_unknown_run_progress(client):
    assert client.get(f"/runs/{uuid.uuid4()}").status_code == 404
    assert client.get(f"/runs/{uuid.uuid4()}/log").status_code == 404


def test_cron_sweep(client, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "")
    response = client.get("/cron/recover-stale-runs")
    assert response.status_code == 200
    assert response.json()["total_found"] == 0

    monkeypatch.setattr(settings, "CRON_SECRET", "cron-s3cret")
    assert client.get("/cron/recover-stale-runs").status_code == 401
    response = client.get(
        "/cron/recover-stale-runs",
        headers={"Authorization": "Bearer cron-s3cret"},
    )
    assert response.status_code == 200


def test_cron_sweep_resumes_stale_run(client, project_id, recording_trigger, file_session_factory, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "")
    _add_upload(client, project_id)
    run_id = _create_run(client, project_id).json()["run_id"]

    db = file_session_factory()
    try:
        then = datetime.utcnow() - timedelta(minutes=10)
        store.update_run(db, uuid.UUID(run_id), created_at=then, heartbeat_at=then)
    finally:
        db.close()
    recording_trigger.initial.clear()

    response = client.get("/cron/recover-stale-runs")

    assert response.status_code == 200
    assert response.json()["total_found"] == 1
    assert response.json()["resumed_run_ids"] == [run_id]
    assert [str(r) for r in recording_trigger.initial] == [run_id]
    assert client.get(f"/runs/{run_id}").json()["status"] == RunStatus.QUEUED.value
