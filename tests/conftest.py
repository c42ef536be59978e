"""Pytest configuration and fixtures."""

from typing import List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import cardflow.models  # noqa: F401
from cardflow.database import Base
from cardflow.engine.errors import ContinuationError
from cardflow.engine.executor import Executor
from cardflow.engine.trigger import ContinuationTrigger
from cardflow.generators.stand_in import StandInGenerator
from cardflow.models.backlog import Epic, Story
from cardflow.models.document import Upload
from cardflow.models.project import Project
from cardflow.schemas.enums import SubjectStatus


class RecordingTrigger(ContinuationTrigger):
    """Records hand-offs instead of sending them."""

    def __init__(self, fail_initial: bool = False):
        self.fail_initial = fail_initial
        self.initial = []
        self.next = []

    def trigger_initial(self, run_id):
        self.initial.append(run_id)
        if self.fail_initial:
            raise ContinuationError("Could not reach continuation endpoint: connection refused")

    def trigger_next(self, run_id):
        self.next.append(run_id)


@pytest.fixture(scope="function")
def test_db():
    """Create a test database for each test."""
    # Use in-memory SQLite for testing
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    yield db

    db.close()
    engine.dispose()


@pytest.fixture(scope="function")
def file_session_factory(tmp_path):
    """Session factory over a file database, for tests with several connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'cardflow-test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)

    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)

    engine.dispose()


@pytest.fixture
def trigger():
    return RecordingTrigger()


@pytest.fixture
def generator():
    return StandInGenerator(sleep=lambda seconds: None)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def executor(test_db, generator, trigger, sleeps):
    return Executor(test_db, generator=generator, trigger=trigger, sleep=sleeps.append)


def make_project(db, name="Checkout revamp") -> Project:
    project = Project(name=name, description="Rework the web checkout")
    db.add(project)
    db.commit()
    return project


def make_epics(db, project, titles: List[str]) -> List[Epic]:
    epics = []
    for index, title in enumerate(titles):
        epic = Epic(
            project_id=project.id,
            code=f"E{index + 1}",
            title=title,
            priority=index + 1,
            generation_status=SubjectStatus.PENDING.value,
        )
        db.add(epic)
        epics.append(epic)
    db.commit()
    return epics


def make_upload(db, project, filename="notes.txt", content="Customers abandon carts at the payment step."):
    upload = Upload(
        project_id=project.id,
        filename=filename,
        raw_content=content,
        content_hash=str(hash((filename, content))),
        word_count=len(content.split()),
        generation_status=SubjectStatus.PENDING.value,
    )
    db.add(upload)
    db.commit()
    return upload


def make_story(db, epic, code="S1", title="Existing story") -> Story:
    story = Story(
        epic_id=epic.id,
        code=code,
        title=title,
        user_story="As a user, I want things so that stuff.",
        generation_status=SubjectStatus.PENDING.value,
    )
    db.add(story)
    db.commit()
    return story


def run_until_done(executor, run_id, max_steps=50):
    """Drive a run through executor steps; returns the step results."""
    results = []
    for _ in range(max_steps):
        result = executor.process_next(run_id)
        results.append(result)
        if result.done:
            return results
    raise AssertionError(f"Run {run_id} did not finish in {max_steps} steps")
