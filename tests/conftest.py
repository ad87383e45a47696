import os

# must be set before anything under assessgrade is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "testing"
os.environ["GEMINI_API_KEYS"] = ""
os.environ["AI_EQUIVALENCE_ENABLED"] = "false"
os.environ["SECRET_KEY"] = "test-secret"

from contextlib import contextmanager
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from assessgrade.api.deps import get_equivalence, get_generation_pool, get_lock_factory, get_queue
from assessgrade.core.auth import create_token
from assessgrade.core.database import Base, get_db
from assessgrade.core.errors import EvaluationTimeout, ProviderError
from assessgrade.main import app
from assessgrade.models.orm import Assessment, Attempt, Enrollment, GeneratedQuestion, QuestionBlock


def question(question_type, correct_answer, positive_marks=1.0, negative_marks=0.0, id=1):
    return SimpleNamespace(id=id, question_type=question_type, correct_answer=correct_answer,
                           positive_marks=positive_marks, negative_marks=negative_marks)


class FakeProvider:
    def __init__(self, name="fake"):
        self.name = name


class FakePool:
    """Replays canned completions; an exception instance in the script is raised instead."""

    def __init__(self, *script):
        self.script = list(script)
        self.prompts = []
        self.providers = [FakeProvider()]

    def complete(self, prompt, **options):
        self.prompts.append(prompt)
        item = self.script.pop(0) if self.script else ProviderError("script exhausted")
        if isinstance(item, Exception):
            raise item
        return item


class FakeEquivalence:
    def __init__(self, verdict=True, timeout=False):
        self.verdict = verdict
        self.timeout = timeout
        self.calls = []

    def is_equivalent(self, student, correct, language="en"):
        self.calls.append((student, correct, language))
        if self.timeout:
            raise EvaluationTimeout("provider did not answer")
        return self.verdict


class LockRecorder:
    def __init__(self):
        self.acquired = []

    @contextmanager
    def __call__(self, attempt_id):
        self.acquired.append(attempt_id)
        yield


class FakeJob:
    def __init__(self, job_id):
        self.job_id = job_id

    def get_id(self):
        return self.job_id


class FakeQueue:
    def __init__(self):
        self.jobs = []

    def enqueue(self, fn, *args, **kwargs):
        self.jobs.append((fn, args, kwargs))
        return FakeJob(f"job-{len(self.jobs)}")


@pytest.fixture()
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool, future=True)
    import assessgrade.models.orm  # noqa: F401
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture()
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture()
def lock():
    return LockRecorder()


@pytest.fixture()
def pool():
    return FakePool()


@pytest.fixture()
def queue():
    return FakeQueue()


@pytest.fixture()
def client(db, lock, pool, queue):
    def _db():
        yield db
    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_lock_factory] = lambda: lock
    app.dependency_overrides[get_generation_pool] = lambda: pool
    app.dependency_overrides[get_equivalence] = lambda: None
    app.dependency_overrides[get_queue] = lambda: queue
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth(user_id, *roles):
    return {"Authorization": f"Bearer {create_token(user_id, list(roles))}"}


def make_attempt(db, questions, *, student="stu-1", instructor="ins-1", status="in_progress", language="en"):
    """Persist an assessment with one attempt holding the given question dicts."""
    a = Assessment(title="Cell biology", prompt="Organelles", instructor_id=instructor)
    a.blocks.append(QuestionBlock(question_type="multiple_choice", question_count=len(questions) or 1,
                                  duration_per_question=60, num_options=4, positive_marks=1, negative_marks=0))
    db.add(a); db.flush()
    db.add(Enrollment(student_id=student, assessment_id=a.id))
    at = Attempt(assessment_id=a.id, student_id=student, language=language, status=status)
    for i, q in enumerate(questions, start=1):
        data = {"question_text": f"Question {i}", "positive_marks": 1.0, "negative_marks": 0.0, "duration_per_question": 60}
        data.update(q)
        at.questions.append(GeneratedQuestion(question_order=i, **data))
    db.add(at); db.commit()
    return at
