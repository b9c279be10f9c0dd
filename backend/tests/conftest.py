"""
Pytest configuration and shared fixtures for testing.
"""
import os

# Settings are read at import time, so configure the environment first
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LLM_API_KEY", "test-llm-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

from typing import Callable, Dict, List, Optional, Sequence  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from neuromath.db import Base  # noqa: E402
from neuromath.domain import Blocker, Question, Response, Roadmap  # noqa: E402
from neuromath.models import AuthUser  # noqa: E402
from neuromath.session import DiagnosticEngine, DiagnosticSession, current_question  # noqa: E402
from neuromath.store import DiagnosticStore  # noqa: E402

OWNER = "teacher1"

DEFAULT_MAIN_CONSTRUCTS = [
    "Number Sense",
    "Place Value",
    "Basic Arithmetic",
    "Pattern Recognition",
    "Spatial Reasoning",
    "Working Memory",
    "Number Sense",
    "Place Value",
    "Basic Arithmetic",
    "Pattern Recognition",
]


class FakeQuestionProvider:
    """Question batch provider that builds deterministic batches in-process.

    ``main_constructs`` sets the construct of each main-test question; focused
    (confirmatory) batches use the focus construct. Exceptions queued in
    ``failures`` are raised one per call before any batch is produced.
    """

    def __init__(self, main_constructs: Optional[Sequence[str]] = None):
        self.main_constructs = list(main_constructs or DEFAULT_MAIN_CONSTRUCTS)
        self.failures: List[Exception] = []
        self.short_by = 0
        self.calls: List[Dict] = []

    async def fetch_batch(self, age, count, *, error_history=(), focus=None):
        self.calls.append({"age": age, "count": count, "error_history": list(error_history), "focus": focus})
        if self.failures:
            raise self.failures.pop(0)
        offset = 0 if focus is None else 100
        questions = []
        for i in range(count - self.short_by):
            construct = focus or self.main_constructs[i % len(self.main_constructs)]
            questions.append(
                Question(
                    text=f"Question {offset + i}",
                    reference_answer=f"Answer {offset + i}",
                    construct=construct,
                    difficulty=(i % 5) + 1,
                )
            )
        return questions


def build_roadmap(severity: str = "mild") -> Roadmap:
    return Roadmap.model_validate(
        {
            "overallSeverity": severity,
            "summary": "Focused practice on the detected areas.",
            "steps": [
                {
                    "stepNumber": n,
                    "title": f"Step {n}",
                    "executionPlan": f"Week {n}: daily 15 minute sessions",
                    "resources": [f"Worksheet {n}"],
                }
                for n in range(1, 6)
            ],
        }
    )


class FakeRoadmapProvider:
    def __init__(self):
        self.failures: List[Exception] = []
        self.calls: List[Dict] = []

    async def fetch_roadmap(self, age, blockers, responses):
        self.calls.append({"age": age, "blockers": list(blockers), "responses": list(responses)})
        if self.failures:
            raise self.failures.pop(0)
        # Deliberately disagrees with any computed severity
        return build_roadmap("severe")


def make_response(index: int, construct: str, is_correct: bool) -> Response:
    return Response(
        question_index=index,
        question_text=f"Question {index}",
        student_answer="x",
        reference_answer="x" if is_correct else "y",
        is_correct=is_correct,
        construct=construct,
        difficulty=1,
    )


async def answer_questions(engine: DiagnosticEngine, session: DiagnosticSession, pattern: Sequence[bool]):
    """Answer the pending questions, correctly where ``pattern`` is True."""
    for correct in pattern:
        question = current_question(session)
        assert question is not None
        await engine.submit_answer(session, question.reference_answer if correct else "wrong")
    return session


@pytest.fixture
def db_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    db.add(AuthUser(username=OWNER, password_hash="not-a-real-hash"))
    db.commit()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def store(db_session):
    return DiagnosticStore(db_session, OWNER)


@pytest.fixture
def question_provider():
    return FakeQuestionProvider()


@pytest.fixture
def roadmap_provider():
    return FakeRoadmapProvider()


@pytest.fixture
def engine(question_provider, roadmap_provider, store):
    return DiagnosticEngine(question_provider, roadmap_provider, store)


@pytest.fixture
def session():
    return DiagnosticSession(session_id="session-1", owner=OWNER)


@pytest.fixture
def response_factory() -> Callable[[int, str, bool], Response]:
    return make_response


@pytest.fixture
def blocker_factory() -> Callable[..., Blocker]:
    def _make(construct: str = "Number Sense", error_count: int = 2) -> Blocker:
        return Blocker(construct=construct, error_count=error_count)

    return _make

