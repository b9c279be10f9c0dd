"""Tests for the diagnostic session state machine."""

import asyncio

import pytest
from sqlalchemy import func, select

from conftest import OWNER, FakeQuestionProvider, answer_questions
from neuromath.domain import Blocker, Severity, Stage
from neuromath.errors import (
    InputValidationError,
    InvalidStateError,
    PersistenceError,
    SessionBusyError,
    UpstreamRateLimited,
    UpstreamUnavailable,
)
from neuromath.models import BlockerDetected, DiagnosticResponse, DiagnosticStatus, DiagnosticTest, Student
from neuromath.session import (
    CONFIRMATORY_LENGTH,
    MAIN_TEST_LENGTH,
    DiagnosticEngine,
    DiagnosticSession,
    current_question,
    is_stage_complete,
    progress,
)
from neuromath.store import DiagnosticStore

WORKING_MEMORY_MAIN = ["Working Memory"] * 4 + [
    "Number Sense",
    "Place Value",
    "Basic Arithmetic",
    "Pattern Recognition",
    "Spatial Reasoning",
    "Number Sense",
]


def _count(db, model):
    return db.scalar(select(func.count()).select_from(model))


async def _enrolled(engine, session, age=8, name="Ada"):
    await engine.submit_age(session, age)
    await engine.enroll(session, name)
    return session


class TestAgeAndEnrollment:
    @pytest.mark.asyncio
    async def test_age_moves_to_enrolling(self, engine, session):
        await engine.submit_age(session, 5)

        assert session.stage == Stage.ENROLLING
        assert session.age == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("age", [4, 0, -3, True])
    async def test_invalid_age_is_rejected_and_stage_kept(self, engine, session, age):
        with pytest.raises(InputValidationError):
            await engine.submit_age(session, age)

        assert session.stage == Stage.COLLECTING_AGE
        assert session.age is None

    @pytest.mark.asyncio
    async def test_enroll_loads_main_test(self, engine, session, question_provider, db_session):
        await _enrolled(engine, session)

        assert session.stage == Stage.MAIN_TEST
        assert session.student_name == "Ada"
        assert len(session.questions) == MAIN_TEST_LENGTH
        assert session.cursor == 0
        assert session.responses == []
        assert question_provider.calls == [{"age": 8, "count": 10, "error_history": [], "focus": None}]
        test = db_session.get(DiagnosticTest, session.test_id)
        assert test.status == DiagnosticStatus.IN_PROGRESS
        assert test.age_at_test == 8
        assert test.student.name == "Ada"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "   "])
    async def test_empty_name_is_rejected(self, engine, session, question_provider, name):
        await engine.submit_age(session, 9)

        with pytest.raises(InputValidationError):
            await engine.enroll(session, name)

        assert session.stage == Stage.ENROLLING
        assert question_provider.calls == []

    @pytest.mark.asyncio
    async def test_enroll_before_age_is_invalid_state(self, engine, session):
        with pytest.raises(InvalidStateError):
            await engine.enroll(session, "Ada")

    @pytest.mark.asyncio
    async def test_rate_limited_enrollment_is_retryable(self, engine, session, question_provider, db_session):
        await engine.submit_age(session, 7)
        question_provider.failures.append(UpstreamRateLimited("slow down"))

        with pytest.raises(UpstreamRateLimited):
            await engine.enroll(session, "Ada")

        assert session.stage == Stage.ENROLLING
        assert session.questions == []
        assert _count(db_session, Student) == 0

        await engine.enroll(session, "Ada")

        assert session.stage == Stage.MAIN_TEST
        assert len(session.questions) == MAIN_TEST_LENGTH
        assert question_provider.calls[0] == question_provider.calls[1]
        assert _count(db_session, Student) == 1

    @pytest.mark.asyncio
    async def test_partial_batch_is_rejected(self, engine, session, question_provider, db_session):
        await engine.submit_age(session, 7)
        question_provider.short_by = 1

        with pytest.raises(UpstreamUnavailable):
            await engine.enroll(session, "Ada")

        assert session.stage == Stage.ENROLLING
        assert _count(db_session, DiagnosticTest) == 0


class TestAnswers:
    @pytest.mark.asyncio
    async def test_answer_creates_response_and_advances_cursor(self, engine, session):
        await _enrolled(engine, session)
        first = current_question(session)

        await engine.submit_answer(session, f"  {first.reference_answer.upper()} ")

        assert session.cursor == 1
        assert len(session.responses) == 1
        response = session.responses[0]
        assert response.question_index == 0
        assert response.is_correct is True
        assert response.construct == first.construct
        assert response.difficulty == first.difficulty

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answer", ["", "   ", "\n"])
    async def test_blank_answer_never_creates_response(self, engine, session, answer):
        await _enrolled(engine, session)

        with pytest.raises(InputValidationError):
            await engine.submit_answer(session, answer)

        assert session.responses == []
        assert session.cursor == 0

    @pytest.mark.asyncio
    async def test_answer_outside_test_stage_is_invalid(self, engine, session):
        with pytest.raises(InvalidStateError):
            await engine.submit_answer(session, "7")

        await engine.submit_age(session, 8)
        with pytest.raises(InvalidStateError):
            await engine.submit_answer(session, "7")

    @pytest.mark.asyncio
    async def test_progress_is_per_stage(self, engine, session):
        await _enrolled(engine, session)
        await answer_questions(engine, session, [True] * 4)

        p = progress(session)
        assert (p.stage, p.answered, p.total) == (Stage.MAIN_TEST, 4, MAIN_TEST_LENGTH)
        assert p.percent == pytest.approx(40.0)


class TestStageFlow:
    @pytest.mark.asyncio
    async def test_all_correct_skips_confirmatory(self, engine, session, question_provider, roadmap_provider, db_session):
        await _enrolled(engine, session)

        await answer_questions(engine, session, [True] * MAIN_TEST_LENGTH)

        assert session.stage == Stage.COMPLETE
        assert session.blockers == []
        assert session.severity == Severity.NONE
        assert session.roadmap is not None
        assert len(question_provider.calls) == 1
        assert roadmap_provider.calls[0]["blockers"] == []
        test = db_session.get(DiagnosticTest, session.test_id)
        assert test.status == DiagnosticStatus.COMPLETED
        assert test.overall_severity == Severity.NONE
        assert test.completed_at is not None
        assert test.roadmap.roadmap_data["summary"]
        assert _count(db_session, DiagnosticResponse) == 10
        assert _count(db_session, BlockerDetected) == 0

    @pytest.mark.asyncio
    async def test_working_memory_scenario(self, store, roadmap_provider, db_session):
        provider = FakeQuestionProvider(WORKING_MEMORY_MAIN)
        engine = DiagnosticEngine(provider, roadmap_provider, store)
        session = await _enrolled(engine, _new_session())

        await answer_questions(engine, session, [False] * 4 + [True] * 6)

        assert session.stage == Stage.CONFIRMATORY_TEST
        assert session.blockers == [Blocker("Working Memory", 4, confirmed=False)]
        assert provider.calls[-1] == {
            "age": 8,
            "count": CONFIRMATORY_LENGTH,
            "error_history": ["Working Memory"],
            "focus": "Working Memory",
        }
        assert len(session.questions) == MAIN_TEST_LENGTH + CONFIRMATORY_LENGTH
        assert current_question(session).construct == "Working Memory"
        p = progress(session)
        assert (p.answered, p.total, p.percent) == (0, CONFIRMATORY_LENGTH, 0.0)

        await answer_questions(engine, session, [False, True, False, True, True])

        assert session.stage == Stage.COMPLETE
        assert len(session.responses) == 15
        assert [r.question_index for r in session.responses] == list(range(15))
        assert sum(1 for r in session.responses if not r.is_correct) == 6
        assert session.severity == Severity.MILD
        assert session.blockers == [Blocker("Working Memory", 4, confirmed=True)]
        assert len(roadmap_provider.calls[0]["responses"]) == 15
        rows = db_session.scalars(select(BlockerDetected)).all()
        assert [(r.blocker_name, r.error_count, r.is_confirmed) for r in rows] == [("Working Memory", 4, True)]
        assert _count(db_session, DiagnosticResponse) == 15

    @pytest.mark.asyncio
    async def test_provider_severity_never_replaces_computed_severity(self, engine, session, db_session):
        await _enrolled(engine, session)
        await answer_questions(engine, session, [True] * MAIN_TEST_LENGTH)

        # Fake roadmap claims "severe"
        assert session.roadmap.overall_severity == Severity.SEVERE
        assert session.severity == Severity.NONE
        assert db_session.get(DiagnosticTest, session.test_id).overall_severity == Severity.NONE

    @pytest.mark.asyncio
    async def test_all_blockers_confirmed_at_completion(self, store, roadmap_provider):
        constructs = ["Place Value", "Number Sense"] * 5
        provider = FakeQuestionProvider(constructs)
        engine = DiagnosticEngine(provider, roadmap_provider, store)
        session = await _enrolled(engine, _new_session())

        await answer_questions(engine, session, [False] * 4 + [True] * 6)

        assert provider.calls[-1]["focus"] == "Place Value"
        await answer_questions(engine, session, [True] * CONFIRMATORY_LENGTH)

        assert session.stage == Stage.COMPLETE
        assert {b.construct for b in session.blockers} == {"Place Value", "Number Sense"}
        assert all(b.confirmed for b in session.blockers)
        assert session.severity == Severity.MODERATE

    @pytest.mark.asyncio
    async def test_completed_session_is_immutable(self, engine, session):
        await _enrolled(engine, session)
        await answer_questions(engine, session, [True] * MAIN_TEST_LENGTH)

        with pytest.raises(InvalidStateError):
            await engine.submit_answer(session, "7")
        with pytest.raises(InvalidStateError):
            await engine.advance(session)
        with pytest.raises(InvalidStateError):
            await engine.submit_age(session, 9)


class TestRecovery:
    @pytest.mark.asyncio
    async def test_rate_limited_confirmatory_fetch_can_be_advanced(self, store, roadmap_provider, db_session):
        provider = FakeQuestionProvider(WORKING_MEMORY_MAIN)
        engine = DiagnosticEngine(provider, roadmap_provider, store)
        session = await _enrolled(engine, _new_session())
        await answer_questions(engine, session, [False] * 4 + [True] * 5)
        provider.failures.append(UpstreamRateLimited("slow down"))

        with pytest.raises(UpstreamRateLimited):
            await answer_questions(engine, session, [True])

        assert session.stage == Stage.MAIN_TEST
        assert is_stage_complete(session)
        assert current_question(session) is None
        assert _count(db_session, DiagnosticResponse) == 10
        with pytest.raises(InvalidStateError) as exc_info:
            await engine.submit_answer(session, "7")
        assert f"/diagnostic/sessions/{session.session_id}/advance" in exc_info.value.message
        assert len(session.responses) == 10

        await engine.advance(session)

        assert session.stage == Stage.CONFIRMATORY_TEST
        assert provider.calls[-1] == provider.calls[-2]
        assert _count(db_session, DiagnosticResponse) == 10
        assert _count(db_session, BlockerDetected) == 1

    @pytest.mark.asyncio
    async def test_roadmap_failure_leaves_session_retryable(self, engine, session, roadmap_provider, db_session):
        await _enrolled(engine, session)
        roadmap_provider.failures.append(UpstreamUnavailable("gateway down"))

        with pytest.raises(UpstreamUnavailable):
            await answer_questions(engine, session, [True] * MAIN_TEST_LENGTH)

        assert session.stage == Stage.MAIN_TEST
        assert session.severity is None
        assert db_session.get(DiagnosticTest, session.test_id).status == DiagnosticStatus.IN_PROGRESS

        await engine.advance(session)

        assert session.stage == Stage.COMPLETE
        assert len(roadmap_provider.calls) == 2

    @pytest.mark.asyncio
    async def test_failed_response_persistence_blocks_transition(
        self, question_provider, roadmap_provider, db_session
    ):
        store = FlakyStore(db_session, OWNER)
        engine = DiagnosticEngine(question_provider, roadmap_provider, store)
        session = await _enrolled(engine, _new_session())
        store.fail_next_save = True

        with pytest.raises(PersistenceError):
            await answer_questions(engine, session, [True] * MAIN_TEST_LENGTH)

        assert session.stage == Stage.MAIN_TEST
        assert len(session.responses) == MAIN_TEST_LENGTH
        assert roadmap_provider.calls == []

        await engine.advance(session)

        assert session.stage == Stage.COMPLETE
        assert _count(db_session, DiagnosticResponse) == MAIN_TEST_LENGTH

    @pytest.mark.asyncio
    async def test_advance_with_unanswered_questions_is_invalid(self, engine, session):
        await _enrolled(engine, session)

        with pytest.raises(InvalidStateError):
            await engine.advance(session)


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_overlapping_mutation_is_rejected_as_busy(self, store, roadmap_provider):
        provider = BlockingQuestionProvider()
        engine = DiagnosticEngine(provider, roadmap_provider, store)
        session = _new_session()
        await engine.submit_age(session, 8)

        enrolling = asyncio.create_task(engine.enroll(session, "Ada"))
        await provider.started.wait()

        with pytest.raises(SessionBusyError):
            await engine.enroll(session, "Ada")

        provider.release.set()
        await enrolling
        assert session.stage == Stage.MAIN_TEST
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_independent_sessions_run_in_parallel(self, store, roadmap_provider):
        provider = FakeQuestionProvider()
        engine = DiagnosticEngine(provider, roadmap_provider, store)
        first, second = _new_session("a"), _new_session("b")
        await asyncio.gather(engine.submit_age(first, 6), engine.submit_age(second, 11))
        await asyncio.gather(engine.enroll(first, "A"), engine.enroll(second, "B"))

        assert first.stage == second.stage == Stage.MAIN_TEST
        assert first.test_id != second.test_id


def _new_session(session_id="session-x"):
    return DiagnosticSession(session_id=session_id, owner=OWNER)


class FlakyStore(DiagnosticStore):
    fail_next_save = False

    def save_responses(self, test_id, responses):
        if self.fail_next_save:
            self.fail_next_save = False
            raise PersistenceError("Could not save responses")
        super().save_responses(test_id, responses)


class BlockingQuestionProvider(FakeQuestionProvider):
    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_batch(self, age, count, *, error_history=(), focus=None):
        self.started.set()
        await self.release.wait()
        return await super().fetch_batch(age, count, error_history=error_history, focus=focus)
