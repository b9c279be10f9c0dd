"""
Diagnostic session state machine.

Stages:
    collecting_age -> enrolling -> main_test -> [confirmatory_test] -> complete

The confirmatory stage only runs when the main test produced at least one
blocker. Each transition takes the session explicitly and either returns it
(advanced) or raises a DiagnosticError with the session left in its last
stable stage, so the same call can be replayed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence

from .blockers import detect, primary_blocker
from .domain import Blocker, Question, Response, Roadmap, Severity, Stage
from .errors import InputValidationError, InvalidStateError, SessionBusyError, UpstreamUnavailable
from .evaluator import evaluate, is_blank
from .providers import QuestionBatchProvider, RoadmapProvider
from .severity import score
from .store import DiagnosticStore

logger = logging.getLogger(__name__)

MIN_AGE = 5
MAIN_TEST_LENGTH = 10
CONFIRMATORY_LENGTH = 5

STAGE_LENGTHS: Dict[Stage, int] = {
    Stage.MAIN_TEST: MAIN_TEST_LENGTH,
    Stage.CONFIRMATORY_TEST: CONFIRMATORY_LENGTH,
}
# Index of the first response belonging to each stage; numbering is continuous
STAGE_OFFSETS: Dict[Stage, int] = {
    Stage.MAIN_TEST: 0,
    Stage.CONFIRMATORY_TEST: MAIN_TEST_LENGTH,
}
TEST_STAGES = (Stage.MAIN_TEST, Stage.CONFIRMATORY_TEST)


class DiagnosticSession:
    def __init__(self, session_id: str, owner: str) -> None:
        self.session_id = session_id
        self.owner = owner
        self.stage = Stage.COLLECTING_AGE
        self.age: Optional[int] = None
        self.student_name: Optional[str] = None
        self.student_id: Optional[str] = None
        self.test_id: Optional[str] = None
        self.questions: List[Question] = []
        self.cursor = 0
        self.responses: List[Response] = []
        self.blockers: Optional[List[Blocker]] = None  # None until detection has run
        self.severity: Optional[Severity] = None
        self.roadmap: Optional[Roadmap] = None
        self.persisted_count = 0
        self.pending_roadmap: Optional[Roadmap] = None
        self.lock = asyncio.Lock()

    @property
    def is_complete(self) -> bool:
        return self.stage == Stage.COMPLETE


@dataclass(frozen=True)
class StageProgress:
    stage: Stage
    answered: int
    total: int

    @property
    def percent(self) -> float:
        if not self.total:
            return 0.0
        return self.answered / self.total * 100


def responses_in_stage(session: DiagnosticSession) -> int:
    if session.stage not in TEST_STAGES:
        return 0
    return len(session.responses) - STAGE_OFFSETS[session.stage]


def is_stage_complete(session: DiagnosticSession) -> bool:
    """True once the current test stage has all of its responses."""
    if session.stage not in TEST_STAGES:
        return False
    return responses_in_stage(session) >= STAGE_LENGTHS[session.stage]


def progress(session: DiagnosticSession) -> StageProgress:
    """Per-stage progress; main and confirmatory tests each run 0-100 on their own."""
    if session.stage not in TEST_STAGES:
        return StageProgress(stage=session.stage, answered=0, total=0)
    return StageProgress(
        stage=session.stage,
        answered=responses_in_stage(session),
        total=STAGE_LENGTHS[session.stage],
    )


def current_question(session: DiagnosticSession) -> Optional[Question]:
    if session.stage not in TEST_STAGES or is_stage_complete(session):
        return None
    if session.cursor >= len(session.questions):
        return None
    return session.questions[session.cursor]


def _require_stage(session: DiagnosticSession, *stages: Stage) -> None:
    if session.stage not in stages:
        expected = ", ".join(s.value for s in stages)
        raise InvalidStateError(f"Session is in stage '{session.stage.value}', expected {expected}")


def _require_full_batch(batch: Sequence[Question], expected: int) -> List[Question]:
    if len(batch) != expected:
        raise UpstreamUnavailable(f"Question batch has {len(batch)} questions, expected {expected}")
    return list(batch)


class DiagnosticEngine:
    """Drives sessions through their stages using the external collaborators.

    Age capture makes no external call, so an engine built without providers
    can still run `submit_age`.
    """

    def __init__(
        self,
        questions: Optional[QuestionBatchProvider],
        roadmaps: Optional[RoadmapProvider],
        store: DiagnosticStore,
    ) -> None:
        self.questions = questions
        self.roadmaps = roadmaps
        self.store = store

    @asynccontextmanager
    async def _exclusive(self, session: DiagnosticSession):
        # Reject instead of queueing; overlapping writers would interleave responses
        if session.lock.locked():
            raise SessionBusyError("Another operation is in progress for this session")
        async with session.lock:
            yield

    # ==================== Transitions ====================

    async def submit_age(self, session: DiagnosticSession, age: int) -> DiagnosticSession:
        async with self._exclusive(session):
            _require_stage(session, Stage.COLLECTING_AGE)
            if isinstance(age, bool) or not isinstance(age, int) or age < MIN_AGE:
                raise InputValidationError(f"Please enter an age of {MIN_AGE} or above.")
            session.age = age
            session.stage = Stage.ENROLLING
            logger.info("Session %s: age captured, enrolling", session.session_id)
            return session

    async def enroll(self, session: DiagnosticSession, student_name: str) -> DiagnosticSession:
        async with self._exclusive(session):
            _require_stage(session, Stage.ENROLLING)
            name = (student_name or "").strip()
            if not name:
                raise InputValidationError("Please enter the student's name.")
            # Fetch before writing anything so a failed fetch leaves no records behind
            batch = await self.questions.fetch_batch(session.age, MAIN_TEST_LENGTH, error_history=())
            batch = _require_full_batch(batch, MAIN_TEST_LENGTH)
            student_id, test_id = self.store.create_enrollment(name, session.age)
            session.student_name = name
            session.student_id = student_id
            session.test_id = test_id
            session.questions = batch
            session.cursor = 0
            session.responses = []
            session.stage = Stage.MAIN_TEST
            logger.info("Session %s: main test started (test %s)", session.session_id, test_id)
            return session

    async def submit_answer(self, session: DiagnosticSession, answer: str) -> DiagnosticSession:
        async with self._exclusive(session):
            _require_stage(session, *TEST_STAGES)
            if is_blank(answer):
                raise InputValidationError("Please enter your answer.")
            question = current_question(session)
            if question is None:
                raise InvalidStateError(
                    "No pending question; the stage transition failed and can be retried with "
                    f"POST /diagnostic/sessions/{session.session_id}/advance"
                )
            session.responses.append(
                Response(
                    question_index=session.cursor,
                    question_text=question.text,
                    student_answer=answer,
                    reference_answer=question.reference_answer,
                    is_correct=evaluate(answer, question.reference_answer),
                    construct=question.construct,
                    difficulty=question.difficulty,
                )
            )
            session.cursor += 1
            if is_stage_complete(session):
                await self._finish_stage(session)
            return session

    async def advance(self, session: DiagnosticSession) -> DiagnosticSession:
        """Retry a stage transition that failed after the stage's last answer."""
        async with self._exclusive(session):
            _require_stage(session, *TEST_STAGES)
            if not is_stage_complete(session):
                raise InvalidStateError("Current stage still has unanswered questions")
            await self._finish_stage(session)
            return session

    # ==================== Stage completion ====================

    async def _finish_stage(self, session: DiagnosticSession) -> None:
        # Graded answers must be stored before the stage may be left
        self._persist_pending_responses(session)
        if session.stage == Stage.CONFIRMATORY_TEST:
            await self._complete(session)
            return

        if session.blockers is None:
            blockers = detect(session.responses[:MAIN_TEST_LENGTH])
            if blockers:
                self.store.save_blockers(session.test_id, blockers)
            session.blockers = blockers
            logger.info(
                "Session %s: %d blocker(s) detected %s",
                session.session_id,
                len(blockers),
                [b.construct for b in blockers],
            )

        primary = primary_blocker(session.blockers)
        if primary is None:
            await self._complete(session)
            return

        batch = await self.questions.fetch_batch(
            session.age,
            CONFIRMATORY_LENGTH,
            error_history=[primary.construct],
            focus=primary.construct,
        )
        session.questions.extend(_require_full_batch(batch, CONFIRMATORY_LENGTH))
        session.stage = Stage.CONFIRMATORY_TEST
        logger.info("Session %s: confirmatory test on '%s'", session.session_id, primary.construct)

    async def _complete(self, session: DiagnosticSession) -> None:
        blockers = session.blockers or []
        severity = score(blockers, session.responses)
        if session.pending_roadmap is None:
            session.pending_roadmap = await self.roadmaps.fetch_roadmap(session.age, blockers, session.responses)
        roadmap = session.pending_roadmap
        self.store.complete_test(session.test_id, severity, roadmap.to_payload())
        # Every blocker is confirmed, not only the one the confirmatory questions targeted
        session.blockers = [replace(b, confirmed=True) for b in blockers]
        session.severity = severity
        session.roadmap = roadmap
        session.pending_roadmap = None
        session.stage = Stage.COMPLETE
        logger.info("Session %s: complete, severity=%s", session.session_id, severity.value)

    def _persist_pending_responses(self, session: DiagnosticSession) -> None:
        pending = session.responses[session.persisted_count:]
        if not pending:
            return
        self.store.save_responses(session.test_id, pending)
        session.persisted_count = len(session.responses)


class SessionRegistry:
    """In-process lookup of live sessions, keyed by id and scoped to their owner."""

    def __init__(self) -> None:
        self._sessions: Dict[str, DiagnosticSession] = {}

    def create(self, owner: str) -> DiagnosticSession:
        session = DiagnosticSession(session_id=uuid.uuid4().hex, owner=owner)
        self._sessions[session.session_id] = session
        return session

    def get(self, session_id: str, owner: str) -> Optional[DiagnosticSession]:
        session = self._sessions.get(session_id)
        if session is None or session.owner != owner:
            return None
        return session
