from __future__ import annotations
from typing import Any, Dict, List, NamedTuple, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..db import get_db
from ..llm_client import LLMClient
from ..providers import QuestionBatchProvider, RoadmapProvider
from ..session import (
    DiagnosticEngine,
    DiagnosticSession,
    SessionRegistry,
    current_question,
    progress,
)
from ..store import DiagnosticStore
from .auth import User, get_current_user


router = APIRouter(prefix="/diagnostic", tags=["diagnostic"])


class AgeRequest(BaseModel):
    age: int


class EnrollRequest(BaseModel):
    student_name: str


class AnswerRequest(BaseModel):
    answer: str


class ProgressView(BaseModel):
    stage: str
    answered: int
    total: int
    percent: float


class QuestionView(BaseModel):
    number: int
    text: str
    construct: str
    difficulty: int


class BlockerView(BaseModel):
    construct: str
    error_count: int
    confirmed: bool


class SessionView(BaseModel):
    session_id: str
    stage: str
    age: Optional[int] = None
    student_name: Optional[str] = None
    student_id: Optional[str] = None
    test_id: Optional[str] = None
    progress: ProgressView
    question: Optional[QuestionView] = None
    responses_recorded: int = 0
    blockers: List[BlockerView] = Field(default_factory=list)
    severity: Optional[str] = None
    roadmap: Optional[Dict[str, Any]] = None


class Providers(NamedTuple):
    questions: QuestionBatchProvider
    roadmaps: RoadmapProvider


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.sessions


async def get_providers():
    try:
        client = LLMClient()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    try:
        yield Providers(QuestionBatchProvider(client), RoadmapProvider(client))
    finally:
        await client.aclose()


def get_engine(
    providers: Providers = Depends(get_providers),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> DiagnosticEngine:
    return DiagnosticEngine(providers.questions, providers.roadmaps, DiagnosticStore(db, user.username))


def get_intake_engine(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> DiagnosticEngine:
    # Age capture makes no gateway call
    return DiagnosticEngine(None, None, DiagnosticStore(db, user.username))


def _load_session(session_id: str, user: User, registry: SessionRegistry) -> DiagnosticSession:
    session = registry.get(session_id, user.username)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _session_view(session: DiagnosticSession) -> SessionView:
    p = progress(session)
    q = current_question(session)
    return SessionView(
        session_id=session.session_id,
        stage=session.stage.value,
        age=session.age,
        student_name=session.student_name,
        student_id=session.student_id,
        test_id=session.test_id,
        progress=ProgressView(stage=p.stage.value, answered=p.answered, total=p.total, percent=p.percent),
        # Reference answers stay server-side
        question=(
            QuestionView(number=session.cursor + 1, text=q.text, construct=q.construct, difficulty=q.difficulty)
            if q is not None
            else None
        ),
        responses_recorded=len(session.responses),
        blockers=[
            BlockerView(construct=b.construct, error_count=b.error_count, confirmed=b.confirmed)
            for b in (session.blockers or [])
        ],
        severity=session.severity.value if session.severity else None,
        roadmap=session.roadmap.to_payload() if session.roadmap else None,
    )


@router.post("/sessions", response_model=SessionView, status_code=201)
async def start_session(user: User = Depends(get_current_user), registry: SessionRegistry = Depends(get_registry)):
    session = registry.create(user.username)
    return _session_view(session)


@router.get("/sessions/{session_id}", response_model=SessionView)
async def get_session(
    session_id: str,
    user: User = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_registry),
):
    return _session_view(_load_session(session_id, user, registry))


@router.post("/sessions/{session_id}/age", response_model=SessionView)
async def submit_age(
    session_id: str,
    req: AgeRequest,
    user: User = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_registry),
    engine: DiagnosticEngine = Depends(get_intake_engine),
):
    session = _load_session(session_id, user, registry)
    return _session_view(await engine.submit_age(session, req.age))


@router.post("/sessions/{session_id}/enroll", response_model=SessionView)
async def enroll(
    session_id: str,
    req: EnrollRequest,
    user: User = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_registry),
    engine: DiagnosticEngine = Depends(get_engine),
):
    session = _load_session(session_id, user, registry)
    return _session_view(await engine.enroll(session, req.student_name))


@router.post("/sessions/{session_id}/answers", response_model=SessionView)
async def submit_answer(
    session_id: str,
    req: AnswerRequest,
    user: User = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_registry),
    engine: DiagnosticEngine = Depends(get_engine),
):
    session = _load_session(session_id, user, registry)
    return _session_view(await engine.submit_answer(session, req.answer))


@router.post("/sessions/{session_id}/advance", response_model=SessionView)
async def advance(
    session_id: str,
    user: User = Depends(get_current_user),
    registry: SessionRegistry = Depends(get_registry),
    engine: DiagnosticEngine = Depends(get_engine),
):
    session = _load_session(session_id, user, registry)
    return _session_view(await engine.advance(session))
