from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session

from ..db import get_db
from ..store import DiagnosticStore
from .auth import User, get_current_user


router = APIRouter(tags=["students"])


class DiagnosticSummary(BaseModel):
    id: str
    status: str
    age_at_test: int
    overall_severity: str
    started_at: datetime
    completed_at: Optional[datetime] = None


class StudentOut(BaseModel):
    id: str
    name: str
    age: int
    created_at: datetime
    tests: Optional[List[DiagnosticSummary]] = None


class ResponseOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    question_number: int
    question_text: str
    user_answer: Optional[str] = None
    correct_answer: str
    is_correct: bool
    construct_tested: str
    difficulty_level: int


class BlockerOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    blocker_name: str
    error_count: int
    is_confirmed: bool


class DiagnosticDetail(DiagnosticSummary):
    student_id: str
    responses: List[ResponseOut]
    blockers: List[BlockerOut]
    roadmap: Optional[Dict[str, Any]] = None


def _summary(test) -> DiagnosticSummary:
    return DiagnosticSummary(
        id=test.id,
        status=test.status.value,
        age_at_test=test.age_at_test,
        overall_severity=test.overall_severity.value,
        started_at=test.started_at,
        completed_at=test.completed_at,
    )


@router.get("/students", response_model=List[StudentOut])
async def list_students(
    include_tests: bool = False,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    store = DiagnosticStore(db, user.username)
    return [
        StudentOut(
            id=s.id,
            name=s.name,
            age=s.age,
            created_at=s.created_at,
            tests=[_summary(t) for t in s.tests] if include_tests else None,
        )
        for s in store.list_students(include_tests=include_tests)
    ]


@router.get("/tests/{test_id}", response_model=DiagnosticDetail)
async def get_test(test_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    test = DiagnosticStore(db, user.username).get_test(test_id)
    if test is None:
        raise HTTPException(status_code=404, detail="Test not found")
    return DiagnosticDetail(
        **_summary(test).model_dump(),
        student_id=test.student_id,
        responses=[ResponseOut.model_validate(r) for r in test.responses],
        blockers=[BlockerOut.model_validate(b) for b in test.blockers],
        roadmap=test.roadmap.roadmap_data if test.roadmap else None,
    )
