"""
Diagnostic store - persistence of students, tests and their results.

Every query is scoped to one owner (the account that enrolled the student);
records of other owners behave as if they did not exist.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .domain import Blocker, Response, Severity
from .errors import PersistenceError
from .models import (
    BlockerDetected,
    DiagnosticResponse,
    DiagnosticStatus,
    DiagnosticTest,
    RemediationRoadmap,
    Student,
)

logger = logging.getLogger(__name__)


class DiagnosticStore:
    def __init__(self, db: Session, owner: str):
        self.db = db
        self.owner = owner

    # ==================== Writes ====================

    def create_enrollment(self, student_name: str, age: int) -> Tuple[str, str]:
        """
        Create the student record and its in-progress diagnostic test.

        Returns:
            (student_id, test_id)
        """
        student = Student(owner_username=self.owner, name=student_name, age=age)
        test = DiagnosticTest(student=student, age_at_test=age, status=DiagnosticStatus.IN_PROGRESS)
        self.db.add(student)
        self.db.add(test)
        self._commit("create enrollment")
        return student.id, test.id

    def save_responses(self, test_id: str, responses: Sequence[Response]) -> None:
        self._owned_test(test_id)
        for r in responses:
            self.db.add(
                DiagnosticResponse(
                    test_id=test_id,
                    question_number=r.question_index + 1,
                    question_text=r.question_text,
                    user_answer=r.student_answer,
                    correct_answer=r.reference_answer,
                    is_correct=r.is_correct,
                    construct_tested=r.construct,
                    difficulty_level=r.difficulty,
                )
            )
        self._commit(f"save {len(responses)} responses")

    def save_blockers(self, test_id: str, blockers: Sequence[Blocker]) -> None:
        self._owned_test(test_id)
        for b in blockers:
            self.db.add(
                BlockerDetected(
                    test_id=test_id,
                    blocker_name=b.construct,
                    error_count=b.error_count,
                    is_confirmed=b.confirmed,
                )
            )
        self._commit(f"save {len(blockers)} blockers")

    def complete_test(self, test_id: str, severity: Severity, roadmap_payload: dict) -> None:
        """Attach the roadmap, stamp severity and completion, confirm blockers. One transaction."""
        test = self._owned_test(test_id)
        self.db.add(RemediationRoadmap(test_id=test_id, roadmap_data=roadmap_payload))
        test.status = DiagnosticStatus.COMPLETED
        test.completed_at = datetime.utcnow()
        test.overall_severity = severity
        for row in test.blockers:
            row.is_confirmed = True
        self._commit("complete test")

    # ==================== Reads ====================

    def list_students(self, include_tests: bool = False) -> List[Student]:
        """Owner's students, newest first, optionally with their test history loaded."""
        stmt = (
            select(Student)
            .where(Student.owner_username == self.owner)
            .order_by(Student.created_at.desc())
        )
        if include_tests:
            stmt = stmt.options(selectinload(Student.tests))
        return list(self.db.scalars(stmt))

    def get_test(self, test_id: str) -> Optional[DiagnosticTest]:
        stmt = (
            select(DiagnosticTest)
            .join(Student)
            .where(DiagnosticTest.id == test_id, Student.owner_username == self.owner)
            .options(
                selectinload(DiagnosticTest.responses),
                selectinload(DiagnosticTest.blockers),
                selectinload(DiagnosticTest.roadmap),
            )
        )
        return self.db.scalars(stmt).first()

    # ==================== Helpers ====================

    def _owned_test(self, test_id: str) -> DiagnosticTest:
        try:
            test = self.get_test(test_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Could not load test {test_id}") from exc
        if test is None:
            raise PersistenceError(f"Test {test_id} not found for this owner")
        return test

    def _commit(self, action: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Store rejected write (%s)", action)
            raise PersistenceError(f"Could not {action}") from exc
