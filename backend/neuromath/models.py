from __future__ import annotations
import enum
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, Text, Boolean, ForeignKey, CheckConstraint, JSON, Enum
from sqlalchemy.orm import relationship
from .db import Base
from .domain import Severity


def _new_id() -> str:
	return uuid.uuid4().hex


def _enum_values(enum_cls):
	return [member.value for member in enum_cls]


class DiagnosticStatus(str, enum.Enum):
	IN_PROGRESS = "in_progress"
	COMPLETED = "completed"


class AuthUser(Base):
	__tablename__ = "auth_users"
	# Primary key is username
	username = Column(String(128), primary_key=True, index=True)
	password_hash = Column(String(256), nullable=False)
	email = Column(String(256), nullable=True)
	full_name = Column(String(256), nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class AuthSession(Base):
	__tablename__ = "auth_sessions"
	# jti of the issued token
	session_id = Column(String(64), primary_key=True)
	username = Column(String(128), ForeignKey("auth_users.username", ondelete="CASCADE"), nullable=False, index=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	last_activity_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Student(Base):
	__tablename__ = "students"
	__table_args__ = (CheckConstraint("age >= 5", name="ck_students_age_min"),)
	id = Column(String(32), primary_key=True, default=_new_id)
	# Owning account; every read and write is scoped by it
	owner_username = Column(String(128), ForeignKey("auth_users.username", ondelete="CASCADE"), nullable=False, index=True)
	name = Column(String(256), nullable=False)
	age = Column(Integer, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	tests = relationship(
		"DiagnosticTest",
		back_populates="student",
		cascade="all, delete-orphan",
		order_by="DiagnosticTest.started_at",
	)


class DiagnosticTest(Base):
	__tablename__ = "diagnostic_tests"
	id = Column(String(32), primary_key=True, default=_new_id)
	student_id = Column(String(32), ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
	status = Column(Enum(DiagnosticStatus, values_callable=_enum_values, name="test_status"), default=DiagnosticStatus.IN_PROGRESS, nullable=False)
	age_at_test = Column(Integer, nullable=False)
	overall_severity = Column(Enum(Severity, values_callable=_enum_values, name="severity_level"), default=Severity.NONE, nullable=False)
	started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	completed_at = Column(DateTime, nullable=True)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
	updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

	student = relationship("Student", back_populates="tests")
	responses = relationship(
		"DiagnosticResponse",
		back_populates="test",
		cascade="all, delete-orphan",
		order_by="DiagnosticResponse.question_number",
	)
	blockers = relationship("BlockerDetected", back_populates="test", cascade="all, delete-orphan")
	roadmap = relationship("RemediationRoadmap", back_populates="test", cascade="all, delete-orphan", uselist=False)


class DiagnosticResponse(Base):
	__tablename__ = "test_responses"
	id = Column(String(32), primary_key=True, default=_new_id)
	test_id = Column(String(32), ForeignKey("diagnostic_tests.id", ondelete="CASCADE"), nullable=False, index=True)
	question_number = Column(Integer, nullable=False)
	question_text = Column(Text, nullable=False)
	user_answer = Column(Text, nullable=True)
	correct_answer = Column(Text, nullable=False)
	is_correct = Column(Boolean, nullable=False)
	construct_tested = Column(String(128), nullable=False)
	difficulty_level = Column(Integer, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	test = relationship("DiagnosticTest", back_populates="responses")


class BlockerDetected(Base):
	__tablename__ = "blockers_detected"
	id = Column(String(32), primary_key=True, default=_new_id)
	test_id = Column(String(32), ForeignKey("diagnostic_tests.id", ondelete="CASCADE"), nullable=False, index=True)
	blocker_name = Column(String(128), nullable=False)
	error_count = Column(Integer, nullable=False)
	is_confirmed = Column(Boolean, default=False, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	test = relationship("DiagnosticTest", back_populates="blockers")


class RemediationRoadmap(Base):
	__tablename__ = "remediation_roadmaps"
	id = Column(String(32), primary_key=True, default=_new_id)
	test_id = Column(String(32), ForeignKey("diagnostic_tests.id", ondelete="CASCADE"), nullable=False, unique=True)
	roadmap_data = Column(JSON, nullable=False)
	created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

	test = relationship("DiagnosticTest", back_populates="roadmap")
