"""Value types shared by the diagnostic core."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.dataclasses import dataclass as validated_dataclass


class Stage(str, Enum):
    COLLECTING_AGE = "collecting_age"
    ENROLLING = "enrolling"
    MAIN_TEST = "main_test"
    CONFIRMATORY_TEST = "confirmatory_test"
    COMPLETE = "complete"


class Severity(str, Enum):
    NONE = "none"
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


@validated_dataclass(frozen=True, config=ConfigDict(populate_by_name=True, str_strip_whitespace=True))
class Question:
    """A generated question. Provider payload keys are accepted as aliases.

    Text fields are stripped before the length check, so a blank answer key
    is rejected instead of becoming a question nobody can get right.
    """

    text: str = Field(alias="questionText", min_length=1)
    reference_answer: str = Field(alias="correctAnswer", min_length=1)
    construct: str = Field(min_length=1)
    difficulty: int = Field(alias="difficultyLevel", ge=1, le=5)


QUESTION_ADAPTER = TypeAdapter(Question)


@dataclass(frozen=True)
class Response:
    question_index: int
    question_text: str
    student_answer: str
    reference_answer: str
    is_correct: bool
    construct: str
    difficulty: int


@dataclass(frozen=True)
class Blocker:
    construct: str
    error_count: int
    confirmed: bool = False


class RoadmapStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    step_number: int = Field(alias="stepNumber", ge=1, le=5)
    title: str
    execution_plan: str = Field(alias="executionPlan")
    resources: List[str] = Field(default_factory=list)


class Roadmap(BaseModel):
    """Remediation roadmap as returned by the generation service.

    ``overall_severity`` is the model's own wording and is never used in place
    of the computed severity.
    """

    model_config = ConfigDict(populate_by_name=True)

    overall_severity: Severity = Field(alias="overallSeverity")
    summary: str
    steps: List[RoadmapStep] = Field(min_length=5, max_length=5)

    @model_validator(mode="after")
    def _steps_in_order(self) -> "Roadmap":
        numbers = [s.step_number for s in self.steps]
        if numbers != list(range(1, len(self.steps) + 1)):
            raise ValueError(f"steps must be numbered 1-5 in order, got {numbers}")
        return self

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
