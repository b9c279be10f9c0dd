from __future__ import annotations
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from pydantic import ValidationError

from .domain import QUESTION_ADAPTER, Blocker, Question, Response, Roadmap
from .errors import UpstreamUnavailable
from .llm_client import LLMClient

logger = logging.getLogger(__name__)


CONSTRUCTS: List[str] = [
    "Number Sense",
    "Place Value",
    "Basic Arithmetic",
    "Pattern Recognition",
    "Spatial Reasoning",
    "Working Memory",
]


def _question_batch_prompt(age: int, count: int, error_history: Sequence[str], focus: Optional[str]) -> str:
    construct_lines = "\n".join(f"- {c}" for c in CONSTRUCTS)
    if focus:
        target = (
            f"Every question must test the construct '{focus}'. These questions confirm a suspected "
            "difficulty, so vary the format and keep difficulty appropriate for the age.\n"
        )
    else:
        target = f"Spread the questions across these mathematical constructs:\n{construct_lines}\n"
    history = ""
    if error_history:
        history = (
            f"The student has struggled with: {', '.join(error_history)}. Adjust difficulty accordingly.\n"
        )
    return (
        "You are a dyscalculia diagnostic expert.\n"
        f"Generate EXACTLY {count} adaptive math questions for a {age}-year-old student.\n"
        f"{history}"
        f"{target}"
        "Each question must have one short, unambiguous answer (a number or a single word).\n"
        "Return ONLY a JSON array of question objects. Each object must have keys: "
        "questionText, correctAnswer, construct, difficultyLevel (integer 1-5).\n"
        "No markdown, no extra commentary."
    )


def _roadmap_prompt(age: int, blockers: Sequence[Blocker], responses: Sequence[Response]) -> str:
    if blockers:
        blockers_text = ", ".join(f"{b.construct} ({b.error_count} errors)" for b in blockers)
    else:
        blockers_text = "none"
    history = json.dumps(
        [
            {
                "questionNumber": r.question_index + 1,
                "construct": r.construct,
                "difficultyLevel": r.difficulty,
                "isCorrect": r.is_correct,
            }
            for r in responses
        ]
    )
    return (
        "You are an expert dyscalculia remediation specialist. Based on the diagnostic test results, "
        "create a personalized 5-step remediation roadmap.\n\n"
        "Student Profile:\n"
        f"- Age: {age} years old\n"
        f"- Detected Blockers: {blockers_text}\n"
        f"- Total Test Responses: {len(responses)}\n"
        f"- Response history: {history}\n\n"
        "Each step must include a clear actionable goal title, a detailed day-wise or weekly execution plan, "
        "and specific resource recommendations (apps, websites, worksheets, manipulatives).\n"
        "Return ONLY a JSON object with keys: overallSeverity (one of none, mild, moderate, severe), "
        "summary (string), steps (array of EXACTLY 5 objects with keys stepNumber 1-5, title, "
        "executionPlan, resources (array of strings))."
    )


def _as_question_list(data: Any) -> List[Any]:
    if isinstance(data, dict):
        # Some models wrap the array, or return a lone object for a batch of one
        if isinstance(data.get("questions"), list):
            return data["questions"]
        return [data]
    if isinstance(data, list):
        return data
    raise UpstreamUnavailable("LLM returned a question payload that is not a list.")


class QuestionBatchProvider:
    """Supplies complete question batches for one stage."""

    def __init__(self, client: LLMClient) -> None:
        self.client = client

    async def fetch_batch(
        self,
        age: int,
        count: int,
        *,
        error_history: Sequence[str] = (),
        focus: Optional[str] = None,
    ) -> List[Question]:
        prompt = _question_batch_prompt(age, count, error_history, focus)
        data = await self.client.complete_json(prompt, f"Generate {count} diagnostic math questions for age {age}.")
        items = _as_question_list(data)
        if len(items) != count:
            raise UpstreamUnavailable(f"LLM returned {len(items)} questions, expected {count}.")
        questions: List[Question] = []
        for i, item in enumerate(items):
            try:
                questions.append(QUESTION_ADAPTER.validate_python(item))
            except ValidationError as exc:
                raise UpstreamUnavailable(f"Invalid question format for question {i + 1} from LLM") from exc
        logger.info("Fetched %d questions (age=%d, focus=%s)", count, age, focus)
        return questions


class RoadmapProvider:
    """Supplies a 5-step remediation roadmap for a finished run."""

    def __init__(self, client: LLMClient) -> None:
        self.client = client

    async def fetch_roadmap(
        self, age: int, blockers: Sequence[Blocker], responses: Sequence[Response]
    ) -> Roadmap:
        prompt = _roadmap_prompt(age, blockers, responses)
        data: Dict[str, Any] = await self.client.complete_json(prompt, "Generate the personalized remediation roadmap.")
        try:
            roadmap = Roadmap.model_validate(data)
        except ValidationError as exc:
            raise UpstreamUnavailable("Invalid roadmap format from LLM") from exc
        logger.info("Fetched roadmap with %d steps", len(roadmap.steps))
        return roadmap
