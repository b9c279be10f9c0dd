"""Answer normalization and comparison."""


def normalize(answer: str) -> str:
    return answer.strip().casefold()


def is_blank(answer: str | None) -> bool:
    return answer is None or not answer.strip()


def evaluate(student_answer: str, reference_answer: str) -> bool:
    """Exact match after trimming and case-folding; no numeric tolerance."""
    return normalize(student_answer) == normalize(reference_answer)
