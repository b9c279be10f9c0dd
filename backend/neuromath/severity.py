"""Severity scoring for a finished diagnostic run."""

from typing import Sequence, Tuple

from .domain import Blocker, Response, Severity
from .errors import InvalidStateError

# (severity, min blockers, error rate strictly above), first match wins
SEVERITY_TABLE: Tuple[Tuple[Severity, int, float], ...] = (
    (Severity.SEVERE, 3, 0.6),
    (Severity.MODERATE, 2, 0.4),
    (Severity.MILD, 1, 0.2),
)


def error_rate(responses: Sequence[Response]) -> float:
    if not responses:
        raise InvalidStateError("Cannot score a session with no responses")
    incorrect = sum(1 for r in responses if not r.is_correct)
    return incorrect / len(responses)


def score_counts(blocker_count: int, rate: float) -> Severity:
    for severity, min_blockers, rate_above in SEVERITY_TABLE:
        if blocker_count >= min_blockers or rate > rate_above:
            return severity
    return Severity.NONE


def score(blockers: Sequence[Blocker], responses: Sequence[Response]) -> Severity:
    """Score over the full response history (main and confirmatory combined)."""
    return score_counts(len(blockers), error_rate(responses))
