"""
Blocker detection.

A construct becomes a blocker once the student has answered at least
``PROMOTION_THRESHOLD`` of its questions incorrectly within the main test.
"""

from typing import Dict, List, Optional, Sequence

from .domain import Blocker, Response

PROMOTION_THRESHOLD = 2


def detect(responses: Sequence[Response]) -> List[Blocker]:
    """
    Promote repeatedly-missed constructs into blockers.

    The result has set semantics (one entry per construct). It is ordered by
    the first incorrect answer for each construct, so ``primary_blocker``
    picks the earliest struggle rather than the most frequent one.

    Args:
        responses: Main-test responses in answer order

    Returns:
        Blockers with ``confirmed=False``, possibly empty
    """
    error_counts: Dict[str, int] = {}
    for response in responses:
        if response.is_correct:
            continue
        # dicts keep insertion order, which is first-error order here
        error_counts[response.construct] = error_counts.get(response.construct, 0) + 1

    return [
        Blocker(construct=construct, error_count=count)
        for construct, count in error_counts.items()
        if count >= PROMOTION_THRESHOLD
    ]


def primary_blocker(blockers: Sequence[Blocker]) -> Optional[Blocker]:
    """The blocker that drives confirmatory question generation."""
    return blockers[0] if blockers else None
