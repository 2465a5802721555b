"""Local text-similarity scorer."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from rapidfuzz.distance import Levenshtein

from eval_jobs.errors import TerminalWorkerError
from eval_jobs.jobs.models import JobConfiguration
from eval_jobs.models.evaluation import EvaluationItem, ItemScore

logger = logging.getLogger("eval_jobs.scoring.similarity")

# Weights of the combined score
EDIT_WEIGHT = 0.5
KEYWORD_WEIGHT = 0.3
LENGTH_WEIGHT = 0.2

Responder = Callable[[str, JobConfiguration], Awaitable[str]]


def levenshtein_distance(s1: str, s2: str) -> int:
    """Edit distance between two strings."""
    return Levenshtein.distance(s1, s2)


def edit_similarity(expected: str, actual: str) -> float:
    """1 - normalized case-insensitive edit distance."""
    if not expected and not actual:
        return 1.0
    if not expected or not actual:
        return 0.0

    return Levenshtein.normalized_similarity(expected.lower(), actual.lower())


def keyword_overlap(expected: str, actual: str) -> float:
    """Jaccard overlap of the lower-cased word sets."""
    expected_words = set(expected.lower().split())
    actual_words = set(actual.lower().split())
    union = expected_words | actual_words
    if not union:
        return 0.0
    return len(expected_words & actual_words) / len(union)


def length_ratio(expected: str, actual: str) -> float:
    """Ratio of the shorter length to the longer one."""
    longest = max(len(expected), len(actual))
    if longest == 0:
        return 1.0
    return min(len(expected), len(actual)) / longest


def similarity_score(expected: str, actual: str) -> float:
    """Combined similarity of two responses, in [0, 1].

    Weighted sum of edit similarity, keyword overlap and length ratio,
    capped at 1.0. Two empty strings are identical; one empty string
    scores 0.
    """
    if not expected and not actual:
        return 1.0
    if not expected or not actual:
        return 0.0

    score = (
        edit_similarity(expected, actual) * EDIT_WEIGHT
        + keyword_overlap(expected, actual) * KEYWORD_WEIGHT
        + length_ratio(expected, actual) * LENGTH_WEIGHT
    )
    return min(1.0, score)


class SimilarityScorer:
    """Scores items by comparing texts locally.

    Items must carry an ``actual_response`` unless a ``responder`` is given
    to produce one from the prompt.
    """

    def __init__(self, responder: Optional[Responder] = None):
        """Initialize the scorer.

        Args:
            responder: Optional async callable producing a response for a
                prompt.
        """
        self._responder = responder

    @property
    def name(self) -> str:
        return "similarity"

    async def score(self, item: EvaluationItem, configuration: JobConfiguration) -> ItemScore:
        actual = item.actual_response
        if actual is None:
            if self._responder is None:
                raise TerminalWorkerError(
                    f"Item '{item.item_id}' has no actual_response and no responder is configured"
                )
            actual = await self._responder(item.prompt, configuration)

        # Long responses make this CPU-bound; keep it off the event loop
        score = await asyncio.to_thread(similarity_score, item.expected_response, actual)
        logger.debug(f"Item {item.item_id}: similarity {score:.3f}")

        return ItemScore(
            actual_response=actual,
            similarity_score=round(score, 4),
        )
