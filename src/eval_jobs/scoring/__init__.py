"""Scoring collaborators that judge item responses."""

from eval_jobs.scoring.claude import ClaudeJudgeScorer
from eval_jobs.scoring.factory import create_scorer, get_available_providers
from eval_jobs.scoring.protocol import Scorer
from eval_jobs.scoring.similarity import SimilarityScorer, similarity_score

__all__ = [
    "ClaudeJudgeScorer",
    "Scorer",
    "SimilarityScorer",
    "create_scorer",
    "get_available_providers",
    "similarity_score",
]
