"""Factory function for creating scorers."""

from typing import Optional

from eval_jobs.config.models import ScoringConfig, ScoringProviderType
from eval_jobs.scoring.claude import ClaudeJudgeScorer
from eval_jobs.scoring.protocol import Scorer
from eval_jobs.scoring.similarity import SimilarityScorer


def create_scorer(
    config: Optional[ScoringConfig] = None,
    provider_type: Optional[ScoringProviderType] = None,
    api_key: Optional[str] = None,
) -> Scorer:
    """Create a scorer based on configuration.

    Args:
        config: ScoringConfig object with provider settings.
        provider_type: Override provider type.
        api_key: Override API key (only used for Claude).

    Returns:
        Scorer instance.

    Raises:
        ValueError: If provider type is not supported.
    """
    if config is None:
        config = ScoringConfig()

    effective_provider = provider_type or config.provider

    if effective_provider == ScoringProviderType.SIMILARITY:
        return SimilarityScorer()
    elif effective_provider == ScoringProviderType.CLAUDE:
        return ClaudeJudgeScorer(
            model=config.model,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            api_key=api_key,
        )
    else:
        raise ValueError(f"Unsupported scoring provider: {effective_provider}")


def get_available_providers() -> list[str]:
    """Get list of available provider types."""
    return [p.value for p in ScoringProviderType]
