"""Configuration management for the evaluation job service."""

from eval_jobs.config.loader import load_config
from eval_jobs.config.models import (
    ApiConfig,
    EvalJobsConfig,
    LimitsConfig,
    ObjectStoreConfig,
    QueueConfig,
    ScoringConfig,
    ScoringProviderType,
    StoreConfig,
    WorkerConfig,
)

__all__ = [
    "ApiConfig",
    "EvalJobsConfig",
    "LimitsConfig",
    "ObjectStoreConfig",
    "QueueConfig",
    "ScoringConfig",
    "ScoringProviderType",
    "StoreConfig",
    "WorkerConfig",
    "load_config",
]
