"""Pydantic configuration models for the evaluation job service."""

from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from eval_jobs.config import defaults


class ScoringProviderType(str, Enum):
    """Supported scoring collaborators."""

    SIMILARITY = "similarity"
    CLAUDE = "claude"


class StoreConfig(BaseModel):
    """Job store configuration."""

    db_path: Path = Path(defaults.DEFAULT_STORE_DB)


class QueueConfig(BaseModel):
    """Message queue configuration."""

    db_path: Path = Path(defaults.DEFAULT_QUEUE_DB)
    queue_name: str = defaults.DEFAULT_QUEUE_NAME
    lease_seconds: float = Field(default=60.0, gt=0.0, le=3600.0)
    max_delivery_count: int = Field(default=defaults.DEFAULT_MAX_DELIVERY_COUNT, ge=1, le=100)
    poll_interval_seconds: float = Field(default=1.0, gt=0.0, le=60.0)
    session_ordering: bool = True


class ObjectStoreConfig(BaseModel):
    """Object reference store configuration."""

    root_path: Path = Path(defaults.DEFAULT_OBJECTS_ROOT)
    container: str = defaults.DEFAULT_RESULTS_CONTAINER
    retention_days: int = Field(default=defaults.DEFAULT_RETENTION_DAYS, ge=1, le=3650)


class WorkerConfig(BaseModel):
    """Worker behavior configuration."""

    max_concurrency: int = Field(default=4, ge=1, le=64)
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_min_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    backoff_max_seconds: float = Field(default=30.0, ge=0.0, le=600.0)
    call_timeout_seconds: float = Field(default=120.0, gt=0.0, le=3600.0)
    progress_interval: int = Field(default=5, ge=1)
    # Seconds between sweeps for running jobs whose message is gone
    reconcile_interval_seconds: float = Field(
        default=defaults.DEFAULT_RECONCILE_INTERVAL_SECONDS, gt=0.0
    )
    # Local file data sources must resolve inside this directory
    data_root: Path = Path(defaults.DEFAULT_DATA_ROOT)


class LimitsConfig(BaseModel):
    """Size and validity limits applied at submission."""

    max_inline_dataset_bytes: int = Field(default=defaults.DEFAULT_MAX_INLINE_DATASET_BYTES, ge=0)
    max_inline_message_bytes: int = Field(default=defaults.DEFAULT_MAX_INLINE_MESSAGE_BYTES, ge=0)
    max_inline_result_bytes: int = Field(default=defaults.DEFAULT_MAX_INLINE_RESULT_BYTES, ge=0)
    idempotency_ttl_seconds: int = Field(default=defaults.DEFAULT_IDEMPOTENCY_TTL_SECONDS, ge=1)
    job_id_attempts: int = Field(default=5, ge=1, le=50)


class ScoringConfig(BaseModel):
    """Scoring collaborator configuration."""

    provider: ScoringProviderType = ScoringProviderType.SIMILARITY
    model: str = defaults.DEFAULT_LLM_MODEL
    max_tokens: int = Field(default=1024, ge=1, le=100000)
    temperature: float = Field(default=0.0, ge=0.0, le=1.0)
    default_threshold: float = Field(default=defaults.DEFAULT_SIMILARITY_THRESHOLD, ge=0.0, le=1.0)


class ApiConfig(BaseModel):
    """HTTP surface configuration."""

    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)
    # Prefix used to build status URLs; empty means relative URLs
    base_url: str = ""
    # Browser origins allowed to call the API; none by default
    cors_origins: list[str] = Field(default_factory=list)


class EvalJobsConfig(BaseModel):
    """Root configuration model for the evaluation job service."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    objects: ObjectStoreConfig = Field(default_factory=ObjectStoreConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    verbosity: int = Field(default=1, ge=0, le=3)
    log_file: Optional[Path] = None

    model_config = ConfigDict(extra="ignore")  # Ignore unknown fields in config file
