"""Default configuration values for the evaluation job service."""

from pathlib import Path

# Default configuration file name
DEFAULT_CONFIG_FILENAME = "eval-jobs.config.json"

# Search paths for configuration file (in order of priority)
CONFIG_SEARCH_PATHS = [
    Path.cwd() / DEFAULT_CONFIG_FILENAME,
    Path.home() / ".config" / "eval-jobs" / "config.json",
]

# Prefix of environment variable overrides, e.g. EVAL_JOBS_QUEUE__LEASE_SECONDS
ENV_PREFIX = "EVAL_JOBS_"

# SQLite files
DEFAULT_STORE_DB = "eval-jobs.db"
DEFAULT_QUEUE_DB = "eval-jobs-queue.db"
DEFAULT_QUEUE_NAME = "evaluation-jobs"

# Object store
DEFAULT_OBJECTS_ROOT = ".eval-jobs-objects"
DEFAULT_RESULTS_CONTAINER = "job-results"
DEFAULT_RETENTION_DAYS = 30

# Default LLM model for the Claude judge
DEFAULT_LLM_MODEL = "claude-sonnet-4-20250514"

# An item passes when its similarity score reaches this threshold
DEFAULT_SIMILARITY_THRESHOLD = 0.8

# Delivery attempts before a message is dead-lettered
DEFAULT_MAX_DELIVERY_COUNT = 3

# Size limits (bytes)
DEFAULT_MAX_INLINE_DATASET_BYTES = 1_000_000
DEFAULT_MAX_INLINE_MESSAGE_BYTES = 64 * 1024
DEFAULT_MAX_INLINE_RESULT_BYTES = 256 * 1024

# Idempotency keys are honoured for one day
DEFAULT_IDEMPOTENCY_TTL_SECONDS = 24 * 60 * 60

# Worker sweep for running jobs left without a deliverable message
DEFAULT_RECONCILE_INTERVAL_SECONDS = 60.0

# Directory that local file data sources are confined to
DEFAULT_DATA_ROOT = "datasets"
