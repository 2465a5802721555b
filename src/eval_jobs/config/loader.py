"""Configuration loading and merging logic."""

import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from eval_jobs.config.defaults import CONFIG_SEARCH_PATHS, ENV_PREFIX
from eval_jobs.config.models import EvalJobsConfig


def find_config_file(explicit_path: Optional[Path] = None) -> Optional[Path]:
    """Find the configuration file.

    Args:
        explicit_path: Explicitly specified config file path (from CLI).

    Returns:
        Path to config file if found, None otherwise.
    """
    if explicit_path is not None:
        if explicit_path.exists():
            return explicit_path
        raise FileNotFoundError(f"Config file not found: {explicit_path}")

    for search_path in CONFIG_SEARCH_PATHS:
        if search_path.exists():
            return search_path

    return None


def load_config_file(path: Path) -> dict[str, Any]:
    """Load configuration from a JSON file.

    Args:
        path: Path to the configuration file.

    Returns:
        Parsed configuration dictionary.
    """
    with open(path) as f:
        return json.load(f)


def _parse_env_value(raw: str) -> Any:
    # JSON covers numbers, booleans and lists; anything else stays a string
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> dict[str, Any]:
    """Collect ``EVAL_JOBS_*`` overrides as a nested dictionary.

    A double underscore separates a section from its key, so
    ``EVAL_JOBS_QUEUE__LEASE_SECONDS=30`` becomes
    ``{"queue": {"lease_seconds": 30}}``.

    Args:
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Nested override dictionary.
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}

    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX):
            continue
        parts = name[len(ENV_PREFIX):].lower().split("__")
        if not all(parts):
            continue

        target = overrides
        for section in parts[:-1]:
            target = target.setdefault(section, {})
        target[parts[-1]] = _parse_env_value(raw)

    return overrides


def _deep_merge(base: dict[str, Any], extra: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in extra.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def merge_cli_overrides(
    config: EvalJobsConfig,
    store_db: Optional[Path] = None,
    queue_db: Optional[Path] = None,
    objects_root: Optional[Path] = None,
    concurrency: Optional[int] = None,
    provider: Optional[str] = None,
    model: Optional[str] = None,
    threshold: Optional[float] = None,
    verbose: Optional[int] = None,
) -> EvalJobsConfig:
    """Merge CLI overrides into the configuration.

    CLI arguments take precedence over config file and environment values.

    Args:
        config: Base configuration.
        store_db: Job store database path.
        queue_db: Queue database path.
        objects_root: Object store root directory.
        concurrency: Worker concurrency override.
        provider: Scoring provider override.
        model: LLM model override.
        threshold: Default similarity threshold override.
        verbose: Verbosity level override.

    Returns:
        Configuration with CLI overrides applied.
    """
    data = config.model_dump()

    if store_db is not None:
        data["store"]["db_path"] = store_db
    if queue_db is not None:
        data["queue"]["db_path"] = queue_db
    if objects_root is not None:
        data["objects"]["root_path"] = objects_root

    if concurrency is not None:
        data["worker"]["max_concurrency"] = concurrency

    if provider is not None:
        data["scoring"]["provider"] = provider
    if model is not None:
        data["scoring"]["model"] = model
    if threshold is not None:
        data["scoring"]["default_threshold"] = threshold

    if verbose is not None:
        data["verbosity"] = verbose

    return EvalJobsConfig.model_validate(data)


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
    **cli_overrides: Any,
) -> EvalJobsConfig:
    """Load configuration with environment and CLI overrides.

    Configuration is loaded from the following sources (in order of priority):
    1. CLI arguments (highest priority)
    2. Environment variables (``EVAL_JOBS_*``)
    3. Config file (if found)
    4. Default values (lowest priority)

    Args:
        config_path: Explicit config file path (from --config CLI option).
        environ: Environment mapping, for tests.
        **cli_overrides: CLI argument overrides.

    Returns:
        Merged configuration object.
    """
    data: dict[str, Any] = {}

    found_config = find_config_file(config_path)
    if found_config is not None:
        data = load_config_file(found_config)

    data = _deep_merge(data, env_overrides(environ))
    config = EvalJobsConfig.model_validate(data)

    return merge_cli_overrides(config, **cli_overrides)
