"""Loading evaluation items for a job."""

import json
import logging
from pathlib import Path
from typing import Any, Optional
from urllib.parse import unquote, urlparse

from pydantic import ValidationError as PydanticValidationError

from eval_jobs.errors import NotFoundError, TerminalWorkerError
from eval_jobs.jobs.models import JobConfiguration
from eval_jobs.models.enums import ErrorCode
from eval_jobs.models.evaluation import EvaluationItem
from eval_jobs.storage.object_store import ObjectStore
from eval_jobs.utils.file_utils import read_file_async

logger = logging.getLogger("eval_jobs.jobs.datasource")

# Fixed phases of a batch_processing job
BATCH_PHASES = ["Data Loading", "Processing", "Validation", "Output Generation"]

ITEM_FIELDS = ("item_id", "prompt", "expected_response", "actual_response")


class DataSourceError(TerminalWorkerError):
    """The dataset of a job cannot be read."""

    code = ErrorCode.DATA_SOURCE_UNAVAILABLE.value


class InvalidDatasetError(TerminalWorkerError):
    """The dataset was read but does not contain valid items."""

    code = ErrorCode.INVALID_CONFIGURATION.value


def _location_to_path(location: str) -> Path:
    parsed = urlparse(location)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if parsed.scheme and len(parsed.scheme) > 1:
        raise DataSourceError(f"Unsupported data source scheme: {parsed.scheme}")
    return Path(location)



def _resolve_in_root(path: Path, data_root: Optional[Path]) -> Path:
    """Resolve a local dataset path, refusing anything outside ``data_root``.

    Relative paths are taken relative to the root. Symlinks are followed
    before the check, so a link pointing out of the root is refused too.
    """
    if data_root is None:
        raise DataSourceError("Local file data sources are disabled: no data root configured")

    root = data_root.resolve()
    resolved = (root / path).resolve()
    if not resolved.is_relative_to(root):
        raise DataSourceError(f"Data source {path} is outside the allowed data root")
    return resolved


def parse_records(records: Any) -> list[EvaluationItem]:
    """Turn raw dataset records into evaluation items.

    Records are mappings with at least a ``prompt``; unknown keys are
    ignored. A top-level mapping with an ``items`` list is also accepted.
    Items without an id are numbered ``item_1``, ``item_2``, ...

    Raises:
        InvalidDatasetError: If the records are not a list of valid items.
    """
    if isinstance(records, dict) and isinstance(records.get("items"), list):
        records = records["items"]
    if not isinstance(records, list):
        raise InvalidDatasetError("Dataset must be a list of items")

    items = []
    for index, record in enumerate(records, start=1):
        if isinstance(record, EvaluationItem):
            item = record
        elif isinstance(record, dict):
            try:
                item = EvaluationItem.model_validate(
                    {k: v for k, v in record.items() if k in ITEM_FIELDS and v is not None}
                )
            except PydanticValidationError as e:
                raise InvalidDatasetError(f"Dataset item {index} is invalid: {e}") from e
        else:
            raise InvalidDatasetError(f"Dataset item {index} is not an object")

        if not item.item_id:
            item = item.model_copy(update={"item_id": f"item_{index}"})
        items.append(item)

    return items


def parse_jsonl(text: str) -> list[dict[str, Any]]:
    """Parse JSON-lines text, skipping blank lines."""
    records = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            raise InvalidDatasetError(f"Invalid JSON on line {line_no}: {e}") from e
    return records


async def load_items(
    configuration: JobConfiguration,
    object_store: Optional[ObjectStore] = None,
    data_root: Optional[Path] = None,
) -> list[EvaluationItem]:
    """Load the evaluation items of a job.

    Args:
        configuration: Job configuration naming the dataset.
        object_store: Store used to resolve ``data_source_ref``.
        data_root: Directory local ``data_source`` files must live under.
            Local files are refused when this is None.

    Returns:
        The items, in dataset order.

    Raises:
        DataSourceError: If the dataset cannot be read or lies outside
            ``data_root``.
        InvalidDatasetError: If the dataset content is malformed.
    """
    if configuration.items is not None:
        return parse_records(list(configuration.items))

    if configuration.data_source_ref:
        if object_store is None:
            raise DataSourceError("No object store configured for data_source_ref")
        try:
            data = await object_store.get_bytes(configuration.data_source_ref)
        except NotFoundError as e:
            raise DataSourceError(
                f"Dataset object '{configuration.data_source_ref}' is unavailable: {e.message}"
            ) from e
        return _parse_text(data.decode("utf-8"), configuration.data_source_ref)

    if configuration.data_source:
        path = _resolve_in_root(_location_to_path(configuration.data_source), data_root)
        try:
            text = await read_file_async(path)
        except OSError as e:
            raise DataSourceError(f"Cannot read data source {path}: {e}") from e
        return _parse_text(text, str(path))

    raise InvalidDatasetError("Job configuration names no dataset")


def _parse_text(text: str, origin: str) -> list[EvaluationItem]:
    stripped = text.lstrip()
    if origin.endswith(".jsonl") or (stripped and stripped[0] not in "[{"):
        records: Any = parse_jsonl(text)
    else:
        try:
            records = json.loads(text)
        except json.JSONDecodeError:
            # A JSON-lines file whose first record is an object
            records = parse_jsonl(text)

    items = parse_records(records)
    logger.debug(f"Loaded {len(items)} items from {origin}")
    return items
