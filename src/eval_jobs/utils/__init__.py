"""Utility modules for the evaluation job service."""

from eval_jobs.utils.file_utils import read_bytes_async, read_file_async, write_bytes_async
from eval_jobs.utils.logging import job_logger, setup_logging

__all__ = [
    "job_logger",
    "read_bytes_async",
    "read_file_async",
    "setup_logging",
    "write_bytes_async",
]
