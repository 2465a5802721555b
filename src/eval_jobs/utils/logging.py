"""Logging configuration for the evaluation job service."""

import logging
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

NOISY_LIBRARIES = ["httpx", "anthropic", "aiosqlite", "uvicorn.access"]

# Placeholder for records not tied to a job
NO_JOB = "-"


class JobContextFilter(logging.Filter):
    """Gives every record a ``job_id`` attribute and a ``job_tag`` prefix.

    ``job_id`` is set by JobLogAdapter; other records get NO_JOB so format
    strings can always reference it.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        job_id = getattr(record, "job_id", None) or NO_JOB
        record.job_id = job_id
        record.job_tag = "" if job_id == NO_JOB else f"[{job_id}] "
        return True


def setup_logging(
    verbosity: int = 1,
    log_file: Optional[Path] = None,
) -> logging.Logger:
    """Set up logging with Rich formatting.

    Args:
        verbosity: Verbosity level (0=WARNING, 1=INFO, 2=DEBUG, 3=DEBUG+libs).
        log_file: Optional path to log file.

    Returns:
        Configured logger instance.
    """
    level_map = {
        0: logging.WARNING,
        1: logging.INFO,
        2: logging.DEBUG,
        3: logging.DEBUG,
    }
    level = level_map.get(verbosity, logging.INFO)

    logger = logging.getLogger("eval_jobs")
    logger.setLevel(level)
    logger.handlers.clear()

    console = Console(stderr=True)
    console_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=verbosity >= 2,
        rich_tracebacks=True,
        tracebacks_show_locals=verbosity >= 3,
    )
    console_handler.setLevel(level)
    console_handler.addFilter(JobContextFilter())
    console_handler.setFormatter(logging.Formatter("%(job_tag)s%(message)s"))
    logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)  # Always log DEBUG to file
        file_handler.addFilter(JobContextFilter())
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - job=%(job_id)s - %(message)s"
            )
        )
        logger.addHandler(file_handler)

    if verbosity < 3:
        for lib_logger in NOISY_LIBRARIES:
            logging.getLogger(lib_logger).setLevel(logging.WARNING)

    return logger


class JobLogAdapter(logging.LoggerAdapter):
    """Attaches the job id a message concerns as the ``job_id`` record field."""

    def process(self, msg, kwargs):
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs


def job_logger(logger: logging.Logger, job_id: str) -> JobLogAdapter:
    """Wrap ``logger`` so each line carries ``job_id``."""
    return JobLogAdapter(logger, {"job_id": job_id})
