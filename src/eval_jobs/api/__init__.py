"""HTTP surface."""

from eval_jobs.api.app import create_app

__all__ = ["create_app"]
