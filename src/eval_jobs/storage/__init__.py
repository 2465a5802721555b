"""Object reference storage."""

from eval_jobs.storage.object_store import LocalObjectStore, ObjectStore

__all__ = ["LocalObjectStore", "ObjectStore"]
