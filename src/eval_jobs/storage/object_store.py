"""Object reference store.

Large payloads (job configurations that do not fit in a message, datasets,
detailed results) are written here and passed around as ObjectReference
values. Objects are immutable once written.
"""

import json
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePosixPath
from typing import Any, AsyncIterator, Optional, Protocol

import aiofiles

from eval_jobs.errors import ObjectNotFoundError, ObjectStoreError
from eval_jobs.models.objects import ObjectReference
from eval_jobs.utils.file_utils import read_bytes_async, write_bytes_async

logger = logging.getLogger("eval_jobs.storage.object_store")

CHUNK_SIZE = 64 * 1024

# Object ids are uuid4 hex strings
OBJECT_ID_PATTERN = re.compile(r"[0-9a-f]{32}")


class ObjectStore(Protocol):
    """Protocol for object reference stores."""

    async def put_bytes(
        self,
        container: str,
        object_name: str,
        data: bytes,
        content_type: str = "application/json",
        expires_at: Optional[datetime] = None,
    ) -> ObjectReference:
        """Store ``data`` and return a reference to it."""
        ...

    async def get_bytes(self, ref: ObjectReference | str) -> bytes:
        """Read the whole object."""
        ...

    def open_stream(self, ref: ObjectReference) -> AsyncIterator[bytes]:
        """Iterate over the object's content in chunks."""
        ...

    async def get_reference(self, object_id: str) -> Optional[ObjectReference]:
        """Look up a reference by object id."""
        ...

    async def exists(self, ref: ObjectReference) -> bool:
        """Whether the object can still be read."""
        ...


class LocalObjectStore:
    """Object store backed by a local directory.

    Objects live at ``<root>/<container>/<object_name>``. A small JSON
    record per object id under ``<root>/.refs`` maps ids back to
    references.
    """

    def __init__(self, root_path: Path | str, retention_days: Optional[int] = None):
        """Initialize the store.

        Args:
            root_path: Directory holding all containers.
            retention_days: Default expiry applied when a write gives none.
        """
        self._root = Path(root_path)
        self._retention_days = retention_days

    @property
    def root_path(self) -> Path:
        return self._root

    def _object_path(self, container: str, object_name: str) -> Path:
        name_parts = PurePosixPath(object_name).parts
        for part in (container, *name_parts):
            if part in ("", ".", "..") or part.startswith("/"):
                raise ObjectStoreError(f"Invalid object location: {container}/{object_name}")
        if not name_parts:
            raise ObjectStoreError(f"Invalid object location: {container}/{object_name}")
        return self._root / container / object_name

    def _ref_path(self, object_id: str) -> Path:
        return self._root / ".refs" / f"{object_id}.json"

    async def put_bytes(
        self,
        container: str,
        object_name: str,
        data: bytes,
        content_type: str = "application/json",
        expires_at: Optional[datetime] = None,
    ) -> ObjectReference:
        """Store ``data`` under ``container/object_name``.

        Args:
            container: Logical container (directory) name.
            object_name: Object name, may contain ``/`` separators.
            data: Content to store.
            content_type: MIME type recorded on the reference.
            expires_at: Expiry; defaults to now + retention_days when set.

        Returns:
            Reference to the stored object.

        Raises:
            ObjectStoreError: If the object cannot be written.
        """
        path = self._object_path(container, object_name)
        if expires_at is None and self._retention_days:
            expires_at = datetime.now(timezone.utc) + timedelta(days=self._retention_days)

        ref = ObjectReference(
            container=container,
            object_name=object_name,
            content_type=content_type,
            size_bytes=len(data),
            expires_at=expires_at,
            access_url=path.resolve().as_uri(),
        )

        try:
            await write_bytes_async(path, data)
            await write_bytes_async(
                self._ref_path(ref.object_id), ref.model_dump_json().encode("utf-8")
            )
        except OSError as e:
            raise ObjectStoreError(f"Failed to write object {container}/{object_name}: {e}") from e

        logger.debug(f"Stored object {ref.object_id} ({ref.size_bytes} bytes) at {path}")
        return ref

    async def put_json(
        self,
        container: str,
        object_name: str,
        value: Any,
        expires_at: Optional[datetime] = None,
    ) -> ObjectReference:
        """Serialize ``value`` as JSON and store it."""
        data = json.dumps(value, default=str).encode("utf-8")
        return await self.put_bytes(container, object_name, data, "application/json", expires_at)

    async def get_reference(self, object_id: str) -> Optional[ObjectReference]:
        """Look up a reference by object id.

        Args:
            object_id: Id assigned when the object was written.

        Returns:
            The reference, or None if the id is unknown or malformed.
        """
        if not OBJECT_ID_PATTERN.fullmatch(object_id):
            return None
        path = self._ref_path(object_id)
        if not path.exists():
            return None
        try:
            return ObjectReference.model_validate_json(await read_bytes_async(path))
        except OSError as e:
            raise ObjectStoreError(f"Failed to read reference {object_id}: {e}") from e

    async def _resolve(self, ref: ObjectReference | str) -> tuple[ObjectReference, Path]:
        if isinstance(ref, str):
            found = await self.get_reference(ref)
            if found is None:
                raise ObjectNotFoundError(f"Object '{ref}' not found")
            ref = found

        if ref.is_expired:
            raise ObjectNotFoundError(
                f"Object '{ref.object_id}' expired at {ref.expires_at.isoformat()}"
            )

        path = self._object_path(ref.container, ref.object_name)
        if not path.exists():
            raise ObjectNotFoundError(f"Object '{ref.object_id}' not found")
        return ref, path

    async def get_bytes(self, ref: ObjectReference | str) -> bytes:
        """Read an object.

        Args:
            ref: Reference or object id.

        Returns:
            Object content.

        Raises:
            ObjectNotFoundError: If the object is unknown, missing or expired.
            ObjectStoreError: If the object cannot be read.
        """
        _, path = await self._resolve(ref)
        try:
            return await read_bytes_async(path)
        except OSError as e:
            raise ObjectStoreError(f"Failed to read object {path}: {e}") from e

    async def get_json(self, ref: ObjectReference | str) -> Any:
        """Read an object and parse it as JSON."""
        data = await self.get_bytes(ref)
        try:
            return json.loads(data)
        except ValueError as e:
            raise ObjectStoreError(f"Object is not valid JSON: {e}") from e

    async def open_stream(self, ref: ObjectReference) -> AsyncIterator[bytes]:
        """Iterate over an object's content in chunks.

        Raises:
            ObjectNotFoundError: If the object is missing or expired.
        """
        _, path = await self._resolve(ref)
        async with aiofiles.open(path, "rb") as f:
            while chunk := await f.read(CHUNK_SIZE):
                yield chunk

    async def exists(self, ref: ObjectReference) -> bool:
        """Whether the object is present and not expired."""
        try:
            await self._resolve(ref)
        except ObjectNotFoundError:
            return False
        return True
