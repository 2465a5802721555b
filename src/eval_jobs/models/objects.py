"""Object reference model."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, Field


class ObjectReference(BaseModel):
    """Pointer to a payload held in the object reference store.

    Jobs and messages hold these as weak references: nothing guarantees the
    object still exists when the reference is followed.
    """

    object_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    container: str
    object_name: str
    content_type: str = "application/json"
    size_bytes: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None
    access_url: Optional[str] = None

    @property
    def is_expired(self) -> bool:
        """Whether the retention window of the object has passed."""
        if self.expires_at is None:
            return False
        return datetime.now(timezone.utc) >= self.expires_at
