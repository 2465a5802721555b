"""Inline-or-reference handling of message payloads.

A payload larger than the inline threshold is written to the object store
and the message carries only the reference. A message never carries both.
"""

import json
import logging
from typing import Any

from eval_jobs.models.messages import JobMessage
from eval_jobs.storage.object_store import ObjectStore

logger = logging.getLogger("eval_jobs.messaging.offload")

PAYLOAD_CONTAINER = "job-messages"


def payload_size(payload: dict[str, Any]) -> int:
    """Serialized size of a payload in bytes."""
    return len(json.dumps(payload, default=str).encode("utf-8"))


async def pack_message(
    message: JobMessage,
    object_store: ObjectStore,
    max_inline_bytes: int,
) -> JobMessage:
    """Offload the payload of ``message`` when it is too large to travel inline.

    Args:
        message: Message with an inline payload.
        object_store: Where oversized payloads are written.
        max_inline_bytes: Largest payload kept inline.

    Returns:
        The message unchanged, or a copy with an empty payload and a single
        object reference.
    """
    size = payload_size(message.payload)
    if size <= max_inline_bytes:
        return message

    data = json.dumps(message.payload, default=str).encode("utf-8")
    ref = await object_store.put_bytes(
        PAYLOAD_CONTAINER,
        f"{message.job_id}/{message.message_id}.json",
        data,
    )
    logger.info(
        f"Offloaded {size}-byte {message.message_type.value} payload for job "
        f"{message.job_id} to object {ref.object_id}"
    )
    return message.model_copy(update={"payload": {}, "object_refs": [ref]})


async def resolve_payload(message: JobMessage, object_store: ObjectStore) -> dict[str, Any]:
    """Return the message payload, following the object reference if needed.

    Raises:
        ObjectNotFoundError: If the referenced payload is gone.
    """
    if not message.is_offloaded:
        return message.payload

    data = await object_store.get_bytes(message.object_refs[0])
    return json.loads(data)
