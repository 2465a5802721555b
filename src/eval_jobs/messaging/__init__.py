"""Job queue and message payload handling."""

from eval_jobs.messaging.offload import pack_message, resolve_payload
from eval_jobs.messaging.queue import (
    DeadLetterEntry,
    LeaseLostError,
    MessageQueue,
    ReceivedMessage,
)

__all__ = [
    "DeadLetterEntry",
    "LeaseLostError",
    "MessageQueue",
    "ReceivedMessage",
    "pack_message",
    "resolve_payload",
]
