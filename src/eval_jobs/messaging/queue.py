"""SQLite-backed message queue with leases and a dead-letter lane.

Delivery is at-least-once: a received message is hidden behind a lease
until it is completed, abandoned or dead-lettered, and reappears when the
lease runs out. Several worker processes may share one queue database.
"""

import logging
import sqlite3
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

from eval_jobs.errors import QueueError
from eval_jobs.models.messages import JobMessage

logger = logging.getLogger("eval_jobs.messaging.queue")

# Reason recorded when the queue itself gives up on a message
MAX_DELIVERY_COUNT_EXCEEDED = "MaxDeliveryCountExceeded"


class LeaseLostError(QueueError):
    """The lease on a received message expired or was taken over."""

    code = "LEASE_LOST"


@dataclass
class ReceivedMessage:
    """A message delivered to a consumer, together with its lease."""

    seq: int
    message_id: str
    job_id: str
    body: str
    lease_token: str
    lease_expires_at: float
    delivery_count: int
    enqueued_at: float

    def decode(self) -> JobMessage:
        """Parse the body into a JobMessage.

        Raises:
            pydantic.ValidationError: If the body is not a valid message.
        """
        message = JobMessage.model_validate_json(self.body)
        message.retry_count = max(self.delivery_count - 1, 0)
        return message


@dataclass
class DeadLetterEntry:
    """A message parked in the dead-letter lane."""

    seq: int
    message_id: str
    job_id: str
    body: str
    delivery_count: int
    reason: Optional[str]
    description: Optional[str]
    dead_lettered_at: Optional[float]

    @property
    def dead_lettered_datetime(self) -> Optional[datetime]:
        if self.dead_lettered_at is None:
            return None
        return datetime.fromtimestamp(self.dead_lettered_at, tz=timezone.utc)


class MessageQueue:
    """Durable job queue.

    Args:
        db_path: Path to the SQLite database file.
        queue_name: Logical queue name; several queues may share one file.
        lease_seconds: How long a received message stays hidden.
        max_delivery_count: Deliveries after which an unsettled message is
            moved to the dead-letter lane.
        session_ordering: When on, messages of one job are delivered in
            enqueue order and never two at a time.
    """

    def __init__(
        self,
        db_path: Path | str = "eval-jobs-queue.db",
        queue_name: str = "evaluation-jobs",
        lease_seconds: float = 60.0,
        max_delivery_count: int = 3,
        session_ordering: bool = True,
    ):
        self._db_path = Path(db_path)
        self.queue_name = queue_name
        self.lease_seconds = lease_seconds
        self.max_delivery_count = max_delivery_count
        self.session_ordering = session_ordering
        self._initialized = False

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open an autocommit connection; transactions are explicit."""
        try:
            async with aiosqlite.connect(
                self._db_path, timeout=30.0, isolation_level=None
            ) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except sqlite3.Error as e:
            raise QueueError(f"Queue operation failed: {e}") from e

    async def initialize(self) -> None:
        """Initialize the database schema."""
        if self._initialized:
            return

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS queue_messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue_name TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    body TEXT NOT NULL,
                    enqueued_at REAL NOT NULL,
                    visible_at REAL NOT NULL,
                    lease_token TEXT,
                    lease_expires_at REAL,
                    delivery_count INTEGER NOT NULL DEFAULT 0,
                    dead_lettered INTEGER NOT NULL DEFAULT 0,
                    dead_letter_reason TEXT,
                    dead_letter_description TEXT,
                    dead_lettered_at REAL
                )
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_ready
                ON queue_messages(queue_name, dead_lettered, visible_at)
            """)
            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_session
                ON queue_messages(queue_name, job_id, seq)
            """)

        self._initialized = True

    async def send(self, message: JobMessage, delay_seconds: float = 0.0) -> None:
        """Enqueue a message.

        Args:
            message: Message to enqueue.
            delay_seconds: Keep the message invisible for this long.

        Raises:
            QueueError: If the message could not be enqueued.
        """
        await self.initialize()

        now = time.time()
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO queue_messages
                (queue_name, message_id, job_id, body, enqueued_at, visible_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    self.queue_name,
                    message.message_id,
                    message.job_id,
                    message.model_dump_json(),
                    now,
                    now + delay_seconds,
                ),
            )

        logger.debug(
            f"Enqueued {message.message_type.value} message {message.message_id} "
            f"for job {message.job_id}"
        )

    async def receive(self) -> Optional[ReceivedMessage]:
        """Lease the next deliverable message, if any.

        Messages whose lease expired after ``max_delivery_count``
        deliveries are moved to the dead-letter lane instead of being
        delivered again.

        Returns:
            The leased message, or None when nothing is deliverable.
        """
        await self.initialize()

        now = time.time()
        session_clause = ""
        if self.session_ordering:
            session_clause = """
                AND m.seq = (
                    SELECT MIN(o.seq) FROM queue_messages o
                    WHERE o.queue_name = m.queue_name
                      AND o.job_id = m.job_id
                      AND o.dead_lettered = 0
                )
            """

        async with self._connect() as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                await db.execute(
                    """
                    UPDATE queue_messages
                    SET dead_lettered = 1, dead_letter_reason = ?,
                        dead_letter_description = ?, dead_lettered_at = ?,
                        lease_token = NULL, lease_expires_at = NULL
                    WHERE queue_name = ? AND dead_lettered = 0
                      AND lease_expires_at IS NOT NULL AND lease_expires_at <= ?
                      AND delivery_count >= ?
                    """,
                    (
                        MAX_DELIVERY_COUNT_EXCEEDED,
                        f"Lease expired after {self.max_delivery_count} deliveries",
                        now,
                        self.queue_name,
                        now,
                        self.max_delivery_count,
                    ),
                )

                async with db.execute(
                    f"""
                    SELECT * FROM queue_messages m
                    WHERE m.queue_name = ? AND m.dead_lettered = 0
                      AND m.visible_at <= ?
                      AND (m.lease_expires_at IS NULL OR m.lease_expires_at <= ?)
                      {session_clause}
                    ORDER BY m.seq
                    LIMIT 1
                    """,
                    (self.queue_name, now, now),
                ) as cursor:
                    row = await cursor.fetchone()

                if row is None:
                    await db.execute("COMMIT")
                    return None

                token = uuid.uuid4().hex
                expires = now + self.lease_seconds
                await db.execute(
                    """
                    UPDATE queue_messages
                    SET lease_token = ?, lease_expires_at = ?, delivery_count = delivery_count + 1
                    WHERE seq = ?
                    """,
                    (token, expires, row["seq"]),
                )
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise

        return ReceivedMessage(
            seq=row["seq"],
            message_id=row["message_id"],
            job_id=row["job_id"],
            body=row["body"],
            lease_token=token,
            lease_expires_at=expires,
            delivery_count=row["delivery_count"] + 1,
            enqueued_at=row["enqueued_at"],
        )

    async def _settle(self, received: ReceivedMessage, sql: str, params: tuple) -> None:
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute(sql, params)
            if cursor.rowcount != 1:
                raise LeaseLostError(
                    f"Lease on message {received.message_id} is no longer held"
                )

    async def complete(self, received: ReceivedMessage) -> None:
        """Acknowledge a message and remove it from the queue.

        Raises:
            LeaseLostError: If the lease was lost before settling.
        """
        await self._settle(
            received,
            "DELETE FROM queue_messages WHERE seq = ? AND lease_token = ?",
            (received.seq, received.lease_token),
        )

    async def abandon(self, received: ReceivedMessage, delay_seconds: float = 0.0) -> None:
        """Release a message for redelivery.

        Args:
            received: The leased message.
            delay_seconds: Keep it invisible for this long before redelivery.
        """
        await self._settle(
            received,
            """
            UPDATE queue_messages
            SET lease_token = NULL, lease_expires_at = NULL, visible_at = ?
            WHERE seq = ? AND lease_token = ?
            """,
            (time.time() + delay_seconds, received.seq, received.lease_token),
        )
        logger.debug(
            f"Abandoned message {received.message_id} (delivery {received.delivery_count})"
        )

    async def dead_letter(
        self,
        received: ReceivedMessage,
        reason: str,
        description: Optional[str] = None,
    ) -> None:
        """Move a message to the dead-letter lane.

        Args:
            received: The leased message.
            reason: Short machine-readable reason.
            description: Human-readable detail.
        """
        await self._settle(
            received,
            """
            UPDATE queue_messages
            SET dead_lettered = 1, dead_letter_reason = ?, dead_letter_description = ?,
                dead_lettered_at = ?, lease_token = NULL, lease_expires_at = NULL
            WHERE seq = ? AND lease_token = ?
            """,
            (reason, description, time.time(), received.seq, received.lease_token),
        )
        logger.warning(
            f"Dead-lettered message {received.message_id} for job {received.job_id}: {reason}"
        )

    async def renew_lease(self, received: ReceivedMessage) -> float:
        """Extend the lease on a message.

        Returns:
            The new lease expiry (epoch seconds).

        Raises:
            LeaseLostError: If the lease is no longer held.
        """
        expires = time.time() + self.lease_seconds
        await self._settle(
            received,
            "UPDATE queue_messages SET lease_expires_at = ? WHERE seq = ? AND lease_token = ?",
            (expires, received.seq, received.lease_token),
        )
        received.lease_expires_at = expires
        return expires

    async def list_dead_letters(self, limit: int = 50) -> list[DeadLetterEntry]:
        """Messages in the dead-letter lane, most recent first."""
        await self.initialize()

        async with self._connect() as db:
            async with db.execute(
                """
                SELECT * FROM queue_messages
                WHERE queue_name = ? AND dead_lettered = 1
                ORDER BY dead_lettered_at DESC, seq DESC
                LIMIT ?
                """,
                (self.queue_name, limit),
            ) as cursor:
                rows = await cursor.fetchall()

        return [
            DeadLetterEntry(
                seq=row["seq"],
                message_id=row["message_id"],
                job_id=row["job_id"],
                body=row["body"],
                delivery_count=row["delivery_count"],
                reason=row["dead_letter_reason"],
                description=row["dead_letter_description"],
                dead_lettered_at=row["dead_lettered_at"],
            )
            for row in rows
        ]

    async def resubmit_dead_letter(self, seq: int) -> bool:
        """Return a dead-lettered message to the active lane with a fresh count.

        Returns:
            True if a dead-lettered message with that sequence number existed.
        """
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE queue_messages
                SET dead_lettered = 0, dead_letter_reason = NULL, dead_letter_description = NULL,
                    dead_lettered_at = NULL, delivery_count = 0, visible_at = ?
                WHERE seq = ? AND queue_name = ? AND dead_lettered = 1
                """,
                (time.time(), seq, self.queue_name),
            )
            return cursor.rowcount == 1

    async def is_deliverable(self, message_id: str) -> bool:
        """Whether a message is still in the active lane of this queue."""
        await self.initialize()

        async with self._connect() as db:
            async with db.execute(
                """
                SELECT 1 FROM queue_messages
                WHERE queue_name = ? AND message_id = ? AND dead_lettered = 0
                LIMIT 1
                """,
                (self.queue_name, message_id),
            ) as cursor:
                row = await cursor.fetchone()
        return row is not None

    async def depth(self) -> int:
        """Number of messages in the active lane."""
        return await self._count(dead_lettered=False)

    async def dead_letter_count(self) -> int:
        """Number of messages in the dead-letter lane."""
        return await self._count(dead_lettered=True)

    async def _count(self, dead_lettered: bool) -> int:
        await self.initialize()

        async with self._connect() as db:
            async with db.execute(
                """
                SELECT COUNT(*) AS count FROM queue_messages
                WHERE queue_name = ? AND dead_lettered = ?
                """,
                (self.queue_name, int(dead_lettered)),
            ) as cursor:
                row = await cursor.fetchone()
        return row["count"]
