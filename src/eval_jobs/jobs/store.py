"""SQLite-backed job store."""

import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite

from eval_jobs.errors import StoreError
from eval_jobs.jobs.models import Job, JobConfiguration, JobErrorDetails, JobProgress
from eval_jobs.jobs.state_machine import source_statuses
from eval_jobs.models.enums import JobPriority, JobStatus, JobType, SortField, SortOrder
from eval_jobs.models.evaluation import EvaluationResult, JobResults
from eval_jobs.models.objects import ObjectReference

logger = logging.getLogger("eval_jobs.jobs.store")

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


def to_timestamp(value: datetime) -> str:
    """Format a datetime as a fixed-width UTC string that sorts lexically."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def from_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp."""
    return datetime.fromisoformat(value) if value else None


class JobIdCollisionError(StoreError):
    """A generated job id already exists in the store."""

    code = "JOB_ID_COLLISION"


class JobStore:
    """Persists job records and answers filtered, paginated queries.

    Writes after creation are conditional on the current status, so a
    transition is applied only when it is legal from the stored state.
    """

    def __init__(self, db_path: Path | str = "eval-jobs.db"):
        """Initialize the job store.

        Args:
            db_path: Path to the SQLite database file.
        """
        self._db_path = Path(db_path)
        self._initialized = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection, mapping driver failures to StoreError."""
        try:
            async with aiosqlite.connect(self._db_path, timeout=30.0) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StoreError(f"Job store operation failed: {e}") from e

    async def initialize(self) -> None:
        """Initialize the database schema."""
        if self._initialized:
            return

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    type TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    priority TEXT NOT NULL DEFAULT 'normal',
                    configuration_json TEXT NOT NULL,
                    total_items INTEGER NOT NULL DEFAULT 0,
                    completed_items INTEGER NOT NULL DEFAULT 0,
                    percentage REAL NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT,
                    estimated_completion TEXT,
                    error_details_json TEXT,
                    result_reference_json TEXT,
                    results_json TEXT,
                    correlation_id TEXT,
                    active_message_id TEXT
                )
            """)
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_type ON jobs(type)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_created ON jobs(created_at)")

            await db.execute("""
                CREATE TABLE IF NOT EXISTS idempotency_keys (
                    key TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS job_item_results (
                    job_id TEXT NOT NULL,
                    item_index INTEGER NOT NULL,
                    result_json TEXT NOT NULL,
                    recorded_at TEXT NOT NULL,
                    PRIMARY KEY (job_id, item_index)
                )
            """)
            await db.commit()

        self._initialized = True
        logger.debug(f"Job store initialized at {self._db_path}")

    def _row_to_job(self, row: aiosqlite.Row) -> Job:
        """Convert a database row to a Job object."""
        error_details = None
        if row["error_details_json"]:
            error_details = JobErrorDetails.model_validate_json(row["error_details_json"])

        result_reference = None
        if row["result_reference_json"]:
            result_reference = ObjectReference.model_validate_json(row["result_reference_json"])

        results = None
        if row["results_json"]:
            results = JobResults.model_validate_json(row["results_json"])

        return Job(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            type=JobType(row["type"]),
            status=JobStatus(row["status"]),
            priority=JobPriority(row["priority"]),
            configuration=JobConfiguration.model_validate_json(row["configuration_json"]),
            created_at=from_timestamp(row["created_at"]),
            updated_at=from_timestamp(row["updated_at"]),
            completed_at=from_timestamp(row["completed_at"]),
            estimated_completion=from_timestamp(row["estimated_completion"]),
            progress=JobProgress(
                total_items=row["total_items"],
                completed_items=row["completed_items"],
                percentage=row["percentage"],
            ),
            error_details=error_details,
            result_reference=result_reference,
            results=results,
            correlation_id=row["correlation_id"],
        )

    async def create_job(
        self,
        job: Job,
        idempotency_key: Optional[str] = None,
        idempotency_ttl_seconds: int = 86400,
    ) -> tuple[Job, bool]:
        """Persist a new job, honouring an optional idempotency key.

        The job row and the key row are written in one transaction. A key
        that is still within its validity window resolves to the job it was
        first used for.

        Args:
            job: The job to insert.
            idempotency_key: Optional client-supplied key.
            idempotency_ttl_seconds: How long the key stays valid.

        Returns:
            Tuple of (job, created). ``created`` is False when the key
            resolved to an existing job.

        Raises:
            JobIdCollisionError: If the job id is already taken.
            StoreError: On any other persistence failure.
        """
        await self.initialize()

        now = datetime.now(timezone.utc)
        async with self._connect() as db:
            try:
                if idempotency_key:
                    await db.execute(
                        "DELETE FROM idempotency_keys WHERE key = ? AND expires_at <= ?",
                        (idempotency_key, to_timestamp(now)),
                    )
                    existing = await self._lookup_key(db, idempotency_key)
                    if existing:
                        await db.commit()
                        return await self._existing_for_key(existing, idempotency_key), False

                await db.execute(
                    """
                    INSERT INTO jobs (
                        id, name, description, type, status, priority, configuration_json,
                        total_items, completed_items, percentage, created_at, updated_at,
                        correlation_id
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.name,
                        job.description,
                        job.type.value,
                        job.status.value,
                        job.priority.value,
                        job.configuration.model_dump_json(exclude_none=True),
                        job.progress.total_items,
                        job.progress.completed_items,
                        job.progress.percentage,
                        to_timestamp(job.created_at),
                        to_timestamp(job.updated_at),
                        job.correlation_id,
                    ),
                )
                if idempotency_key:
                    expires = now + timedelta(seconds=idempotency_ttl_seconds)
                    await db.execute(
                        """
                        INSERT INTO idempotency_keys (key, job_id, created_at, expires_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (idempotency_key, job.id, to_timestamp(now), to_timestamp(expires)),
                    )
                await db.commit()
            except sqlite3.IntegrityError as e:
                await db.rollback()
                if idempotency_key:
                    # Lost a race against a concurrent submission with the same key
                    existing = await self._lookup_key(db, idempotency_key)
                    if existing:
                        return await self._existing_for_key(existing, idempotency_key), False
                raise JobIdCollisionError(f"Job id {job.id} already exists") from e

        logger.info(f"Created job {job.id}")
        return job, True

    async def _lookup_key(self, db: aiosqlite.Connection, key: str) -> Optional[str]:
        async with db.execute(
            "SELECT job_id FROM idempotency_keys WHERE key = ?", (key,)
        ) as cursor:
            row = await cursor.fetchone()
        return row["job_id"] if row else None

    async def _existing_for_key(self, job_id: str, key: str) -> Job:
        job = await self.get_job(job_id)
        if job is None:
            raise StoreError(f"Idempotency key {key} points at missing job {job_id}")
        logger.info(f"Idempotency key matched existing job {job_id}")
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by ID.

        Args:
            job_id: The job ID.

        Returns:
            Job object or None if not found.
        """
        await self.initialize()

        async with self._connect() as db:
            async with db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return None
        return self._row_to_job(row)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        limit: int = 20,
        offset: int = 0,
        sort: SortField = SortField.CREATED_AT,
        order: SortOrder = SortOrder.DESC,
    ) -> tuple[list[Job], int]:
        """List jobs with filtering, sorting and pagination.

        Args:
            status: Optional status filter.
            job_type: Optional type filter.
            limit: Maximum number of jobs to return.
            offset: Number of matching jobs to skip.
            sort: Sort column.
            order: Sort direction.

        Returns:
            Tuple of (jobs on this page, total matching count).
        """
        await self.initialize()

        clauses = []
        params: list = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if job_type is not None:
            clauses.append("type = ?")
            params.append(job_type.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        # Column and direction come from closed enums
        direction = "ASC" if order == SortOrder.ASC else "DESC"
        order_by = f"ORDER BY {sort.value} {direction}, id {direction}"

        async with self._connect() as db:
            async with db.execute(f"SELECT COUNT(*) AS count FROM jobs {where}", params) as cursor:
                total = (await cursor.fetchone())["count"]

            async with db.execute(
                f"SELECT * FROM jobs {where} {order_by} LIMIT ? OFFSET ?",
                [*params, limit, offset],
            ) as cursor:
                rows = await cursor.fetchall()

        return [self._row_to_job(row) for row in rows], total

    async def transition(
        self,
        job_id: str,
        target: JobStatus,
        *,
        progress: Optional[JobProgress] = None,
        error_details: Optional[JobErrorDetails] = None,
        result_reference: Optional[ObjectReference] = None,
        results: Optional[JobResults] = None,
        message_id: Optional[str] = None,
    ) -> Optional[Job]:
        """Move a job to ``target`` if the stored status allows it.

        ``completed_at`` is written in the same statement as any terminal
        status.

        Args:
            job_id: The job ID.
            target: New status.
            progress: Optional progress to store with the transition.
            error_details: Error details (failed jobs).
            result_reference: Pointer to stored results (completed jobs).
            results: Inline results (completed jobs).
            message_id: Message that started the job (running transition).

        Returns:
            The updated job, or None if the job is missing or the transition
            is not legal from its current status.
        """
        await self.initialize()

        now = to_timestamp(datetime.now(timezone.utc))
        assignments = ["status = ?", "updated_at = ?"]
        params: list = [target.value, now]

        if target.is_terminal:
            assignments.append("completed_at = ?")
            params.append(now)
        if target == JobStatus.RUNNING:
            assignments.append("active_message_id = ?")
            params.append(message_id)
        if progress is not None:
            assignments.extend(["total_items = ?", "completed_items = ?", "percentage = ?"])
            params.extend([progress.total_items, progress.completed_items, progress.percentage])
        if error_details is not None:
            assignments.append("error_details_json = ?")
            params.append(error_details.model_dump_json())
        if result_reference is not None:
            assignments.append("result_reference_json = ?")
            params.append(result_reference.model_dump_json())
        if results is not None:
            assignments.append("results_json = ?")
            params.append(results.model_dump_json())

        sources = [s.value for s in source_statuses(target)]
        placeholders = ",".join("?" * len(sources))

        async with self._connect() as db:
            cursor = await db.execute(
                f"UPDATE jobs SET {', '.join(assignments)} "
                f"WHERE id = ? AND status IN ({placeholders})",
                [*params, job_id, *sources],
            )
            await db.commit()
            changed = cursor.rowcount

        if changed != 1:
            logger.debug(f"Job {job_id} transition to {target.value} not applied")
            return None

        logger.info(f"Job {job_id} status -> {target.value}")
        return await self.get_job(job_id)

    async def update_progress(
        self,
        job_id: str,
        progress: JobProgress,
        estimated_completion: Optional[datetime] = None,
    ) -> bool:
        """Update progress of a running job.

        The update is skipped when the job is not running or when it would
        move ``completed_items`` backwards.

        Args:
            job_id: The job ID.
            progress: New progress.
            estimated_completion: Optional new completion estimate.

        Returns:
            True if the progress was stored.
        """
        await self.initialize()

        now = to_timestamp(datetime.now(timezone.utc))
        eta = to_timestamp(estimated_completion) if estimated_completion else None

        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET total_items = ?, completed_items = ?, percentage = ?, updated_at = ?,
                    estimated_completion = COALESCE(?, estimated_completion)
                WHERE id = ? AND status = ? AND completed_items <= ? AND percentage <= ?
                """,
                (
                    progress.total_items,
                    progress.completed_items,
                    progress.percentage,
                    now,
                    eta,
                    job_id,
                    JobStatus.RUNNING.value,
                    progress.completed_items,
                    progress.percentage,
                ),
            )
            await db.commit()
            return cursor.rowcount == 1

    async def get_active_message_id(self, job_id: str) -> Optional[str]:
        """Id of the message whose delivery moved the job to running."""
        await self.initialize()

        async with self._connect() as db:
            async with db.execute(
                "SELECT active_message_id FROM jobs WHERE id = ?", (job_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return row["active_message_id"] if row else None

    async def save_item_result(
        self,
        job_id: str,
        item_index: int,
        result: EvaluationResult,
    ) -> None:
        """Checkpoint the result of one item so a redelivery can resume.

        Args:
            job_id: The job ID.
            item_index: Position of the item in the dataset.
            result: Scored result.
        """
        await self.initialize()

        async with self._connect() as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO job_item_results
                (job_id, item_index, result_json, recorded_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    job_id,
                    item_index,
                    result.model_dump_json(),
                    to_timestamp(datetime.now(timezone.utc)),
                ),
            )
            await db.commit()

    async def get_item_results(self, job_id: str) -> dict[int, EvaluationResult]:
        """Get checkpointed item results for a job, keyed by item index."""
        await self.initialize()

        results: dict[int, EvaluationResult] = {}
        async with self._connect() as db:
            async with db.execute(
                "SELECT item_index, result_json FROM job_item_results WHERE job_id = ?",
                (job_id,),
            ) as cursor:
                async for row in cursor:
                    results[row["item_index"]] = EvaluationResult.model_validate_json(
                        row["result_json"]
                    )
        return results

    async def list_stale_pending(self, older_than: datetime, limit: int = 100) -> list[Job]:
        """Pending jobs created before ``older_than``, oldest first."""
        await self.initialize()

        async with self._connect() as db:
            async with db.execute(
                """
                SELECT * FROM jobs
                WHERE status = ? AND created_at < ?
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (JobStatus.PENDING.value, to_timestamp(older_than), limit),
            ) as cursor:
                rows = await cursor.fetchall()

        return [self._row_to_job(row) for row in rows]

    async def list_running(self, limit: int = 100) -> dict[str, Optional[str]]:
        """Running jobs, oldest first, mapped to their active message id."""
        await self.initialize()

        async with self._connect() as db:
            async with db.execute(
                """
                SELECT id, active_message_id FROM jobs
                WHERE status = ?
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (JobStatus.RUNNING.value, limit),
            ) as cursor:
                rows = await cursor.fetchall()

        return {row["id"]: row["active_message_id"] for row in rows}

    async def count_by_status(self) -> dict[str, int]:
        """Number of jobs in each status."""
        await self.initialize()

        async with self._connect() as db:
            async with db.execute(
                "SELECT status, COUNT(*) AS count FROM jobs GROUP BY status"
            ) as cursor:
                rows = await cursor.fetchall()

        counts = {status.value: 0 for status in JobStatus}
        counts.update({row["status"]: row["count"] for row in rows})
        return counts
