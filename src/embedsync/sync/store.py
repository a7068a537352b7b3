"""SQLite-backed job store with atomic state transitions.

Every transition is a single conditional ``UPDATE`` (or runs inside a
``BEGIN IMMEDIATE`` transaction), so several worker processes can share one
database file without double-claiming a job. Connections are opened per
operation; no lock is held while a job is being executed.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator

from embedsync.content import TargetType
from embedsync.core.logging import Logger, get_logger
from embedsync.resources import get_resource
from embedsync.vectors import Filter

from .backoff import BackoffPolicy
from .errors import JobStoreError
from .ids import generate_run_id
from .models import (
    ClaimResult,
    FailureOutcome,
    FinalizeOutcome,
    JobStatus,
    SyncJob,
    VectorDeleteJob,
    from_iso,
    to_iso,
)

__all__ = ["JobStore", "MAX_ATTEMPTS_EXCEEDED", "STALE_PROCESSING_JOB"]

SCHEMA_RESOURCE_NAME = "sync_schema.sql"
MAX_ATTEMPTS_EXCEEDED = "max_attempts_exceeded"
STALE_PROCESSING_JOB = "stale_processing_job"


def _default_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class JobStore:
    """Persistent table of sync jobs and pending vector deletes."""

    path: Path
    now: Callable[[], datetime] = _default_now
    logger: Logger | None = None
    busy_timeout: float = 30.0

    def __post_init__(self) -> None:
        self.path = Path(self.path)
        self.logger = self.logger or get_logger(__name__, component="job-store")

    # ------------------------------------------------------------------#
    # Connection helpers
    # ------------------------------------------------------------------#
    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            connection = sqlite3.connect(
                self.path,
                timeout=self.busy_timeout,
                isolation_level=None,
            )
        except sqlite3.Error as exc:
            raise JobStoreError(
                f"Cannot open job database {self.path}: {exc}"
            ) from exc
        connection.row_factory = sqlite3.Row
        try:
            yield connection
        except sqlite3.Error as exc:
            raise JobStoreError(f"Job database error ({self.path}): {exc}") from exc
        finally:
            connection.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as connection:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                if connection.in_transaction:
                    connection.execute("ROLLBACK")
                raise
            connection.execute("COMMIT")

    def initialize(self) -> None:
        """Create the database file and schema if missing."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        schema = get_resource(SCHEMA_RESOURCE_NAME).read_text(encoding="utf-8")
        with self._connect() as connection:
            connection.execute("PRAGMA journal_mode=WAL")
            connection.executescript(schema)
        self.logger.debug("job-store-initialized", path=str(self.path))

    @staticmethod
    def _fetch_job(
        connection: sqlite3.Connection,
        job_id: int,
    ) -> SyncJob | None:
        row = connection.execute(
            "SELECT * FROM sync_jobs WHERE id = ?",
            (job_id,),
        ).fetchone()
        return SyncJob.from_row(row) if row is not None else None

    # ------------------------------------------------------------------#
    # Lookups
    # ------------------------------------------------------------------#
    def get(self, job_id: int) -> SyncJob | None:
        with self._connect() as connection:
            return self._fetch_job(connection, job_id)

    def get_by_target(
        self,
        project_id: str,
        target_type: TargetType,
        target_id: str,
    ) -> SyncJob | None:
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT * FROM sync_jobs
                WHERE project_id = ? AND target_type = ? AND target_id = ?
                """,
                (project_id, str(target_type), target_id),
            ).fetchone()
        return SyncJob.from_row(row) if row is not None else None

    def list_due(self, limit: int) -> list[SyncJob]:
        """Return pending jobs whose ``next_run_at`` has passed, oldest first."""

        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT * FROM sync_jobs
                WHERE status = 'pending' AND next_run_at <= ?
                ORDER BY next_run_at ASC, id ASC
                LIMIT ?
                """,
                (to_iso(self.now()), limit),
            ).fetchall()
        return [SyncJob.from_row(row) for row in rows]

    def list_pending(self, limit: int) -> list[SyncJob]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT * FROM sync_jobs
                WHERE status = 'pending'
                ORDER BY queued_at ASC, id ASC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [SyncJob.from_row(row) for row in rows]

    def list_stale_processing(
        self,
        *,
        started_before: datetime,
        limit: int,
    ) -> list[SyncJob]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT * FROM sync_jobs
                WHERE status = 'processing' AND processing_started_at < ?
                ORDER BY processing_started_at ASC, id ASC
                LIMIT ?
                """,
                (to_iso(started_before), limit),
            ).fetchall()
        return [SyncJob.from_row(row) for row in rows]

    # ------------------------------------------------------------------#
    # Enqueue
    # ------------------------------------------------------------------#
    def enqueue(
        self,
        project_id: str,
        target_type: TargetType,
        target_id: str,
        *,
        content_hash: str,
        debounce_seconds: float,
    ) -> SyncJob:
        """Insert or coalesce the job for a target in one statement.

        ``pending`` jobs get a new hash and a re-armed debounce timer.
        ``processing`` jobs keep their lease and schedule but are marked
        dirty. ``synced`` and ``failed`` jobs restart as fresh pending jobs.
        """

        now = self.now()
        params = {
            "project_id": project_id,
            "target_type": str(target_type),
            "target_id": target_id,
            "content_hash": content_hash,
            "now": to_iso(now),
            "next_run_at": to_iso(now + timedelta(seconds=debounce_seconds)),
        }
        with self._transaction() as connection:
            connection.execute(
                """
                INSERT INTO sync_jobs (
                    project_id, target_type, target_id, status, attempts,
                    desired_content_hash, dirty, chunks_processed,
                    queued_at, next_run_at, created_at, updated_at
                )
                VALUES (
                    :project_id, :target_type, :target_id, 'pending', 0,
                    :content_hash, 0, 0,
                    :now, :next_run_at, :now, :now
                )
                ON CONFLICT (project_id, target_type, target_id) DO UPDATE SET
                    desired_content_hash = excluded.desired_content_hash,
                    dirty = CASE WHEN status = 'processing' THEN 1 ELSE 0 END,
                    queued_at = CASE WHEN status = 'processing'
                        THEN queued_at ELSE excluded.queued_at END,
                    next_run_at = CASE WHEN status = 'processing'
                        THEN next_run_at ELSE excluded.next_run_at END,
                    attempts = CASE WHEN status IN ('synced', 'failed')
                        THEN 0 ELSE attempts END,
                    last_error = CASE WHEN status IN ('synced', 'failed')
                        THEN NULL ELSE last_error END,
                    failed_at = NULL,
                    status = CASE WHEN status = 'processing'
                        THEN 'processing' ELSE 'pending' END,
                    updated_at = excluded.updated_at
                """,
                params,
            )
            row = connection.execute(
                """
                SELECT * FROM sync_jobs
                WHERE project_id = ? AND target_type = ? AND target_id = ?
                """,
                (project_id, str(target_type), target_id),
            ).fetchone()
        return SyncJob.from_row(row)

    # ------------------------------------------------------------------#
    # Claim / progress / finalize
    # ------------------------------------------------------------------#
    def claim(self, job_id: int, *, max_attempts: int) -> ClaimResult:
        """Atomically move a due pending job to ``processing``."""

        now = to_iso(self.now())
        run_id = generate_run_id()
        with self._transaction() as connection:
            cursor = connection.execute(
                """
                UPDATE sync_jobs SET
                    status = 'processing',
                    processing_run_id = :run_id,
                    processing_started_at = :now,
                    attempts = attempts + 1,
                    dirty = 0,
                    last_error = NULL,
                    chunks_processed = 0,
                    updated_at = :now
                WHERE id = :id
                  AND status = 'pending'
                  AND next_run_at <= :now
                  AND attempts < :max_attempts
                """,
                {
                    "id": job_id,
                    "run_id": run_id,
                    "now": now,
                    "max_attempts": max_attempts,
                },
            )
            if cursor.rowcount == 1:
                return ClaimResult(
                    claimed=True,
                    job=self._fetch_job(connection, job_id),
                )

            job = self._fetch_job(connection, job_id)
            if job is None:
                return ClaimResult(claimed=False, reason="missing")
            if job.status is not JobStatus.PENDING:
                return ClaimResult(claimed=False, job=job, reason="not_pending")
            if job.attempts >= max_attempts:
                connection.execute(
                    """
                    UPDATE sync_jobs SET
                        status = 'failed',
                        last_error = ?,
                        failed_at = ?,
                        updated_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (MAX_ATTEMPTS_EXCEEDED, now, now, job_id),
                )
                return ClaimResult(
                    claimed=False,
                    job=self._fetch_job(connection, job_id),
                    reason=MAX_ATTEMPTS_EXCEEDED,
                )
            return ClaimResult(claimed=False, job=job, reason="not_due")

    def update_progress(
        self,
        job_id: int,
        run_id: str,
        chunks_processed: int,
    ) -> bool:
        """Record progress; ``False`` means the lease is no longer held."""

        with self._connect() as connection:
            cursor = connection.execute(
                """
                UPDATE sync_jobs SET chunks_processed = ?, updated_at = ?
                WHERE id = ? AND status = 'processing' AND processing_run_id = ?
                """,
                (chunks_processed, to_iso(self.now()), job_id, run_id),
            )
        return cursor.rowcount == 1

    def finalize(
        self,
        job_id: int,
        run_id: str,
        *,
        processed_content_hash: str,
        chunks_processed: int,
        requeue_delay_seconds: float,
    ) -> FinalizeOutcome:
        """Complete a run; requeue when the text moved on during it."""

        now = self.now()
        with self._transaction() as connection:
            cursor = connection.execute(
                """
                UPDATE sync_jobs SET
                    status = CASE
                        WHEN dirty = 1 OR desired_content_hash IS NOT :hash
                        THEN 'pending' ELSE 'synced' END,
                    next_run_at = CASE
                        WHEN dirty = 1 OR desired_content_hash IS NOT :hash
                        THEN :requeue_at ELSE next_run_at END,
                    queued_at = CASE
                        WHEN dirty = 1 OR desired_content_hash IS NOT :hash
                        THEN :now ELSE queued_at END,
                    processed_content_hash = :hash,
                    chunks_processed = :chunks,
                    attempts = 0,
                    dirty = 0,
                    processing_run_id = NULL,
                    processing_started_at = NULL,
                    last_error = NULL,
                    updated_at = :now
                WHERE id = :id
                  AND status = 'processing'
                  AND processing_run_id = :run_id
                """,
                {
                    "id": job_id,
                    "run_id": run_id,
                    "hash": processed_content_hash,
                    "chunks": chunks_processed,
                    "now": to_iso(now),
                    "requeue_at": to_iso(
                        now + timedelta(seconds=requeue_delay_seconds)
                    ),
                },
            )
            if cursor.rowcount != 1:
                return FinalizeOutcome.STALE
            job = self._fetch_job(connection, job_id)

        if job is not None and job.status is JobStatus.PENDING:
            return FinalizeOutcome.REQUEUED
        return FinalizeOutcome.SYNCED

    def record_failure(
        self,
        job_id: int,
        run_id: str,
        *,
        error: str,
        permanent: bool,
        max_attempts: int,
        backoff: BackoffPolicy,
    ) -> FailureOutcome:
        """Fail or reschedule a run that raised; stale run ids are ignored."""

        now = self.now()
        with self._transaction() as connection:
            job = self._fetch_job(connection, job_id)
            if (
                job is None
                or job.status is not JobStatus.PROCESSING
                or job.processing_run_id != run_id
            ):
                return FailureOutcome.STALE

            if permanent or job.attempts >= max_attempts:
                connection.execute(
                    """
                    UPDATE sync_jobs SET
                        status = 'failed',
                        last_error = ?,
                        failed_at = ?,
                        processing_run_id = NULL,
                        processing_started_at = NULL,
                        dirty = 0,
                        updated_at = ?
                    WHERE id = ? AND processing_run_id = ?
                    """,
                    (error, to_iso(now), to_iso(now), job_id, run_id),
                )
                return FailureOutcome.FAILED

            retry_at = now + timedelta(seconds=backoff.delay(job.attempts))
            connection.execute(
                """
                UPDATE sync_jobs SET
                    status = 'pending',
                    last_error = ?,
                    next_run_at = ?,
                    processing_run_id = NULL,
                    processing_started_at = NULL,
                    dirty = 0,
                    updated_at = ?
                WHERE id = ? AND processing_run_id = ?
                """,
                (error, to_iso(retry_at), to_iso(now), job_id, run_id),
            )
            return FailureOutcome.RETRY_SCHEDULED

    # ------------------------------------------------------------------#
    # Garbage collection
    # ------------------------------------------------------------------#
    def requeue_stale(
        self,
        job_id: int,
        run_id: str,
        *,
        max_attempts: int,
    ) -> JobStatus | None:
        """Release an expired lease; ``None`` if the lease changed meanwhile."""

        now = to_iso(self.now())
        with self._transaction() as connection:
            cursor = connection.execute(
                """
                UPDATE sync_jobs SET
                    status = CASE WHEN attempts >= :max_attempts
                        THEN 'failed' ELSE 'pending' END,
                    failed_at = CASE WHEN attempts >= :max_attempts
                        THEN :now ELSE NULL END,
                    next_run_at = :now,
                    last_error = :error,
                    processing_run_id = NULL,
                    processing_started_at = NULL,
                    updated_at = :now
                WHERE id = :id
                  AND status = 'processing'
                  AND processing_run_id = :run_id
                """,
                {
                    "id": job_id,
                    "run_id": run_id,
                    "now": now,
                    "max_attempts": max_attempts,
                    "error": STALE_PROCESSING_JOB,
                },
            )
            if cursor.rowcount != 1:
                return None
            job = self._fetch_job(connection, job_id)
        return job.status if job is not None else None

    def delete_failed_before(self, cutoff: datetime, *, limit: int) -> int:
        with self._transaction() as connection:
            cursor = connection.execute(
                """
                DELETE FROM sync_jobs WHERE id IN (
                    SELECT id FROM sync_jobs
                    WHERE status = 'failed' AND failed_at < ?
                    ORDER BY failed_at ASC
                    LIMIT ?
                )
                """,
                (to_iso(cutoff), limit),
            )
            return cursor.rowcount

    def delete_orphan(self, job: SyncJob) -> bool:
        """Drop a pending job whose target is gone and schedule its deletes.

        The delete only applies if the row was not re-enqueued since
        ``job`` was read.
        """

        now = self.now()
        with self._transaction() as connection:
            cursor = connection.execute(
                """
                DELETE FROM sync_jobs
                WHERE id = ? AND status = 'pending' AND queued_at = ?
                """,
                (job.id, to_iso(job.queued_at)),
            )
            if cursor.rowcount != 1:
                return False
            self._insert_vector_delete(
                connection,
                project_id=job.project_id,
                target_type=job.target_type,
                target_id=job.target_id,
                filter=Filter.for_target(
                    job.project_id, str(job.target_type), job.target_id
                ),
                run_at=now,
                now=now,
            )
        return True

    # ------------------------------------------------------------------#
    # Cascading deletes and the vector-delete outbox
    # ------------------------------------------------------------------#
    def delete_for_target(
        self,
        project_id: str,
        target_type: TargetType,
        target_id: str,
        *,
        lease_ttl_seconds: float,
    ) -> bool:
        """Remove a target's job and queue deletion of its indexed chunks.

        When a run for the target is still in flight the vector delete is
        held back until that run's lease would expire, so late upserts from
        the run are removed too.
        """

        now = self.now()
        with self._transaction() as connection:
            row = connection.execute(
                """
                SELECT * FROM sync_jobs
                WHERE project_id = ? AND target_type = ? AND target_id = ?
                """,
                (project_id, str(target_type), target_id),
            ).fetchone()
            job = SyncJob.from_row(row) if row is not None else None
            if job is not None:
                connection.execute("DELETE FROM sync_jobs WHERE id = ?", (job.id,))

            run_at = now
            if (
                job is not None
                and job.status is JobStatus.PROCESSING
                and job.processing_started_at is not None
            ):
                run_at = max(
                    now,
                    job.processing_started_at
                    + timedelta(seconds=lease_ttl_seconds),
                )
            self._insert_vector_delete(
                connection,
                project_id=project_id,
                target_type=target_type,
                target_id=target_id,
                filter=Filter.for_target(project_id, str(target_type), target_id),
                run_at=run_at,
                now=now,
            )
        return job is not None

    def delete_for_project(
        self,
        project_id: str,
        *,
        lease_ttl_seconds: float,
    ) -> int:
        """Remove every job of a project and queue one project-wide delete."""

        now = self.now()
        with self._transaction() as connection:
            latest = connection.execute(
                """
                SELECT MAX(processing_started_at) FROM sync_jobs
                WHERE project_id = ? AND status = 'processing'
                """,
                (project_id,),
            ).fetchone()[0]
            # Superseded target deletes may be held back for runs whose
            # jobs are already gone; the project delete inherits that wait.
            deferred = connection.execute(
                """
                SELECT MAX(next_run_at) FROM vector_delete_jobs
                WHERE project_id = ? AND status = 'pending'
                """,
                (project_id,),
            ).fetchone()[0]
            cursor = connection.execute(
                "DELETE FROM sync_jobs WHERE project_id = ?",
                (project_id,),
            )
            deleted = cursor.rowcount
            # Target-level deletes are subsumed by the project-wide filter.
            connection.execute(
                """
                DELETE FROM vector_delete_jobs
                WHERE project_id = ? AND status = 'pending'
                """,
                (project_id,),
            )

            run_at = now
            started = from_iso(latest)
            if started is not None:
                run_at = max(run_at, started + timedelta(seconds=lease_ttl_seconds))
            held_until = from_iso(deferred)
            if held_until is not None:
                run_at = max(run_at, held_until)
            self._insert_vector_delete(
                connection,
                project_id=project_id,
                target_type=None,
                target_id=None,
                filter=Filter.for_project(project_id),
                run_at=run_at,
                now=now,
            )
        return deleted

    @staticmethod
    def _insert_vector_delete(
        connection: sqlite3.Connection,
        *,
        project_id: str,
        target_type: TargetType | None,
        target_id: str | None,
        filter: Filter,
        run_at: datetime,
        now: datetime,
    ) -> None:
        connection.execute(
            """
            INSERT INTO vector_delete_jobs (
                project_id, target_type, target_id, filter_json, status,
                attempts, next_run_at, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, 'pending', 0, ?, ?, ?)
            """,
            (
                project_id,
                str(target_type) if target_type is not None else None,
                target_id,
                json.dumps(filter.to_mapping(), sort_keys=True),
                to_iso(run_at),
                to_iso(now),
                to_iso(now),
            ),
        )

    def list_due_vector_deletes(self, limit: int) -> list[VectorDeleteJob]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT * FROM vector_delete_jobs
                WHERE status = 'pending' AND next_run_at <= ?
                ORDER BY next_run_at ASC, id ASC
                LIMIT ?
                """,
                (to_iso(self.now()), limit),
            ).fetchall()
        return [VectorDeleteJob.from_row(row) for row in rows]

    def complete_vector_delete(self, delete_id: int) -> None:
        with self._connect() as connection:
            connection.execute(
                "DELETE FROM vector_delete_jobs WHERE id = ?",
                (delete_id,),
            )

    def fail_vector_delete(
        self,
        delete_id: int,
        *,
        error: str,
        max_attempts: int,
        backoff: BackoffPolicy,
    ) -> JobStatus | None:
        now = self.now()
        with self._transaction() as connection:
            row = connection.execute(
                "SELECT attempts FROM vector_delete_jobs WHERE id = ?",
                (delete_id,),
            ).fetchone()
            if row is None:
                return None
            attempts = int(row["attempts"]) + 1
            if attempts >= max_attempts:
                connection.execute(
                    """
                    UPDATE vector_delete_jobs SET
                        status = 'failed', attempts = ?, last_error = ?,
                        failed_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (attempts, error, to_iso(now), to_iso(now), delete_id),
                )
                return JobStatus.FAILED
            retry_at = now + timedelta(seconds=backoff.delay(attempts))
            connection.execute(
                """
                UPDATE vector_delete_jobs SET
                    attempts = ?, last_error = ?, next_run_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (attempts, error, to_iso(retry_at), to_iso(now), delete_id),
            )
            return JobStatus.PENDING

    def delete_failed_vector_deletes_before(
        self,
        cutoff: datetime,
        *,
        limit: int,
    ) -> int:
        with self._transaction() as connection:
            cursor = connection.execute(
                """
                DELETE FROM vector_delete_jobs WHERE id IN (
                    SELECT id FROM vector_delete_jobs
                    WHERE status = 'failed' AND failed_at < ?
                    ORDER BY failed_at ASC
                    LIMIT ?
                )
                """,
                (to_iso(cutoff), limit),
            )
            return cursor.rowcount

    # ------------------------------------------------------------------#
    # Health queries
    # ------------------------------------------------------------------#
    def status_counts(self) -> dict[JobStatus, int]:
        counts = {status: 0 for status in JobStatus}
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT status, COUNT(*) AS total FROM sync_jobs GROUP BY status"
            ).fetchall()
        for row in rows:
            counts[JobStatus(row["status"])] = int(row["total"])
        return counts

    def oldest_failed_at(self) -> datetime | None:
        with self._connect() as connection:
            value = connection.execute(
                "SELECT MIN(failed_at) FROM sync_jobs WHERE status = 'failed'"
            ).fetchone()[0]
        return from_iso(value)

    def count_stale_processing(self, *, started_before: datetime) -> int:
        with self._connect() as connection:
            value = connection.execute(
                """
                SELECT COUNT(*) FROM sync_jobs
                WHERE status = 'processing' AND processing_started_at < ?
                """,
                (to_iso(started_before),),
            ).fetchone()[0]
        return int(value)

    def vector_delete_counts(self) -> dict[str, int]:
        counts = {"pending": 0, "failed": 0}
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT status, COUNT(*) AS total FROM vector_delete_jobs
                GROUP BY status
                """
            ).fetchall()
        for row in rows:
            counts[row["status"]] = int(row["total"])
        return counts

    def recent_failures(self, limit: int = 5) -> list[SyncJob]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT * FROM sync_jobs WHERE status = 'failed'
                ORDER BY failed_at DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [SyncJob.from_row(row) for row in rows]
