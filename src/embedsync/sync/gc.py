"""Garbage collection: expired leases, old failures, orphans, vector deletes."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from embedsync.content import ContentNotFoundError, ContentStore, ContentStoreError
from embedsync.core.config import SyncSettings
from embedsync.core.logging import Logger, get_logger
from embedsync.vectors import VectorStore

from .backoff import BackoffPolicy
from .errors import describe_error
from .models import JobStatus
from .store import JobStore

__all__ = [
    "CleanupReport",
    "GarbageCollector",
    "StaleRequeueReport",
    "VectorDeleteReport",
]


def _default_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class StaleRequeueReport:
    scanned: int = 0
    requeued: int = 0
    failed: int = 0
    skipped: int = 0

    def to_mapping(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class CleanupReport:
    failed_deleted: int = 0
    orphans_scanned: int = 0
    orphans_deleted: int = 0
    vector_deletes_pruned: int = 0

    def to_mapping(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class VectorDeleteReport:
    due: int = 0
    deleted: int = 0
    retry_scheduled: int = 0
    failed: int = 0

    def to_mapping(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class GarbageCollector:
    """Periodic maintenance over the job store.

    Runs independently of the worker; every mutation is a conditional
    update, so a collector racing a worker only ever loses the race.
    """

    store: JobStore
    content: ContentStore
    vectors: VectorStore
    settings: SyncSettings
    backoff: BackoffPolicy | None = None
    logger: Logger | None = None
    now: Callable[[], datetime] = _default_now

    def __post_init__(self) -> None:
        self.logger = self.logger or get_logger(__name__, component="gc")
        if self.backoff is None:
            self.backoff = BackoffPolicy.from_settings(self.settings)

    def requeue_stale_processing_jobs(self) -> StaleRequeueReport:
        """Release leases older than the lease TTL."""

        report = StaleRequeueReport()
        cutoff = self.now() - timedelta(seconds=self.settings.lease_ttl_seconds)
        jobs = self.store.list_stale_processing(
            started_before=cutoff,
            limit=self.settings.scan_limit,
        )
        report.scanned = len(jobs)
        for job in jobs:
            status = self.store.requeue_stale(
                job.id,
                job.processing_run_id or "",
                max_attempts=self.settings.max_attempts,
            )
            if status is JobStatus.FAILED:
                report.failed += 1
            elif status is JobStatus.PENDING:
                report.requeued += 1
            else:
                report.skipped += 1
                continue
            self.logger.warning(
                "sync-job-lease-expired",
                job_id=job.id,
                run_id=job.processing_run_id,
                attempts=job.attempts,
                status=str(status),
            )
        return report

    def cleanup_jobs(self) -> CleanupReport:
        """Prune old failures and drop pending jobs whose target is gone."""

        report = CleanupReport()
        retention = timedelta(days=self.settings.failed_retention_days)
        cutoff = self.now() - retention
        report.failed_deleted = self.store.delete_failed_before(
            cutoff,
            limit=self.settings.scan_limit,
        )
        report.vector_deletes_pruned = (
            self.store.delete_failed_vector_deletes_before(
                cutoff,
                limit=self.settings.scan_limit,
            )
        )

        pending = self.store.list_pending(self.settings.scan_limit)
        report.orphans_scanned = len(pending)
        for job in pending:
            try:
                self.content.get_text(job.target_type, job.target_id)
            except ContentNotFoundError:
                if self.store.delete_orphan(job):
                    report.orphans_deleted += 1
                    self.logger.info(
                        "sync-job-orphan-deleted",
                        job_id=job.id,
                        target=job.target_key,
                    )
            except ContentStoreError as exc:
                self.logger.warning(
                    "sync-job-orphan-check-failed",
                    job_id=job.id,
                    target=job.target_key,
                    error=describe_error(exc),
                )

        if report.failed_deleted or report.orphans_deleted:
            self.logger.info("sync-cleanup-complete", **report.to_mapping())
        return report

    def process_vector_delete_jobs(
        self,
        limit: int | None = None,
    ) -> VectorDeleteReport:
        """Drain due vector-delete jobs against the vector store."""

        report = VectorDeleteReport()
        batch = limit or self.settings.vector_delete_batch_size
        jobs = self.store.list_due_vector_deletes(batch)
        report.due = len(jobs)
        for job in jobs:
            try:
                self.vectors.delete_by_filter(job.filter)
            except Exception as exc:
                status = self.store.fail_vector_delete(
                    job.id,
                    error=describe_error(exc),
                    max_attempts=self.settings.vector_delete_max_attempts,
                    backoff=self.backoff,
                )
                if status is JobStatus.FAILED:
                    report.failed += 1
                else:
                    report.retry_scheduled += 1
                self.logger.warning(
                    "vector-delete-failed",
                    delete_id=job.id,
                    project_id=job.project_id,
                    target_id=job.target_id,
                    attempts=job.attempts + 1,
                    error=describe_error(exc),
                )
                continue

            self.store.complete_vector_delete(job.id)
            report.deleted += 1
            self.logger.info(
                "vector-delete-complete",
                delete_id=job.id,
                project_id=job.project_id,
                target_type=str(job.target_type) if job.target_type else None,
                target_id=job.target_id,
            )
        return report
