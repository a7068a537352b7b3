"""Scheduler tick: list due jobs, claim each, execute, record the outcome."""

from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass, field

from embedsync.core.config import SyncSettings
from embedsync.core.logging import Logger, get_logger, job_log_context
from embedsync.embeddings.errors import EmbeddingProviderError
from embedsync.vectors import VectorStoreError

from .backoff import BackoffPolicy
from .errors import (
    JobStoreError,
    LeaseLostError,
    SyncError,
    classify_error,
    describe_error,
)
from .executor import SyncExecutor
from .models import ErrorClass, FailureOutcome, FinalizeOutcome, SyncJob
from .store import MAX_ATTEMPTS_EXCEEDED, JobStore

__all__ = ["SyncWorker", "TickReport"]

# Unexpected exception types get a traceback in the log.
_KNOWN_ERRORS = (SyncError, EmbeddingProviderError, VectorStoreError)

# A lease left half-recorded by one of these is recovered by the stale sweep.
_STORE_ERRORS = (JobStoreError, sqlite3.Error)


@dataclass(slots=True)
class TickReport:
    """Counters describing one pass over the due jobs."""

    due: int = 0
    claimed: int = 0
    synced: int = 0
    requeued: int = 0
    retry_scheduled: int = 0
    failed: int = 0
    stale: int = 0
    skipped: int = 0
    embedded_chunks: int = 0
    errors: list[str] = field(default_factory=list)

    def to_mapping(self) -> dict[str, object]:
        return asdict(self)


@dataclass(slots=True)
class SyncWorker:
    """Drive due jobs through the executor.

    A job's failure is classified and recorded on that job; it never stops
    the remaining jobs in the tick.
    """

    store: JobStore
    executor: SyncExecutor
    settings: SyncSettings
    backoff: BackoffPolicy | None = None
    logger: Logger | None = None

    def __post_init__(self) -> None:
        self.logger = self.logger or get_logger(__name__, component="worker")
        if self.backoff is None:
            self.backoff = BackoffPolicy.from_settings(self.settings)

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            limit = self.settings.batch_size
        return max(1, min(int(limit), self.settings.max_batch_size))

    def process_due_jobs(self, limit: int | None = None) -> TickReport:
        report = TickReport()
        jobs = self.store.list_due(self.clamp_limit(limit))
        report.due = len(jobs)
        for job in jobs:
            self._process(job, report)

        self.logger.info(
            "sync-tick-complete",
            due=report.due,
            claimed=report.claimed,
            synced=report.synced,
            requeued=report.requeued,
            retry_scheduled=report.retry_scheduled,
            failed=report.failed,
            stale=report.stale,
        )
        return report

    def _process(self, job: SyncJob, report: TickReport) -> None:
        try:
            self._claim_and_execute(job, report)
        except _STORE_ERRORS as exc:
            message = describe_error(exc)
            report.errors.append(f"{job.target_key}: {message}")
            self.logger.error("sync-job-store-error", job_id=job.id, error=message)

    def _claim_and_execute(self, job: SyncJob, report: TickReport) -> None:
        claim = self.store.claim(job.id, max_attempts=self.settings.max_attempts)
        if not claim.claimed or claim.job is None:
            if claim.reason == MAX_ATTEMPTS_EXCEEDED:
                report.failed += 1
                self.logger.warning(
                    "sync-job-poisoned",
                    job_id=job.id,
                    attempts=job.attempts,
                )
            else:
                report.skipped += 1
                self.logger.debug(
                    "sync-job-claim-skipped",
                    job_id=job.id,
                    reason=claim.reason,
                )
            return

        claimed = claim.job
        report.claimed += 1
        with job_log_context(
            job_id=claimed.id,
            run_id=claimed.processing_run_id,
            target=claimed.target_key,
        ):
            self.logger.info("sync-job-claimed", attempts=claimed.attempts)
            try:
                result = self.executor.execute(claimed)
            except LeaseLostError as exc:
                report.stale += 1
                self.logger.warning("sync-job-lease-lost", error=str(exc))
                return
            except Exception as exc:
                self._record_failure(claimed, exc, report)
                return

            report.embedded_chunks += result.embedded_count
            if result.outcome is FinalizeOutcome.SYNCED:
                report.synced += 1
            elif result.outcome is FinalizeOutcome.REQUEUED:
                report.requeued += 1
            else:
                report.stale += 1
            self.logger.info(
                "sync-job-finished",
                outcome=str(result.outcome),
                chunk_count=result.chunk_count,
                embedded=result.embedded_count,
            )

    def _record_failure(
        self,
        job: SyncJob,
        exc: Exception,
        report: TickReport,
    ) -> None:
        error_class = classify_error(exc)
        message = describe_error(exc)
        outcome = self.store.record_failure(
            job.id,
            job.processing_run_id or "",
            error=message,
            permanent=error_class is ErrorClass.PERMANENT,
            max_attempts=self.settings.max_attempts,
            backoff=self.backoff,
        )
        report.errors.append(f"{job.target_key}: {message}")
        if outcome is FailureOutcome.FAILED:
            report.failed += 1
        elif outcome is FailureOutcome.RETRY_SCHEDULED:
            report.retry_scheduled += 1
        else:
            report.stale += 1
        self.logger.warning(
            "sync-job-failed",
            error=message,
            error_class=str(error_class),
            outcome=str(outcome),
            attempts=job.attempts,
            exc_info=not isinstance(exc, _KNOWN_ERRORS),
        )
