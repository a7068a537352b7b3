"""Health report for the sync pipeline."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Callable

from pydantic import BaseModel, Field

from embedsync.core.config import SyncSettings

from .models import JobStatus
from .store import JobStore

__all__ = ["HealthStatus", "SyncHealthReport", "build_health_report"]


class HealthStatus(StrEnum):
    OK = "ok"
    DEGRADED = "degraded"
    ERROR = "error"


class SyncHealthReport(BaseModel):
    """Snapshot of job store state surfaced to operators."""

    checked_at: datetime = Field(description="When the report was built.")
    status: HealthStatus = Field(description="Overall severity.")
    counts: dict[str, int] = Field(
        default_factory=dict,
        description="Number of jobs per status.",
    )
    oldest_failed_age_seconds: float | None = Field(
        default=None,
        description="Age of the oldest failed job, if any.",
    )
    stale_processing: int = Field(
        default=0,
        description="Processing jobs whose lease has expired.",
    )
    pending_vector_deletes: int = Field(default=0)
    failed_vector_deletes: int = Field(default=0)
    recent_errors: tuple[str, ...] = Field(default_factory=tuple)
    actions: tuple[str, ...] = Field(
        default_factory=tuple,
        description="Suggested remediation steps.",
    )

    model_config = {"validate_assignment": True}


def build_health_report(
    store: JobStore,
    settings: SyncSettings,
    *,
    now: Callable[[], datetime] | None = None,
) -> SyncHealthReport:
    """Summarize the job store.

    ``degraded`` when jobs have failed or leases have expired, ``error``
    when failures are older than the retention window (cleanup is not
    running) or vector deletes have given up.
    """

    current = (now or (lambda: datetime.now(timezone.utc)))()
    counts = store.status_counts()
    oldest_failed = store.oldest_failed_at()
    stale = store.count_stale_processing(
        started_before=current - timedelta(seconds=settings.lease_ttl_seconds)
    )
    deletes = store.vector_delete_counts()

    age = (current - oldest_failed).total_seconds() if oldest_failed else None
    retention = timedelta(days=settings.failed_retention_days).total_seconds()

    status = HealthStatus.OK
    actions: list[str] = []
    if counts[JobStatus.FAILED]:
        status = HealthStatus.DEGRADED
        actions.append(
            "Inspect failed jobs and re-enqueue their targets once fixed."
        )
    if stale:
        status = HealthStatus.DEGRADED
        actions.append("Run `embedsync gc` to release expired leases.")
    if (age is not None and age > retention) or deletes.get("failed", 0):
        status = HealthStatus.ERROR
        actions.append(
            "Check the vector store and schedule `embedsync gc` periodically."
        )

    recent = tuple(
        f"{job.target_key}: {job.last_error}"
        for job in store.recent_failures()
        if job.last_error
    )

    return SyncHealthReport(
        checked_at=current,
        status=status,
        counts={str(key): value for key, value in counts.items()},
        oldest_failed_age_seconds=age,
        stale_processing=stale,
        pending_vector_deletes=deletes.get("pending", 0),
        failed_vector_deletes=deletes.get("failed", 0),
        recent_errors=recent,
        actions=tuple(actions),
    )
