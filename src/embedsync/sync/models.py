"""Typed records for sync jobs and their transitions."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Mapping

from embedsync.content import TargetType
from embedsync.vectors import Filter

__all__ = [
    "Chunk",
    "ClaimResult",
    "ErrorClass",
    "FailureOutcome",
    "FinalizeOutcome",
    "JobStatus",
    "SyncJob",
    "TargetType",
    "VectorDeleteJob",
    "from_iso",
    "to_iso",
]


def to_iso(value: datetime) -> str:
    """Serialize ``value`` as a fixed-width UTC ISO string.

    Fixed width keeps lexicographic order equal to chronological order, so
    timestamps can be compared directly in SQL.
    """

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require_iso(value: str) -> datetime:
    parsed = from_iso(value)
    if parsed is None:
        raise ValueError("timestamp column cannot be NULL")
    return parsed


class JobStatus(StrEnum):
    """Lifecycle states of a sync job."""

    PENDING = "pending"
    PROCESSING = "processing"
    SYNCED = "synced"
    FAILED = "failed"


class ErrorClass(StrEnum):
    """Retry classification for job failures."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class FinalizeOutcome(StrEnum):
    SYNCED = "synced"
    REQUEUED = "requeued"
    STALE = "stale"


class FailureOutcome(StrEnum):
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class SyncJob:
    """One row of the job store; at most one exists per target."""

    id: int
    project_id: str
    target_type: TargetType
    target_id: str
    status: JobStatus
    attempts: int
    desired_content_hash: str | None
    processed_content_hash: str | None
    dirty: bool
    chunks_processed: int
    queued_at: datetime
    next_run_at: datetime
    processing_run_id: str | None
    processing_started_at: datetime | None
    last_error: str | None
    failed_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SyncJob":
        return cls(
            id=int(row["id"]),
            project_id=row["project_id"],
            target_type=TargetType(row["target_type"]),
            target_id=row["target_id"],
            status=JobStatus(row["status"]),
            attempts=int(row["attempts"]),
            desired_content_hash=row["desired_content_hash"],
            processed_content_hash=row["processed_content_hash"],
            dirty=bool(row["dirty"]),
            chunks_processed=int(row["chunks_processed"]),
            queued_at=_require_iso(row["queued_at"]),
            next_run_at=_require_iso(row["next_run_at"]),
            processing_run_id=row["processing_run_id"],
            processing_started_at=from_iso(row["processing_started_at"]),
            last_error=row["last_error"],
            failed_at=from_iso(row["failed_at"]),
            created_at=_require_iso(row["created_at"]),
            updated_at=_require_iso(row["updated_at"]),
        )

    @property
    def target_key(self) -> str:
        return f"{self.project_id}/{self.target_type}/{self.target_id}"

    def to_mapping(self) -> dict[str, Any]:
        """Return a JSON-friendly view used by the CLI."""

        def _iso(value: datetime | None) -> str | None:
            return to_iso(value) if value is not None else None

        return {
            "id": self.id,
            "project_id": self.project_id,
            "target_type": str(self.target_type),
            "target_id": self.target_id,
            "status": str(self.status),
            "attempts": self.attempts,
            "desired_content_hash": self.desired_content_hash,
            "processed_content_hash": self.processed_content_hash,
            "dirty": self.dirty,
            "chunks_processed": self.chunks_processed,
            "queued_at": _iso(self.queued_at),
            "next_run_at": _iso(self.next_run_at),
            "processing_run_id": self.processing_run_id,
            "processing_started_at": _iso(self.processing_started_at),
            "last_error": self.last_error,
            "failed_at": _iso(self.failed_at),
        }


@dataclass(frozen=True, slots=True)
class ClaimResult:
    """Outcome of a claim attempt.

    ``reason`` explains a refusal: ``missing``, ``not_pending``,
    ``not_due`` or ``max_attempts_exceeded``.
    """

    claimed: bool
    job: SyncJob | None = None
    reason: str | None = None

    @property
    def run_id(self) -> str | None:
        return self.job.processing_run_id if self.claimed and self.job else None


@dataclass(frozen=True, slots=True)
class Chunk:
    """One slice of a target's text; ``index`` is part of the point id."""

    index: int
    text: str
    hash: str


@dataclass(frozen=True, slots=True)
class VectorDeleteJob:
    """Durable request to delete indexed points matching ``filter``."""

    id: int
    project_id: str
    target_type: TargetType | None
    target_id: str | None
    filter: Filter
    status: JobStatus
    attempts: int
    next_run_at: datetime
    last_error: str | None
    created_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "VectorDeleteJob":
        raw_filter: Mapping[str, Any] = json.loads(row["filter_json"])
        target_type = row["target_type"]
        return cls(
            id=int(row["id"]),
            project_id=row["project_id"],
            target_type=TargetType(target_type) if target_type else None,
            target_id=row["target_id"],
            filter=Filter.from_mapping(raw_filter),
            status=JobStatus(row["status"]),
            attempts=int(row["attempts"]),
            next_run_at=_require_iso(row["next_run_at"]),
            last_error=row["last_error"],
            created_at=_require_iso(row["created_at"]),
        )
