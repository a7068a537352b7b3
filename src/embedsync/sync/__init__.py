"""Content-to-vector-index synchronization pipeline.

Content mutations call :meth:`SyncService.enqueue`; a scheduler calls
:meth:`SyncService.process_due_jobs` on a short interval and the garbage
collection entry points on longer ones.
"""

from __future__ import annotations

from .backoff import BackoffPolicy
from .chunking import build_chunks, chunk_text, diff_chunks, hash_text
from .errors import (
    LeaseLostError,
    SyncError,
    TargetMismatch,
    TargetNotFound,
    TargetUnresolvable,
    classify_error,
)
from .executor import SyncExecutor, SyncResult
from .gate import EnqueueGate
from .gc import GarbageCollector
from .health import HealthStatus, SyncHealthReport, build_health_report
from .models import (
    Chunk,
    ClaimResult,
    ErrorClass,
    FailureOutcome,
    FinalizeOutcome,
    JobStatus,
    SyncJob,
    TargetType,
)
from .service import SyncService
from .store import JobStore
from .worker import SyncWorker, TickReport

__all__ = [
    "BackoffPolicy",
    "Chunk",
    "ClaimResult",
    "EnqueueGate",
    "ErrorClass",
    "FailureOutcome",
    "FinalizeOutcome",
    "GarbageCollector",
    "HealthStatus",
    "JobStatus",
    "JobStore",
    "LeaseLostError",
    "SyncError",
    "SyncExecutor",
    "SyncHealthReport",
    "SyncJob",
    "SyncResult",
    "SyncService",
    "SyncWorker",
    "TargetMismatch",
    "TargetNotFound",
    "TargetType",
    "TargetUnresolvable",
    "TickReport",
    "build_chunks",
    "build_health_report",
    "chunk_text",
    "classify_error",
    "diff_chunks",
    "hash_text",
]
