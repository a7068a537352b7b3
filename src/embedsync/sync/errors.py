"""Error taxonomy for the sync pipeline."""

from __future__ import annotations

import httpx

from embedsync.content import ContentNotFoundError, MalformedTargetError
from embedsync.embeddings.errors import EmbeddingProviderError
from embedsync.vectors import VectorStoreError

from .models import ErrorClass

__all__ = [
    "EmbeddingCountMismatch",
    "JobStoreError",
    "LeaseLostError",
    "MalformedTarget",
    "SyncError",
    "TargetMismatch",
    "TargetNotFound",
    "TargetUnresolvable",
    "UnsupportedTargetType",
    "classify_error",
    "describe_error",
]

_MAX_ERROR_LENGTH = 500


class SyncError(RuntimeError):
    """Base error raised by the sync pipeline."""


class JobStoreError(SyncError):
    """Raised when the job database cannot be opened or migrated."""


class TargetUnresolvable(SyncError):
    """Raised by enqueue when a target's text cannot be read at all."""

    def __init__(self, target_type: str, target_id: str, reason: str) -> None:
        super().__init__(f"Cannot resolve {target_type} {target_id!r}: {reason}")
        self.target_type = target_type
        self.target_id = target_id


class TargetNotFound(SyncError):
    """The target record vanished before it could be synced."""


class TargetMismatch(SyncError):
    """The target belongs to a different project than its job."""

    def __init__(self, expected_project: str, actual_project: str) -> None:
        super().__init__(
            f"Target belongs to project {actual_project!r}, "
            f"job expects {expected_project!r}"
        )
        self.expected_project = expected_project
        self.actual_project = actual_project


class UnsupportedTargetType(SyncError):
    """The job names a target type the pipeline cannot index."""


class MalformedTarget(SyncError):
    """The target exists but its data cannot be rendered as text."""


class EmbeddingCountMismatch(SyncError):
    """The provider returned a different number of vectors than inputs."""


class LeaseLostError(SyncError):
    """The job's lease was taken over while this run was still working."""


_PERMANENT: tuple[type[BaseException], ...] = (
    TargetNotFound,
    TargetMismatch,
    UnsupportedTargetType,
    MalformedTarget,
    ContentNotFoundError,
    MalformedTargetError,
)


def classify_error(exc: BaseException) -> ErrorClass:
    """Return whether a job failing with ``exc`` should be retried.

    Unknown exceptions are transient; the attempts ceiling turns a
    repeatedly failing job into a failed one regardless of class.

    Example:
        >>> classify_error(TargetNotFound("gone"))
        <ErrorClass.PERMANENT: 'permanent'>
        >>> classify_error(TimeoutError())
        <ErrorClass.TRANSIENT: 'transient'>
    """

    if isinstance(exc, _PERMANENT):
        return ErrorClass.PERMANENT
    if isinstance(exc, EmbeddingProviderError):
        return ErrorClass.TRANSIENT if exc.retryable else ErrorClass.PERMANENT
    if isinstance(exc, VectorStoreError):
        if exc.retryable or exc.status_code is None:
            return ErrorClass.TRANSIENT
        return ErrorClass.PERMANENT
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in {408, 429} or status >= 500:
            return ErrorClass.TRANSIENT
        return ErrorClass.PERMANENT
    return ErrorClass.TRANSIENT


def describe_error(exc: BaseException) -> str:
    """Return a bounded ``Type: message`` string stored as ``last_error``."""

    message = str(exc).strip()
    text = f"{type(exc).__name__}: {message}" if message else type(exc).__name__
    if len(text) > _MAX_ERROR_LENGTH:
        text = text[: _MAX_ERROR_LENGTH - 3] + "..."
    return text
