"""Enqueue/debounce gate: the write entry point for content changes."""

from __future__ import annotations

from dataclasses import dataclass

from embedsync.content import ContentStore, ContentStoreError, TargetType
from embedsync.core.config import SyncSettings
from embedsync.core.logging import Logger, get_logger

from .chunking import hash_text
from .errors import TargetUnresolvable
from .models import SyncJob
from .store import JobStore

__all__ = ["EnqueueGate", "coerce_target_type"]


def coerce_target_type(value: TargetType | str) -> TargetType:
    """Return ``value`` as a :class:`TargetType`.

    Raises:
        ValueError: If ``value`` names no known target type.
    """

    if isinstance(value, TargetType):
        return value
    return TargetType(str(value).strip().lower())


@dataclass(slots=True)
class EnqueueGate:
    """Coalesce change signals into one pending job per target."""

    store: JobStore
    content: ContentStore
    settings: SyncSettings
    logger: Logger | None = None

    def __post_init__(self) -> None:
        self.logger = self.logger or get_logger(__name__, component="enqueue")

    def enqueue(
        self,
        project_id: str,
        target_type: TargetType | str,
        target_id: str,
    ) -> SyncJob:
        """Record that a target changed and (re)arm its debounce timer.

        Raises:
            TargetUnresolvable: If the target type is unknown or the current
                text cannot be read.
        """

        try:
            kind = coerce_target_type(target_type)
        except ValueError as exc:
            raise TargetUnresolvable(
                str(target_type), target_id, "unsupported target type"
            ) from exc

        try:
            content = self.content.get_text(kind, target_id)
        except ContentStoreError as exc:
            raise TargetUnresolvable(str(kind), target_id, str(exc)) from exc

        content_hash = hash_text(content.text)
        job = self.store.enqueue(
            project_id,
            kind,
            target_id,
            content_hash=content_hash,
            debounce_seconds=self.settings.debounce_seconds,
        )
        self.logger.debug(
            "sync-job-enqueued",
            job_id=job.id,
            project_id=project_id,
            target_type=str(kind),
            target_id=target_id,
            status=str(job.status),
            dirty=job.dirty,
            next_run_at=job.next_run_at.isoformat(),
        )
        return job
