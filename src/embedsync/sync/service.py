"""Facade wiring the sync components around one job store."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from embedsync.content import ContentStore, TargetType
from embedsync.core.config import AppConfig, SyncSettings
from embedsync.core.logging import Logger, get_logger
from embedsync.core.paths import WorkspacePaths
from embedsync.embeddings import (
    EmbeddingsProvider,
    ProviderRegistry,
    create_default_provider_registry,
)
from embedsync.vectors import VectorStore, create_vector_store

from .backoff import BackoffPolicy
from .executor import SyncExecutor, SyncResult
from .gate import EnqueueGate, coerce_target_type
from .gc import (
    CleanupReport,
    GarbageCollector,
    StaleRequeueReport,
    VectorDeleteReport,
)
from .health import SyncHealthReport, build_health_report
from .models import ClaimResult, SyncJob
from .store import JobStore
from .worker import SyncWorker, TickReport

__all__ = ["SyncService"]


def _default_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SyncService:
    """Entry points exposed to content-store mutations and schedulers.

    Example:
        >>> service = SyncService(store=..., content=..., vectors=...,
        ...                       provider=..., settings=..., model="m")
        ... # doctest: +SKIP
        >>> service.enqueue("p1", "document", "d1")  # doctest: +SKIP
    """

    store: JobStore
    content: ContentStore
    vectors: VectorStore
    provider: EmbeddingsProvider
    settings: SyncSettings
    model: str
    embed_timeout: float | None = None
    logger: Logger | None = None
    now: Callable[[], datetime] = _default_now
    rng: random.Random = field(default_factory=random.Random)
    _gate: EnqueueGate = field(init=False)
    _executor: SyncExecutor = field(init=False)
    _worker: SyncWorker = field(init=False)
    _gc: GarbageCollector = field(init=False)

    def __post_init__(self) -> None:
        self.logger = self.logger or get_logger(__name__, component="sync")
        backoff = BackoffPolicy.from_settings(self.settings, rng=self.rng)
        self._gate = EnqueueGate(
            store=self.store,
            content=self.content,
            settings=self.settings,
            logger=self.logger.bind(component="enqueue"),
        )
        self._executor = SyncExecutor(
            store=self.store,
            content=self.content,
            vectors=self.vectors,
            provider=self.provider,
            settings=self.settings,
            model=self.model,
            embed_timeout=self.embed_timeout,
            now=self.now,
            logger=self.logger.bind(component="executor"),
        )
        self._worker = SyncWorker(
            store=self.store,
            executor=self._executor,
            settings=self.settings,
            backoff=backoff,
            logger=self.logger.bind(component="worker"),
        )
        self._gc = GarbageCollector(
            store=self.store,
            content=self.content,
            vectors=self.vectors,
            settings=self.settings,
            backoff=backoff,
            now=self.now,
            logger=self.logger.bind(component="gc"),
        )

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        paths: WorkspacePaths,
        *,
        content: ContentStore,
        vectors: VectorStore | None = None,
        provider: EmbeddingsProvider | None = None,
        registry: ProviderRegistry | None = None,
        logger: Logger | None = None,
    ) -> "SyncService":
        """Build a service from configuration, creating missing adapters."""

        log = logger or get_logger(__name__, component="sync")
        store = JobStore(paths.jobs_database, logger=log.bind(component="job-store"))
        store.initialize()

        if vectors is None:
            vectors = create_vector_store(config.vector_store, logger=log)
        if provider is None:
            registry = registry or create_default_provider_registry()
            provider_config = {
                "timeout": config.embeddings.timeout,
                **config.embeddings.options,
            }
            provider = registry.create(
                config.embeddings.provider,
                logger=log.bind(provider=config.embeddings.provider),
                config=provider_config,
            )

        return cls(
            store=store,
            content=content,
            vectors=vectors,
            provider=provider,
            settings=config.sync,
            model=config.embeddings.model,
            embed_timeout=config.embeddings.timeout,
            logger=log,
        )

    # ------------------------------------------------------------------#
    # Write path
    # ------------------------------------------------------------------#
    def enqueue(
        self,
        project_id: str,
        target_type: TargetType | str,
        target_id: str,
    ) -> SyncJob:
        return self._gate.enqueue(project_id, target_type, target_id)

    def delete_jobs_for_target(
        self,
        project_id: str,
        target_type: TargetType | str,
        target_id: str,
    ) -> bool:
        """Drop the target's job and schedule deletion of its chunks."""

        existed = self.store.delete_for_target(
            project_id,
            coerce_target_type(target_type),
            target_id,
            lease_ttl_seconds=self.settings.lease_ttl_seconds,
        )
        self.logger.info(
            "sync-target-deleted",
            project_id=project_id,
            target_type=str(target_type),
            target_id=target_id,
            had_job=existed,
        )
        return existed

    def delete_jobs_for_project(self, project_id: str) -> int:
        deleted = self.store.delete_for_project(
            project_id,
            lease_ttl_seconds=self.settings.lease_ttl_seconds,
        )
        self.logger.info(
            "sync-project-deleted",
            project_id=project_id,
            jobs_deleted=deleted,
        )
        return deleted

    # ------------------------------------------------------------------#
    # Scheduler entry points
    # ------------------------------------------------------------------#
    def list_due_jobs(self, limit: int | None = None) -> list[SyncJob]:
        return self.store.list_due(self._worker.clamp_limit(limit))

    def claim(self, job_id: int) -> ClaimResult:
        return self.store.claim(job_id, max_attempts=self.settings.max_attempts)

    def execute(self, job: SyncJob) -> SyncResult:
        return self._executor.execute(job)

    def process_due_jobs(self, limit: int | None = None) -> TickReport:
        return self._worker.process_due_jobs(limit)

    def requeue_stale_processing_jobs(self) -> StaleRequeueReport:
        return self._gc.requeue_stale_processing_jobs()

    def cleanup_jobs(self) -> CleanupReport:
        return self._gc.cleanup_jobs()

    def process_vector_delete_jobs(
        self,
        limit: int | None = None,
    ) -> VectorDeleteReport:
        return self._gc.process_vector_delete_jobs(limit)

    def health(self) -> SyncHealthReport:
        return build_health_report(self.store, self.settings, now=self.now)
