"""Sync executor: embeds changed chunks and reconciles the vector index."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

from embedsync.content import (
    ContentNotFoundError,
    ContentStore,
    MalformedTargetError,
    TargetContent,
)
from embedsync.core.config import SyncSettings
from embedsync.core.logging import Logger, get_logger
from embedsync.embeddings import EmbedRequestOptions, EmbeddingsProvider
from embedsync.vectors import Filter, VectorPoint, VectorStore, point_key

from .chunking import build_chunks, diff_chunks, existing_chunk_hashes, hash_text
from .errors import (
    EmbeddingCountMismatch,
    LeaseLostError,
    MalformedTarget,
    SyncError,
    TargetMismatch,
    TargetNotFound,
)
from .models import Chunk, FinalizeOutcome, SyncJob, to_iso
from .store import JobStore

__all__ = ["SyncExecutor", "SyncResult"]

CHUNK_INDEX_FIELD = "chunk_index"


def _default_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class SyncResult:
    """Summary of one executed job."""

    job_id: int
    run_id: str
    content_hash: str
    chunk_count: int
    embedded_count: int
    outcome: FinalizeOutcome


@dataclass(slots=True)
class SyncExecutor:
    """Run one claimed job end to end.

    The only component that talks to the embedding provider and the vector
    store. Steps are idempotent: upserts go to deterministic point ids and
    trailing chunks are removed with a range delete, so re-running a job
    converges on the same index state.
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

    def __post_init__(self) -> None:
        self.logger = self.logger or get_logger(__name__, component="executor")

    def execute(self, job: SyncJob) -> SyncResult:
        """Sync ``job``'s target and finalize it.

        Raises:
            TargetNotFound: The record no longer exists.
            TargetMismatch: The record belongs to another project.
            LeaseLostError: Another run took over the job mid-way.
        """

        run_id = job.processing_run_id
        if run_id is None:
            raise SyncError(f"Job {job.id} is not claimed")

        content = self._load_content(job)
        content_hash = hash_text(content.text)
        chunks = build_chunks(content.text, self.settings.max_chunk_chars)
        existing = self._existing_hashes(job, len(chunks))
        changed = diff_chunks(existing, chunks)

        self.logger.info(
            "sync-job-diffed",
            job_id=job.id,
            chunk_count=len(chunks),
            existing_count=len(existing),
            changed_count=len(changed),
        )

        embedded = self._embed_and_upsert(job, run_id, content, changed)
        self._trim(job, len(chunks))

        outcome = self.store.finalize(
            job.id,
            run_id,
            processed_content_hash=content_hash,
            chunks_processed=len(chunks),
            requeue_delay_seconds=self.settings.debounce_seconds,
        )
        return SyncResult(
            job_id=job.id,
            run_id=run_id,
            content_hash=content_hash,
            chunk_count=len(chunks),
            embedded_count=embedded,
            outcome=outcome,
        )

    # ------------------------------------------------------------------#
    # Steps
    # ------------------------------------------------------------------#
    def _load_content(self, job: SyncJob) -> TargetContent:
        try:
            content = self.content.get_text(job.target_type, job.target_id)
        except ContentNotFoundError as exc:
            raise TargetNotFound(str(exc)) from exc
        except MalformedTargetError as exc:
            raise MalformedTarget(str(exc)) from exc
        if content.project_id != job.project_id:
            raise TargetMismatch(job.project_id, content.project_id)
        return content

    def _target_filter(self, job: SyncJob) -> Filter:
        return Filter.for_target(job.project_id, str(job.target_type), job.target_id)

    def _existing_hashes(self, job: SyncJob, chunk_count: int) -> dict[int, str]:
        # Bounded by the new chunk count; larger targets are re-embedded whole.
        if chunk_count == 0 or chunk_count > self.settings.max_existing_chunk_scan:
            return {}
        points = self.vectors.scroll(
            self._target_filter(job).with_range(CHUNK_INDEX_FIELD, lt=chunk_count),
            limit=chunk_count,
            order_by=CHUNK_INDEX_FIELD,
        )
        return existing_chunk_hashes(point.payload for point in points)

    def _payload(
        self,
        job: SyncJob,
        content: TargetContent,
        chunk: Chunk,
        updated_at: str,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": str(job.target_type),
            "project_id": job.project_id,
            "target_id": job.target_id,
            "chunk_index": chunk.index,
            "chunk_hash": chunk.hash,
            "text": chunk.text,
            "preview": chunk.text[: self.settings.preview_chars],
            "updated_at": updated_at,
        }
        if content.title is not None:
            payload["title"] = content.title
        if content.subtype is not None:
            payload["subtype"] = content.subtype
        return payload

    def _embed_and_upsert(
        self,
        job: SyncJob,
        run_id: str,
        content: TargetContent,
        changed: Sequence[Chunk],
    ) -> int:
        batch_size = self.settings.embed_batch_size
        options = EmbedRequestOptions(
            max_batch_size=batch_size,
            timeout=self.embed_timeout,
        )
        updated_at = to_iso(self.now())
        embedded = 0

        for start in range(0, len(changed), batch_size):
            batch = changed[start : start + batch_size]
            vectors = self.provider.embed_texts(
                [chunk.text for chunk in batch],
                model=self.model,
                options=options,
            )
            if len(vectors) != len(batch):
                raise EmbeddingCountMismatch(
                    f"Provider returned {len(vectors)} vectors "
                    f"for {len(batch)} chunks"
                )

            self.vectors.upsert(
                [
                    VectorPoint(
                        id=point_key(str(job.target_type), job.target_id, chunk.index),
                        vector=tuple(vector),
                        payload=self._payload(job, content, chunk, updated_at),
                    )
                    for chunk, vector in zip(batch, vectors)
                ]
            )
            embedded += len(batch)

            if not self.store.update_progress(job.id, run_id, embedded):
                raise LeaseLostError(
                    f"Lease for job {job.id} lost after {embedded} chunks"
                )
            self.logger.debug(
                "sync-job-progress",
                job_id=job.id,
                embedded=embedded,
                total=len(changed),
            )

        return embedded

    def _trim(self, job: SyncJob, chunk_count: int) -> None:
        target = self._target_filter(job)
        if chunk_count == 0:
            self.vectors.delete_by_filter(target)
        else:
            self.vectors.delete_by_filter(
                target.with_range(CHUNK_INDEX_FIELD, gte=chunk_count)
            )
