"""Shared pytest fixtures for sync pipeline tests."""

from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Sequence

import pytest
from structlog import get_logger

from embedsync.content import (
    ContentNotFoundError,
    TargetContent,
    TargetType,
    build_entity_text,
)
from embedsync.core.config import SyncSettings
from embedsync.embeddings import (
    EmbeddingProviderCaps,
    EmbeddingProviderModel,
    EmbedRequestOptions,
)
from embedsync.sync import JobStore, SyncService
from embedsync.vectors.memory import InMemoryVectorStore


class Clock:
    """Mutable UTC clock injected wherever ``now`` is accepted."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


class FakeContentStore:
    """In-memory content store keyed by ``(target_type, target_id)``."""

    def __init__(self) -> None:
        self.records: dict[tuple[TargetType, str], TargetContent] = {}
        self.reads = 0

    def set_document(
        self,
        project_id: str,
        document_id: str,
        text: str,
        *,
        title: str | None = None,
    ) -> None:
        self.records[(TargetType.DOCUMENT, document_id)] = TargetContent(
            project_id=project_id,
            text=text,
            title=title,
            subtype="note" if title else None,
        )

    def set_entity(
        self,
        project_id: str,
        entity_id: str,
        name: str,
        **fields: Any,
    ) -> None:
        self.records[(TargetType.ENTITY, entity_id)] = TargetContent(
            project_id=project_id,
            text=build_entity_text(name, **fields),
            title=name,
            subtype="character",
        )

    def remove(self, target_type: TargetType, target_id: str) -> None:
        self.records.pop((target_type, target_id), None)

    def get_text(self, target_type: TargetType, target_id: str) -> TargetContent:
        self.reads += 1
        try:
            return self.records[(TargetType(target_type), target_id)]
        except KeyError as exc:
            raise ContentNotFoundError(str(target_type), target_id) from exc


class FakeProvider:
    """Embedding provider returning deterministic vectors.

    ``failures`` holds exceptions raised (one per call) before the provider
    starts answering; ``short_by`` drops vectors from every response.
    """

    def __init__(self, failures: Sequence[Exception] = ()) -> None:
        self.calls: list[list[str]] = []
        self.failures = list(failures)
        self.short_by = 0

    def describe_model(self, model: str) -> EmbeddingProviderModel:
        return EmbeddingProviderModel(provider="fake", name=model, dim=3)

    def capabilities(self, *, model: str | None = None) -> EmbeddingProviderCaps:
        return EmbeddingProviderCaps(max_batch_size=64)

    def embed_texts(
        self,
        texts: Sequence[str],
        *,
        model: str,
        options: EmbedRequestOptions,
    ) -> tuple[tuple[float, ...], ...]:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        vectors = tuple(
            (float(len(text)), float(sum(map(ord, text)) % 997), 1.0)
            for text in texts
        )
        return vectors[: len(vectors) - self.short_by]

    @property
    def embedded_texts(self) -> list[str]:
        return [text for call in self.calls for text in call]


def paragraphs(*parts: str) -> str:
    """Join paragraphs so each one becomes its own chunk at 16 chars."""

    return "\n\n".join(parts)


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def sync_settings() -> SyncSettings:
    """Small chunks, small batches, and no jitter for predictable tests."""

    return SyncSettings(
        max_chunk_chars=16,
        embed_batch_size=2,
        backoff_jitter=0.0,
    )


@pytest.fixture
def job_store(tmp_path: Path, clock: Clock) -> JobStore:
    store = JobStore(
        tmp_path / "jobs.sqlite3",
        now=clock,
        logger=get_logger("test.job_store"),
    )
    store.initialize()
    return store


@pytest.fixture
def content_store() -> FakeContentStore:
    return FakeContentStore()


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_service(
    job_store: JobStore,
    content_store: FakeContentStore,
    vector_store: InMemoryVectorStore,
    provider: FakeProvider,
    sync_settings: SyncSettings,
    clock: Clock,
) -> Callable[..., SyncService]:
    """Return a builder for services sharing the test doubles above."""

    def _make(**overrides: Any) -> SyncService:
        settings = sync_settings.model_copy(update=overrides)
        return SyncService(
            store=job_store,
            content=content_store,
            vectors=vector_store,
            provider=provider,
            settings=settings,
            model="fake-embedding",
            logger=get_logger("test.sync"),
            now=clock,
            rng=random.Random(7),
        )

    return _make


@pytest.fixture
def service(make_service: Callable[..., SyncService]) -> SyncService:
    return make_service()


@pytest.fixture
def fake_provider_cls() -> type[FakeProvider]:
    return FakeProvider


@pytest.fixture
def join_paragraphs() -> Callable[..., str]:
    return paragraphs
