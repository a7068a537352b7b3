"""Tests for filters and the in-memory vector store."""

from __future__ import annotations

import pytest

from embedsync.core.config import VectorStoreSettings
from embedsync.vectors import (
    FieldRange,
    Filter,
    VectorPoint,
    VectorStoreError,
    create_vector_store,
    point_key,
)
from embedsync.vectors.memory import InMemoryVectorStore


def _point(target_id: str, index: int, project: str = "p1") -> VectorPoint:
    return VectorPoint(
        id=point_key("document", target_id, index),
        vector=(float(index),),
        payload={
            "project_id": project,
            "type": "document",
            "target_id": target_id,
            "chunk_index": index,
        },
    )


def test_range_filter_deletes_trailing_chunks_only() -> None:
    store = InMemoryVectorStore()
    store.upsert([_point("d1", i) for i in range(5)] + [_point("d2", 4)])

    store.delete_by_filter(
        Filter.for_target("p1", "document", "d1").with_range("chunk_index", gte=2)
    )

    remaining = sorted((p["target_id"], p["chunk_index"]) for p in store.payloads())
    assert remaining == [("d1", 0), ("d1", 1), ("d2", 4)]


def test_upsert_overwrites_by_point_id() -> None:
    store = InMemoryVectorStore()
    store.upsert([_point("d1", 0)])
    store.upsert([_point("d1", 0)])

    assert len(store) == 1
    assert store.upsert_calls == 2


def test_scroll_limits_and_orders() -> None:
    store = InMemoryVectorStore()
    store.upsert([_point("d1", i) for i in (3, 0, 2, 1)])

    points = store.scroll(
        Filter.for_target("p1", "document", "d1").with_range("chunk_index", lt=3),
        limit=2,
        order_by="chunk_index",
    )

    assert [p.payload["chunk_index"] for p in points] == [0, 1]


def test_filter_serialization_round_trip() -> None:
    original = Filter.for_project("p1").with_range("chunk_index", gte=1, lt=4)

    assert Filter.from_mapping(original.to_mapping()) == original
    with pytest.raises(ValueError):
        Filter.from_mapping({"must": [{"key": "x", "geo": {}}]})


def test_range_condition_requires_a_bound_and_ignores_non_numbers() -> None:
    with pytest.raises(ValueError):
        FieldRange("chunk_index")

    condition = FieldRange("chunk_index", gte=0)
    assert condition.matches({"chunk_index": 0})
    assert not condition.matches({"chunk_index": "0"})
    assert not condition.matches({"chunk_index": True})


def test_create_vector_store_selects_backend() -> None:
    memory = create_vector_store(VectorStoreSettings(backend="memory"))
    assert isinstance(memory, InMemoryVectorStore)

    with pytest.raises(VectorStoreError):
        create_vector_store(VectorStoreSettings(backend="qdrant"))
