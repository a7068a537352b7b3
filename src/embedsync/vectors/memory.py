"""In-process vector store used for local runs and tests."""

from __future__ import annotations

from threading import Lock
from typing import Any, Mapping, Sequence

from . import Filter, StoredPoint, VectorPoint

__all__ = ["InMemoryVectorStore"]


class InMemoryVectorStore:
    """Dictionary-backed store applying the same filter semantics as Qdrant."""

    def __init__(self) -> None:
        self._points: dict[str, VectorPoint] = {}
        self._lock = Lock()
        self.upsert_calls = 0
        self.delete_calls = 0

    def upsert(self, points: Sequence[VectorPoint]) -> None:
        with self._lock:
            self.upsert_calls += 1
            for point in points:
                self._points[point.id] = VectorPoint(
                    id=point.id,
                    vector=tuple(point.vector),
                    payload=dict(point.payload),
                )

    def delete_by_filter(self, filter: Filter) -> None:
        with self._lock:
            self.delete_calls += 1
            doomed = [
                key
                for key, point in self._points.items()
                if filter.matches(point.payload)
            ]
            for key in doomed:
                del self._points[key]

    def scroll(
        self,
        filter: Filter,
        *,
        limit: int,
        order_by: str | None = None,
    ) -> tuple[StoredPoint, ...]:
        with self._lock:
            matched = [
                StoredPoint(id=point.id, payload=dict(point.payload))
                for point in self._points.values()
                if filter.matches(point.payload)
            ]
        if order_by is not None:
            matched.sort(key=lambda point: _sort_key(point.payload, order_by))
        return tuple(matched[: max(0, limit)])

    def get(self, point_id: str) -> VectorPoint | None:
        """Return the stored point for ``point_id`` if present."""

        with self._lock:
            return self._points.get(point_id)

    def payloads(self) -> list[Mapping[str, Any]]:
        """Return a snapshot of every stored payload."""

        with self._lock:
            return [dict(point.payload) for point in self._points.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._points)


def _sort_key(payload: Mapping[str, Any], field: str) -> tuple[int, Any]:
    value = payload.get(field)
    return (0, value) if value is not None else (1, 0)
