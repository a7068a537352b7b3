"""Vector store contract, payload filters, and adapter selection.

Points are addressed by a deterministic key (``type:target_id:chunk_index``)
so repeated upserts of the same chunk overwrite instead of duplicating.
Filters are conjunctions of exact-match and range predicates on payload
fields, rendered in the Qdrant REST filter format.

Example:
    >>> f = Filter.for_target("p1", "document", "d1").with_range(
    ...     "chunk_index", gte=2
    ... )
    >>> f.matches({"project_id": "p1", "type": "document",
    ...            "target_id": "d1", "chunk_index": 3})
    True
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Mapping,
    Protocol,
    Sequence,
    runtime_checkable,
)

from embedsync.core.logging import Logger

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from embedsync.core.config import VectorStoreSettings

__all__ = [
    "FieldMatch",
    "FieldRange",
    "Filter",
    "StoredPoint",
    "VectorPoint",
    "VectorStore",
    "VectorStoreError",
    "create_vector_store",
    "point_key",
]

Scalar = str | int | float | bool


def point_key(target_type: str, target_id: str, chunk_index: int) -> str:
    """Return the deterministic identity of one indexed chunk."""

    return f"{target_type}:{target_id}:{chunk_index}"


class VectorStoreError(RuntimeError):
    """Raised when the vector store rejects or fails a request."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


@dataclass(frozen=True, slots=True)
class FieldMatch:
    """Exact match on a payload field."""

    key: str
    value: Scalar

    def to_mapping(self) -> dict[str, Any]:
        return {"key": self.key, "match": {"value": self.value}}

    def matches(self, payload: Mapping[str, Any]) -> bool:
        return self.key in payload and payload[self.key] == self.value


@dataclass(frozen=True, slots=True)
class FieldRange:
    """Numeric range predicate on a payload field."""

    key: str
    gte: float | None = None
    gt: float | None = None
    lte: float | None = None
    lt: float | None = None

    def __post_init__(self) -> None:
        if all(v is None for v in (self.gte, self.gt, self.lte, self.lt)):
            raise ValueError("range condition needs at least one bound")

    def to_mapping(self) -> dict[str, Any]:
        bounds = {
            name: value
            for name, value in (
                ("gte", self.gte),
                ("gt", self.gt),
                ("lte", self.lte),
                ("lt", self.lt),
            )
            if value is not None
        }
        return {"key": self.key, "range": bounds}

    def matches(self, payload: Mapping[str, Any]) -> bool:
        value = payload.get(self.key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if self.gte is not None and not value >= self.gte:
            return False
        if self.gt is not None and not value > self.gt:
            return False
        if self.lte is not None and not value <= self.lte:
            return False
        if self.lt is not None and not value < self.lt:
            return False
        return True


Condition = FieldMatch | FieldRange


@dataclass(frozen=True, slots=True)
class Filter:
    """Conjunction of payload conditions."""

    must: tuple[Condition, ...] = ()

    @classmethod
    def for_target(
        cls,
        project_id: str,
        target_type: str,
        target_id: str,
    ) -> "Filter":
        """Return the filter selecting every chunk of one target."""

        return cls(
            must=(
                FieldMatch("project_id", project_id),
                FieldMatch("type", target_type),
                FieldMatch("target_id", target_id),
            )
        )

    @classmethod
    def for_project(cls, project_id: str) -> "Filter":
        """Return the filter selecting every chunk of one project."""

        return cls(must=(FieldMatch("project_id", project_id),))

    def with_range(
        self,
        key: str,
        *,
        gte: float | None = None,
        gt: float | None = None,
        lte: float | None = None,
        lt: float | None = None,
    ) -> "Filter":
        condition = FieldRange(key, gte=gte, gt=gt, lte=lte, lt=lt)
        return Filter(must=(*self.must, condition))

    def matches(self, payload: Mapping[str, Any]) -> bool:
        return all(condition.matches(payload) for condition in self.must)

    def to_mapping(self) -> dict[str, Any]:
        return {"must": [condition.to_mapping() for condition in self.must]}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Filter":
        """Rebuild a filter serialized with :meth:`to_mapping`.

        Raises:
            ValueError: If ``data`` holds an unsupported condition.
        """

        conditions: list[Condition] = []
        for raw in data.get("must", ()):
            key = raw.get("key")
            if not isinstance(key, str):
                raise ValueError(f"Filter condition without key: {raw!r}")
            if "match" in raw:
                conditions.append(FieldMatch(key, raw["match"]["value"]))
            elif "range" in raw:
                conditions.append(FieldRange(key, **dict(raw["range"])))
            else:
                raise ValueError(f"Unsupported filter condition: {raw!r}")
        return cls(must=tuple(conditions))


@dataclass(frozen=True, slots=True)
class VectorPoint:
    """Point written to the vector store."""

    id: str
    vector: tuple[float, ...]
    payload: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StoredPoint:
    """Point returned from a scroll; vectors are not fetched."""

    id: str
    payload: Mapping[str, Any]


@runtime_checkable
class VectorStore(Protocol):
    """Operations the sync pipeline needs from a vector store.

    ``upsert`` and ``delete_by_filter`` must be idempotent. ``scroll``
    returns at most ``limit`` points matching ``filter``, sorted ascending
    by the ``order_by`` payload field when one is given.
    """

    def upsert(self, points: Sequence[VectorPoint]) -> None: ...

    def delete_by_filter(self, filter: Filter) -> None: ...

    def scroll(
        self,
        filter: Filter,
        *,
        limit: int,
        order_by: str | None = None,
    ) -> tuple[StoredPoint, ...]: ...


def create_vector_store(
    settings: "VectorStoreSettings",
    *,
    logger: Logger | None = None,
) -> VectorStore:
    """Instantiate the vector store selected by ``settings.backend``.

    Raises:
        VectorStoreError: If the Qdrant backend is selected without a URL.
    """

    if settings.backend == "memory":
        from .memory import InMemoryVectorStore

        return InMemoryVectorStore()

    if not settings.url:
        raise VectorStoreError(
            "vector_store.url (or EMBEDSYNC_QDRANT_URL) must be set for "
            "the qdrant backend."
        )

    from .qdrant import QdrantVectorStore

    return QdrantVectorStore(
        url=settings.url,
        collection=settings.collection,
        api_key=settings.api_key,
        timeout=settings.timeout,
        max_retries=settings.max_retries,
        retry_base_delay=settings.retry_base_delay,
        retry_max_delay=settings.retry_max_delay,
        logger=logger,
    )
