"""Qdrant adapter for the vector store contract."""

from __future__ import annotations

import math
import random
import time
import uuid
from typing import Any, Callable, Mapping, Sequence, TypeVar

import httpx
from qdrant_client import QdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from embedsync.core.logging import Logger, get_logger

from . import FieldMatch, Filter, StoredPoint, VectorPoint, VectorStoreError

__all__ = ["QdrantVectorStore", "qdrant_point_id", "to_qdrant_filter"]

_POINT_NAMESPACE = uuid.UUID("9b0b7f4e-3d55-5c2a-9a43-0f7f3c6c1e21")
_RETRYABLE_STATUS = frozenset({408, 429})

T = TypeVar("T")


def qdrant_point_id(key: str) -> str:
    """Map a deterministic point key to the UUID Qdrant stores it under.

    Example:
        >>> qdrant_point_id("document:d1:0") == qdrant_point_id("document:d1:0")
        True
    """

    return str(uuid.uuid5(_POINT_NAMESPACE, key))


def to_qdrant_filter(filter: Filter) -> models.Filter:
    """Translate a payload filter into the client's filter model."""

    conditions: list[models.Condition] = []
    for condition in filter.must:
        if isinstance(condition, FieldMatch):
            conditions.append(
                models.FieldCondition(
                    key=condition.key,
                    match=models.MatchValue(value=condition.value),
                )
            )
        else:
            conditions.append(
                models.FieldCondition(
                    key=condition.key,
                    range=models.Range(
                        gte=condition.gte,
                        gt=condition.gt,
                        lte=condition.lte,
                        lt=condition.lt,
                    ),
                )
            )
    return models.Filter(must=conditions)


def _is_retryable_status(status: int | None) -> bool:
    if status is None:
        return True
    return status in _RETRYABLE_STATUS or status >= 500


def _response_message(exc: UnexpectedResponse) -> str:
    try:
        data = exc.structured()
    except ValueError:
        data = {}
    status = data.get("status") if isinstance(data, Mapping) else None
    if isinstance(status, Mapping) and status.get("error"):
        return str(status["error"])
    return f"Qdrant API error: {exc.status_code} {exc.reason_phrase}".strip()


class QdrantVectorStore:
    """Talk to one Qdrant collection through :class:`QdrantClient`.

    Each call is retried on 408, 429, 5xx and transport errors with capped
    exponential backoff and full jitter. Points are stored under UUIDv5 ids
    derived from their key; the key itself travels in the ``point_key``
    payload field so scrolls report it back unchanged.
    """

    def __init__(
        self,
        *,
        url: str,
        collection: str,
        api_key: str | None = None,
        timeout: float = 8.0,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 5.0,
        logger: Logger | None = None,
        client: QdrantClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.collection = collection
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._logger = logger or get_logger(__name__, component="qdrant")
        self._client = client or QdrantClient(
            url=url.rstrip("/"),
            api_key=api_key,
            timeout=max(1, math.ceil(timeout)),
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "QdrantVectorStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------#
    # VectorStore contract
    # ------------------------------------------------------------------#
    def upsert(self, points: Sequence[VectorPoint]) -> None:
        if not points:
            return
        structs = [
            models.PointStruct(
                id=qdrant_point_id(point.id),
                vector=list(point.vector),
                payload={**point.payload, "point_key": point.id},
            )
            for point in points
        ]
        self._call(
            "upsert",
            lambda: self._client.upsert(
                collection_name=self.collection,
                points=structs,
                wait=True,
            ),
        )

    def delete_by_filter(self, filter: Filter) -> None:
        selector = models.FilterSelector(filter=to_qdrant_filter(filter))
        self._call(
            "delete",
            lambda: self._client.delete(
                collection_name=self.collection,
                points_selector=selector,
                wait=True,
            ),
        )

    def scroll(
        self,
        filter: Filter,
        *,
        limit: int,
        order_by: str | None = None,
    ) -> tuple[StoredPoint, ...]:
        ordering = (
            models.OrderBy(key=order_by, direction=models.Direction.ASC)
            if order_by is not None
            else None
        )
        records, _ = self._call(
            "scroll",
            lambda: self._client.scroll(
                collection_name=self.collection,
                scroll_filter=to_qdrant_filter(filter),
                limit=limit,
                with_payload=True,
                with_vectors=False,
                order_by=ordering,
            ),
        )
        points: list[StoredPoint] = []
        for record in records:
            payload = dict(record.payload or {})
            key = payload.get("point_key") or record.id
            points.append(StoredPoint(id=str(key), payload=payload))
        return tuple(points)

    def collection_info(self) -> Mapping[str, Any]:
        """Return the collection description (status, point counts)."""

        info = self._call(
            "get_collection",
            lambda: self._client.get_collection(collection_name=self.collection),
        )
        return info.model_dump(mode="json")

    # ------------------------------------------------------------------#
    # Internal helpers
    # ------------------------------------------------------------------#
    def _backoff(self, attempt: int) -> float:
        capped = min(
            self._retry_base_delay * (2**attempt),
            self._retry_max_delay,
        )
        return self._rng.random() * capped

    def _call(self, operation: str, func: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return func()
            except UnexpectedResponse as exc:
                status: int | None = exc.status_code
                error = VectorStoreError(
                    _response_message(exc),
                    status_code=status,
                    retryable=_is_retryable_status(status),
                )
            except (ResponseHandlingException, httpx.TransportError) as exc:
                status = None
                error = VectorStoreError(
                    f"Qdrant transport error: {exc}",
                    retryable=True,
                )

            if not error.retryable or attempt >= self._max_retries:
                self._logger.warning(
                    "qdrant-request-failed",
                    operation=operation,
                    status_code=status,
                    attempts=attempt + 1,
                    error=str(error),
                )
                raise error

            delay = self._backoff(attempt)
            attempt += 1
            self._logger.warning(
                "qdrant-request-retry",
                operation=operation,
                status_code=status,
                attempt=attempt,
                max_attempts=self._max_retries + 1,
                retry_delay=round(delay, 3),
            )
            self._sleep(delay)
