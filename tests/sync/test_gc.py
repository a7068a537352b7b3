"""Tests for :mod:`embedsync.sync.gc`."""

from __future__ import annotations

import pytest

from embedsync.content import TargetType
from embedsync.sync.errors import LeaseLostError
from embedsync.sync.models import JobStatus
from embedsync.sync.store import STALE_PROCESSING_JOB
from embedsync.vectors import VectorStoreError

DOC = TargetType.DOCUMENT


class FlakyVectorStore:
    """Wrap a store and fail the first ``failures`` deletes."""

    def __init__(self, inner, failures: int) -> None:
        self.inner = inner
        self.failures = failures

    def upsert(self, points) -> None:
        self.inner.upsert(points)

    def scroll(self, filter, *, limit, order_by=None):
        return self.inner.scroll(filter, limit=limit, order_by=order_by)

    def delete_by_filter(self, filter) -> None:
        if self.failures:
            self.failures -= 1
            raise VectorStoreError("qdrant down", status_code=503, retryable=True)
        self.inner.delete_by_filter(filter)


def _indexed(service, content_store, clock, target_id: str = "d1") -> None:
    content_store.set_document("p1", target_id, f"text for {target_id}")
    service.enqueue("p1", "document", target_id)
    clock.advance(15)
    assert service.process_due_jobs().synced == 1


def test_expired_lease_is_requeued(service, content_store, clock) -> None:
    content_store.set_document("p1", "d1", "text")
    job = service.enqueue("p1", "document", "d1")
    clock.advance(15)
    service.claim(job.id)

    clock.advance(60)
    early = service.requeue_stale_processing_jobs()
    clock.advance(service.settings.lease_ttl_seconds)
    report = service.requeue_stale_processing_jobs()

    requeued = service.store.get(job.id)
    assert early.scanned == 0
    assert report.scanned == 1
    assert report.requeued == 1
    assert requeued.status is JobStatus.PENDING
    assert requeued.last_error == STALE_PROCESSING_JOB
    assert service.process_due_jobs().synced == 1


def test_expired_lease_with_exhausted_attempts_fails(
    make_service, content_store, clock
) -> None:
    service = make_service(max_attempts=1)
    content_store.set_document("p1", "d1", "text")
    job = service.enqueue("p1", "document", "d1")
    clock.advance(15)
    service.claim(job.id)
    clock.advance(service.settings.lease_ttl_seconds + 1)

    report = service.requeue_stale_processing_jobs()

    assert report.failed == 1
    assert service.store.get(job.id).status is JobStatus.FAILED


def test_cleanup_prunes_failed_jobs_after_retention(
    service, content_store, clock
) -> None:
    content_store.set_document("p1", "d1", "text")
    service.enqueue("p1", "document", "d1")
    content_store.remove(DOC, "d1")
    clock.advance(15)
    service.process_due_jobs()

    clock.advance(86_400)
    assert service.cleanup_jobs().failed_deleted == 0

    clock.advance(14 * 86_400)
    report = service.cleanup_jobs()

    assert report.failed_deleted == 1
    assert service.store.get_by_target("p1", DOC, "d1") is None


def test_cleanup_drops_orphans_and_their_vectors(
    service, content_store, vector_store, clock
) -> None:
    _indexed(service, content_store, clock)
    _indexed(service, content_store, clock, target_id="d2")
    service.enqueue("p1", "document", "d1")
    content_store.remove(DOC, "d1")

    report = service.cleanup_jobs()

    assert report.orphans_scanned == 1
    assert report.orphans_deleted == 1
    assert service.store.get_by_target("p1", DOC, "d1") is None
    assert len(vector_store) == 2

    drained = service.process_vector_delete_jobs()

    assert drained.deleted == 1
    assert {p["target_id"] for p in vector_store.payloads()} == {"d2"}


def test_vector_delete_outbox_retries_with_backoff(
    service, content_store, vector_store, clock
) -> None:
    _indexed(service, content_store, clock)
    service._gc.vectors = FlakyVectorStore(vector_store, failures=1)

    service.delete_jobs_for_target("p1", "document", "d1")
    first = service.process_vector_delete_jobs()
    assert first.retry_scheduled == 1
    assert len(vector_store) == 1

    clock.advance(30)
    second = service.process_vector_delete_jobs()

    assert second.deleted == 1
    assert len(vector_store) == 0
    assert service.store.vector_delete_counts() == {"pending": 0, "failed": 0}


def test_vector_delete_gives_up_after_max_attempts(
    make_service, content_store, vector_store, clock
) -> None:
    service = make_service(vector_delete_max_attempts=2)
    service._gc.vectors = FlakyVectorStore(vector_store, failures=5)
    service.delete_jobs_for_project("p1")

    service.process_vector_delete_jobs()
    clock.advance(30)
    report = service.process_vector_delete_jobs()

    assert report.failed == 1
    assert service.store.vector_delete_counts()["failed"] == 1

    clock.advance(15 * 86_400)
    assert service.cleanup_jobs().vector_deletes_pruned == 1


def test_delete_for_target_waits_for_in_flight_run(
    service, content_store, vector_store, clock
) -> None:
    _indexed(service, content_store, clock)
    job = service.enqueue("p1", "document", "d1")
    clock.advance(15)
    service.claim(job.id)

    assert service.delete_jobs_for_target("p1", "document", "d1") is True
    assert service.process_vector_delete_jobs().due == 0
    assert len(vector_store) == 1

    clock.advance(service.settings.lease_ttl_seconds)
    assert service.process_vector_delete_jobs().deleted == 1
    assert len(vector_store) == 0


def test_delete_project_removes_every_target(
    service, content_store, vector_store, clock
) -> None:
    _indexed(service, content_store, clock)
    _indexed(service, content_store, clock, target_id="d2")

    assert service.delete_jobs_for_project("p1") == 2
    service.process_vector_delete_jobs()

    assert len(vector_store) == 0
    assert service.store.status_counts()[JobStatus.SYNCED] == 0


def test_delete_project_keeps_wait_of_superseded_target_delete(
    service, content_store, vector_store, clock
) -> None:
    _indexed(service, content_store, clock)
    content_store.set_document("p1", "d1", "edited d1")
    job = service.enqueue("p1", "document", "d1")
    clock.advance(15)
    claim = service.claim(job.id)
    assert claim.claimed

    service.delete_jobs_for_target("p1", "document", "d1")
    clock.advance(1)
    assert service.delete_jobs_for_project("p1") == 0
    assert service.process_vector_delete_jobs().due == 0

    # The in-flight run lands its last batch after the purge was requested.
    with pytest.raises(LeaseLostError):
        service._executor.execute(claim.job)
    assert len(vector_store) == 1

    clock.advance(service.settings.lease_ttl_seconds)
    assert service.process_vector_delete_jobs().deleted == 1
    assert len(vector_store) == 0
