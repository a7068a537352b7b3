"""Tests for :mod:`embedsync.sync.store`."""

from __future__ import annotations

import random
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from embedsync.content import TargetType
from embedsync.sync import BackoffPolicy, JobStore
from embedsync.sync.models import FailureOutcome, FinalizeOutcome, JobStatus
from embedsync.sync.store import MAX_ATTEMPTS_EXCEEDED, STALE_PROCESSING_JOB
from embedsync.vectors import Filter

DOC = TargetType.DOCUMENT


@pytest.fixture
def backoff() -> BackoffPolicy:
    return BackoffPolicy(base=30.0, cap=900.0, jitter=0.0, rng=random.Random(1))


def _enqueue(store: JobStore, content_hash: str = "h1", *, target_id: str = "d1"):
    return store.enqueue(
        "p1",
        DOC,
        target_id,
        content_hash=content_hash,
        debounce_seconds=15,
    )


def _claimed(store: JobStore, clock, *, max_attempts: int = 5):
    job = _enqueue(store)
    clock.advance(15)
    claim = store.claim(job.id, max_attempts=max_attempts)
    assert claim.claimed
    return claim.job


def test_initialize_is_idempotent_and_enables_wal(job_store: JobStore) -> None:
    job_store.initialize()

    with sqlite3.connect(job_store.path) as connection:
        mode = connection.execute("PRAGMA journal_mode").fetchone()[0]
        tables = {
            row[0]
            for row in connection.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            )
        }

    assert mode == "wal"
    assert {"sync_jobs", "vector_delete_jobs"} <= tables


def test_enqueue_creates_pending_job_after_debounce(job_store, clock) -> None:
    job = _enqueue(job_store)

    assert job.status is JobStatus.PENDING
    assert job.attempts == 0
    assert job.dirty is False
    assert job.desired_content_hash == "h1"
    assert job.next_run_at == clock() + timedelta(seconds=15)
    assert job_store.list_due(10) == []


def test_enqueue_burst_coalesces_to_one_job_with_last_hash(job_store, clock) -> None:
    first = _enqueue(job_store, "h1")
    clock.advance(5)
    _enqueue(job_store, "h2")
    clock.advance(5)
    last = _enqueue(job_store, "h3")

    assert last.id == first.id
    assert last.desired_content_hash == "h3"
    assert last.next_run_at == clock() + timedelta(seconds=15)
    assert job_store.status_counts()[JobStatus.PENDING] == 1


def test_claim_refuses_jobs_that_are_not_due(job_store, clock) -> None:
    job = _enqueue(job_store)

    claim = job_store.claim(job.id, max_attempts=5)

    assert not claim.claimed
    assert claim.reason == "not_due"
    assert claim.run_id is None


def test_claim_takes_lease_once(job_store, clock) -> None:
    job = _enqueue(job_store)
    clock.advance(15)

    first = job_store.claim(job.id, max_attempts=5)
    second = job_store.claim(job.id, max_attempts=5)

    assert first.claimed
    assert first.job.status is JobStatus.PROCESSING
    assert first.job.attempts == 1
    assert first.job.processing_started_at == clock()
    assert first.run_id
    assert not second.claimed
    assert second.reason == "not_pending"
    assert job_store.claim(9999, max_attempts=5).reason == "missing"


def test_concurrent_claims_grant_a_single_lease(job_store, clock) -> None:
    job = _enqueue(job_store)
    clock.advance(15)
    workers = [
        JobStore(job_store.path, now=clock, busy_timeout=10.0) for _ in range(2)
    ]
    barrier = threading.Barrier(len(workers))

    def race(store: JobStore):
        barrier.wait()
        return store.claim(job.id, max_attempts=5)

    with ThreadPoolExecutor(max_workers=len(workers)) as pool:
        results = list(pool.map(race, workers))

    assert sorted(result.claimed for result in results) == [False, True]
    assert {result.reason for result in results if not result.claimed} == {
        "not_pending"
    }
    stored = job_store.get(job.id)
    assert stored.status is JobStatus.PROCESSING
    assert stored.attempts == 1
    winner = next(result for result in results if result.claimed)
    assert stored.processing_run_id == winner.run_id


def test_enqueue_while_processing_marks_dirty_and_keeps_lease(
    job_store, clock
) -> None:
    claimed = _claimed(job_store, clock)
    clock.advance(3)

    updated = _enqueue(job_store, "h2")

    assert updated.status is JobStatus.PROCESSING
    assert updated.dirty is True
    assert updated.desired_content_hash == "h2"
    assert updated.processing_run_id == claimed.processing_run_id
    assert updated.next_run_at == claimed.next_run_at


def test_finalize_marks_synced_and_clears_lease(job_store, clock) -> None:
    claimed = _claimed(job_store, clock)

    outcome = job_store.finalize(
        claimed.id,
        claimed.processing_run_id,
        processed_content_hash="h1",
        chunks_processed=3,
        requeue_delay_seconds=15,
    )
    job = job_store.get(claimed.id)

    assert outcome is FinalizeOutcome.SYNCED
    assert job.status is JobStatus.SYNCED
    assert job.processed_content_hash == "h1"
    assert job.chunks_processed == 3
    assert job.processing_run_id is None
    assert job.processing_started_at is None


def test_finalize_requeues_dirty_job(job_store, clock) -> None:
    claimed = _claimed(job_store, clock)
    _enqueue(job_store, "h2")

    outcome = job_store.finalize(
        claimed.id,
        claimed.processing_run_id,
        processed_content_hash="h1",
        chunks_processed=1,
        requeue_delay_seconds=15,
    )
    job = job_store.get(claimed.id)

    assert outcome is FinalizeOutcome.REQUEUED
    assert job.status is JobStatus.PENDING
    assert job.dirty is False
    assert job.attempts == 0
    assert job.next_run_at == clock() + timedelta(seconds=15)
    assert job.processed_content_hash == "h1"
    assert job.desired_content_hash == "h2"


def test_finalize_requeues_when_processed_hash_is_behind(job_store, clock) -> None:
    claimed = _claimed(job_store, clock)

    outcome = job_store.finalize(
        claimed.id,
        claimed.processing_run_id,
        processed_content_hash="older",
        chunks_processed=1,
        requeue_delay_seconds=15,
    )

    assert outcome is FinalizeOutcome.REQUEUED
    assert job_store.get(claimed.id).status is JobStatus.PENDING


def test_stale_run_id_cannot_finalize_or_fail(job_store, clock, backoff) -> None:
    claimed = _claimed(job_store, clock)
    before = job_store.get(claimed.id)

    finalize = job_store.finalize(
        claimed.id,
        "not-the-run",
        processed_content_hash="h1",
        chunks_processed=1,
        requeue_delay_seconds=15,
    )
    failure = job_store.record_failure(
        claimed.id,
        "not-the-run",
        error="boom",
        permanent=True,
        max_attempts=5,
        backoff=backoff,
    )

    assert finalize is FinalizeOutcome.STALE
    assert failure is FailureOutcome.STALE
    assert job_store.get(claimed.id) == before


def test_transient_failure_schedules_backoff(job_store, clock, backoff) -> None:
    claimed = _claimed(job_store, clock)

    outcome = job_store.record_failure(
        claimed.id,
        claimed.processing_run_id,
        error="TimeoutError: slow",
        permanent=False,
        max_attempts=5,
        backoff=backoff,
    )
    job = job_store.get(claimed.id)

    assert outcome is FailureOutcome.RETRY_SCHEDULED
    assert job.status is JobStatus.PENDING
    assert job.last_error == "TimeoutError: slow"
    assert job.attempts == 1
    assert job.next_run_at == clock() + timedelta(seconds=30)
    assert job.processing_run_id is None


def test_permanent_failure_fails_immediately(job_store, clock, backoff) -> None:
    claimed = _claimed(job_store, clock)

    outcome = job_store.record_failure(
        claimed.id,
        claimed.processing_run_id,
        error="TargetNotFound: gone",
        permanent=True,
        max_attempts=5,
        backoff=backoff,
    )
    job = job_store.get(claimed.id)

    assert outcome is FailureOutcome.FAILED
    assert job.status is JobStatus.FAILED
    assert job.failed_at == clock()
    assert job.last_error == "TargetNotFound: gone"


def test_five_transient_failures_poison_the_job(job_store, clock, backoff) -> None:
    job = _enqueue(job_store)
    outcomes = []
    for _ in range(5):
        clock.advance(1_000)
        claim = job_store.claim(job.id, max_attempts=5)
        assert claim.claimed
        outcomes.append(
            job_store.record_failure(
                job.id,
                claim.run_id,
                error="ProviderRetryableError: 503",
                permanent=False,
                max_attempts=5,
                backoff=backoff,
            )
        )

    clock.advance(1_000)
    sixth = job_store.claim(job.id, max_attempts=5)
    final = job_store.get(job.id)

    assert outcomes[:4] == [FailureOutcome.RETRY_SCHEDULED] * 4
    assert outcomes[4] is FailureOutcome.FAILED
    assert final.status is JobStatus.FAILED
    assert final.attempts == 5
    assert final.last_error
    assert not sixth.claimed


def test_claim_flips_exhausted_pending_job_to_failed(job_store, clock, backoff) -> None:
    claimed = _claimed(job_store, clock)
    job_store.record_failure(
        claimed.id,
        claimed.processing_run_id,
        error="boom",
        permanent=False,
        max_attempts=5,
        backoff=backoff,
    )
    clock.advance(60)

    claim = job_store.claim(claimed.id, max_attempts=1)

    assert not claim.claimed
    assert claim.reason == MAX_ATTEMPTS_EXCEEDED
    assert claim.job.status is JobStatus.FAILED
    assert claim.job.last_error == MAX_ATTEMPTS_EXCEEDED


def test_enqueue_resets_failed_job(job_store, clock, backoff) -> None:
    claimed = _claimed(job_store, clock)
    job_store.record_failure(
        claimed.id,
        claimed.processing_run_id,
        error="boom",
        permanent=True,
        max_attempts=5,
        backoff=backoff,
    )

    job = _enqueue(job_store, "h2")

    assert job.id == claimed.id
    assert job.status is JobStatus.PENDING
    assert job.attempts == 0
    assert job.last_error is None
    assert job.failed_at is None


def test_update_progress_requires_the_lease(job_store, clock) -> None:
    claimed = _claimed(job_store, clock)

    assert job_store.update_progress(claimed.id, claimed.processing_run_id, 2)
    assert not job_store.update_progress(claimed.id, "other-run", 3)
    assert job_store.get(claimed.id).chunks_processed == 2


def test_requeue_stale_releases_lease(job_store, clock) -> None:
    claimed = _claimed(job_store, clock)

    assert job_store.requeue_stale(claimed.id, "other-run", max_attempts=5) is None
    status = job_store.requeue_stale(
        claimed.id,
        claimed.processing_run_id,
        max_attempts=5,
    )
    job = job_store.get(claimed.id)

    assert status is JobStatus.PENDING
    assert job.processing_run_id is None
    assert job.last_error == STALE_PROCESSING_JOB
    assert job.next_run_at == clock()


def test_requeue_stale_fails_exhausted_job(job_store, clock) -> None:
    claimed = _claimed(job_store, clock, max_attempts=1)

    status = job_store.requeue_stale(
        claimed.id,
        claimed.processing_run_id,
        max_attempts=1,
    )

    assert status is JobStatus.FAILED
    assert job_store.get(claimed.id).failed_at == clock()


def test_delete_for_target_defers_vector_delete_while_in_flight(
    job_store, clock
) -> None:
    claimed = _claimed(job_store, clock)
    clock.advance(10)

    existed = job_store.delete_for_target(
        "p1", DOC, "d1", lease_ttl_seconds=300
    )

    assert existed is True
    assert job_store.get(claimed.id) is None
    assert job_store.list_due_vector_deletes(10) == []

    clock.advance(290)
    due = job_store.list_due_vector_deletes(10)
    assert len(due) == 1
    assert due[0].filter == Filter.for_target("p1", "document", "d1")
    assert due[0].target_type is DOC


def test_delete_for_target_without_job_still_queues_delete(job_store) -> None:
    existed = job_store.delete_for_target(
        "p1", DOC, "ghost", lease_ttl_seconds=300
    )

    assert existed is False
    assert len(job_store.list_due_vector_deletes(10)) == 1


def test_delete_for_project_replaces_target_deletes(job_store, clock) -> None:
    _enqueue(job_store, target_id="d1")
    _enqueue(job_store, target_id="d2")
    job_store.delete_for_target("p1", DOC, "d1", lease_ttl_seconds=300)

    deleted = job_store.delete_for_project("p1", lease_ttl_seconds=300)
    due = job_store.list_due_vector_deletes(10)

    assert deleted == 1
    assert job_store.status_counts()[JobStatus.PENDING] == 0
    assert len(due) == 1
    assert due[0].filter == Filter.for_project("p1")
    assert due[0].target_id is None


def test_fail_vector_delete_backs_off_then_fails(job_store, clock, backoff) -> None:
    job_store.delete_for_target("p1", DOC, "d1", lease_ttl_seconds=300)
    delete_id = job_store.list_due_vector_deletes(1)[0].id

    first = job_store.fail_vector_delete(
        delete_id, error="down", max_attempts=2, backoff=backoff
    )
    assert first is JobStatus.PENDING
    assert job_store.list_due_vector_deletes(10) == []

    clock.advance(30)
    second = job_store.fail_vector_delete(
        delete_id, error="down", max_attempts=2, backoff=backoff
    )

    assert second is JobStatus.FAILED
    assert job_store.vector_delete_counts() == {"pending": 0, "failed": 1}
    assert job_store.fail_vector_delete(
        9999, error="x", max_attempts=2, backoff=backoff
    ) is None


def test_delete_failed_before_respects_cutoff(job_store, clock, backoff) -> None:
    claimed = _claimed(job_store, clock)
    job_store.record_failure(
        claimed.id,
        claimed.processing_run_id,
        error="boom",
        permanent=True,
        max_attempts=5,
        backoff=backoff,
    )

    assert job_store.delete_failed_before(clock() - timedelta(days=1), limit=10) == 0
    assert job_store.delete_failed_before(clock() + timedelta(seconds=1), limit=10) == 1
    assert job_store.get(claimed.id) is None
