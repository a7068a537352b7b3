"""Tests for error classification, backoff, and run ids."""

from __future__ import annotations

import random
from datetime import datetime, timezone

import httpx
import pytest

from embedsync.content import ContentNotFoundError
from embedsync.embeddings.errors import (
    ProviderInputTooLargeError,
    ProviderRateLimitError,
    ProviderRetryExceededError,
)
from embedsync.sync import BackoffPolicy, TargetMismatch, classify_error
from embedsync.sync.errors import UnsupportedTargetType, describe_error
from embedsync.sync.ids import generate_run_id, run_id_timestamp
from embedsync.sync.models import ErrorClass
from embedsync.vectors import VectorStoreError


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "http://qdrant/collections/c/points")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("failed", request=request, response=response)


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (TargetMismatch("p1", "p2"), ErrorClass.PERMANENT),
        (UnsupportedTargetType("widget"), ErrorClass.PERMANENT),
        (ContentNotFoundError("document", "d1"), ErrorClass.PERMANENT),
        (
            ProviderInputTooLargeError("too big", provider="openai", model="m"),
            ErrorClass.PERMANENT,
        ),
        (
            ProviderRateLimitError("slow down", provider="openai", model="m"),
            ErrorClass.TRANSIENT,
        ),
        (
            ProviderRetryExceededError("gave up", provider="openai", model="m"),
            ErrorClass.TRANSIENT,
        ),
        (VectorStoreError("bad filter", status_code=400), ErrorClass.PERMANENT),
        (
            VectorStoreError("busy", status_code=503, retryable=True),
            ErrorClass.TRANSIENT,
        ),
        (VectorStoreError("connection reset"), ErrorClass.TRANSIENT),
        (_status_error(429), ErrorClass.TRANSIENT),
        (_status_error(404), ErrorClass.PERMANENT),
        (ConnectionResetError(), ErrorClass.TRANSIENT),
    ],
)
def test_classify_error(exc: BaseException, expected: ErrorClass) -> None:
    assert classify_error(exc) is expected


def test_describe_error_truncates_long_messages() -> None:
    described = describe_error(RuntimeError("x" * 2_000))

    assert described.startswith("RuntimeError: xxx")
    assert len(described) == 500
    assert described.endswith("...")
    assert describe_error(TimeoutError()) == "TimeoutError"


def test_backoff_doubles_and_caps_without_jitter() -> None:
    policy = BackoffPolicy(base=30.0, cap=900.0, jitter=0.0)

    assert [policy.delay(n) for n in range(1, 7)] == [
        30.0,
        60.0,
        120.0,
        240.0,
        480.0,
        900.0,
    ]


def test_backoff_jitter_stays_within_bounds() -> None:
    policy = BackoffPolicy(base=30.0, cap=900.0, jitter=0.2, rng=random.Random(3))

    delays = [policy.delay(2) for _ in range(200)]

    assert all(48.0 <= delay <= 72.0 for delay in delays)
    assert len(set(delays)) > 1


def test_run_ids_are_unique_uuid7_values() -> None:
    when = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    first = generate_run_id(when=when)
    second = generate_run_id(when=when)

    assert first != second
    assert first[14] == "7"
    assert run_id_timestamp(first) == when
