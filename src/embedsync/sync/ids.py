"""Time-ordered identifiers for processing leases."""

from __future__ import annotations

from datetime import datetime, timezone
import secrets
import uuid

__all__ = ["generate_run_id", "run_id_timestamp"]


def generate_run_id(*, when: datetime | None = None) -> str:
    """Return a fresh UUIDv7 string identifying one processing run.

    UUIDv7 sorts by creation time, so run ids in logs line up with the
    order in which leases were granted.
    """

    instant = when.astimezone(timezone.utc) if when else datetime.now(timezone.utc)
    timestamp_ms = int(instant.timestamp() * 1000)
    if not 0 <= timestamp_ms < 1 << 48:
        raise ValueError("uuid7 timestamp out of range")

    random_bytes = bytearray(secrets.token_bytes(10))
    # Version 7 in the high nibble of byte 6, RFC 4122 variant in byte 8.
    random_bytes[0] = (random_bytes[0] & 0x0F) | 0x70
    random_bytes[2] = (random_bytes[2] & 0x3F) | 0x80

    return str(uuid.UUID(bytes=timestamp_ms.to_bytes(6, "big") + bytes(random_bytes)))


def run_id_timestamp(run_id: str) -> datetime:
    """Return the UTC instant embedded in a run id."""

    ms = int.from_bytes(uuid.UUID(run_id).bytes[0:6], "big")
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
