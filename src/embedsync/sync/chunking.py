"""Paragraph-aware chunking, hashing, and chunk diffing."""

from __future__ import annotations

import hashlib
import re
from typing import Any, Iterable, Mapping, Sequence

from .models import Chunk

__all__ = [
    "build_chunks",
    "chunk_text",
    "diff_chunks",
    "existing_chunk_hashes",
    "hash_text",
]

_PARAGRAPH_BREAK = re.compile(r"\n{2,}")


def hash_text(text: str) -> str:
    """Return the hex SHA-256 digest of ``text`` encoded as UTF-8."""

    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def chunk_text(text: str, max_chars: int) -> list[str]:
    """Split ``text`` into chunks of at most ``max_chars`` characters.

    Blank-line separated paragraphs are packed greedily, joined by a blank
    line. A paragraph longer than ``max_chars`` is flushed on its own and
    sliced at fixed character offsets. Whitespace-only input yields no
    chunks.

    Example:
        >>> chunk_text("alpha\\n\\nbeta\\n\\n\\ngamma", max_chars=12)
        ['alpha\\n\\nbeta', 'gamma']
        >>> chunk_text("abcdefg", max_chars=3)
        ['abc', 'def', 'g']
    """

    if max_chars < 1:
        raise ValueError("max_chars must be >= 1")

    normalized = text.replace("\r\n", "\n").strip()
    if not normalized:
        return []

    chunks: list[str] = []
    buffer = ""

    def flush() -> None:
        nonlocal buffer
        trimmed = buffer.strip()
        if trimmed:
            chunks.append(trimmed)
        buffer = ""

    for paragraph in _PARAGRAPH_BREAK.split(normalized):
        para = paragraph.strip()
        if not para:
            continue

        if len(para) > max_chars:
            flush()
            chunks.extend(
                para[start : start + max_chars]
                for start in range(0, len(para), max_chars)
            )
            continue

        if len(buffer) + len(para) + 2 > max_chars:
            flush()
        buffer = f"{buffer}\n\n{para}" if buffer else para

    flush()
    return chunks


def build_chunks(text: str, max_chars: int) -> list[Chunk]:
    """Return indexed, hashed chunks for ``text``."""

    return [
        Chunk(index=index, text=piece, hash=hash_text(piece))
        for index, piece in enumerate(chunk_text(text, max_chars))
    ]


def diff_chunks(
    existing: Mapping[int, str],
    chunks: Sequence[Chunk],
) -> list[Chunk]:
    """Return chunks whose hash differs from the indexed one at their index.

    Example:
        >>> new = build_chunks("a\\n\\nb", max_chars=1)
        >>> [c.index for c in diff_chunks({0: new[0].hash}, new)]
        [1]
    """

    return [chunk for chunk in chunks if existing.get(chunk.index) != chunk.hash]


def _parse_chunk_index(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip():
        try:
            return int(float(value))
        except ValueError:
            return None
    return None


def existing_chunk_hashes(
    payloads: Iterable[Mapping[str, Any]],
) -> dict[int, str]:
    """Collect ``chunk_index -> chunk_hash`` from scrolled point payloads.

    Payloads without a usable index or hash are skipped, which only makes
    the corresponding chunk look changed.
    """

    hashes: dict[int, str] = {}
    for payload in payloads:
        index = _parse_chunk_index(payload.get("chunk_index"))
        chunk_hash = payload.get("chunk_hash")
        if index is None or not isinstance(chunk_hash, str) or not chunk_hash:
            continue
        hashes[index] = chunk_hash
    return hashes
