"""Content store contract consumed by the sync pipeline.

The content store owns the records being indexed. The pipeline only needs
to read the current text of one target and learn which project it belongs
to; everything else about the store stays behind this seam.
"""

from __future__ import annotations

import importlib
import json
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Iterable, Mapping, Protocol, runtime_checkable

__all__ = [
    "ContentNotFoundError",
    "ContentStore",
    "ContentStoreError",
    "MalformedTargetError",
    "TargetContent",
    "TargetType",
    "build_entity_text",
    "load_content_store",
]


class TargetType(StrEnum):
    """Kinds of records kept in sync with the vector index."""

    DOCUMENT = "document"
    ENTITY = "entity"


class ContentStoreError(RuntimeError):
    """Raised when the content store cannot serve a request."""


class MalformedTargetError(ContentStoreError):
    """Raised when a record exists but cannot be rendered as text."""


class ContentNotFoundError(ContentStoreError):
    """Raised when a target record does not exist."""

    def __init__(self, target_type: str, target_id: str) -> None:
        super().__init__(f"{target_type} {target_id!r} not found")
        self.target_type = target_type
        self.target_id = target_id


@dataclass(frozen=True, slots=True)
class TargetContent:
    """Current text of a target plus the metadata copied into payloads."""

    project_id: str
    text: str
    title: str | None = None
    subtype: str | None = None


@runtime_checkable
class ContentStore(Protocol):
    """Read access to source records."""

    def get_text(self, target_type: TargetType, target_id: str) -> TargetContent:
        """Return the current content for the target.

        Raises:
            ContentNotFoundError: If the record no longer exists.
        """


def build_entity_text(
    name: str,
    *,
    aliases: Iterable[str] = (),
    notes: str | None = None,
    attributes: Mapping[str, Any] | None = None,
) -> str:
    """Render a structured entity as indexable text.

    Example:
        >>> build_entity_text("Ada", aliases=["Countess"], attributes={"age": 36})
        'Ada\\nAliases: Countess\\nAttributes: {"age":36}'
    """

    parts = [name]
    alias_list = [alias for alias in aliases if alias]
    if alias_list:
        parts.append(f"Aliases: {', '.join(alias_list)}")
    if notes:
        parts.append(notes)
    if attributes:
        encoded = json.dumps(
            dict(attributes),
            separators=(",", ":"),
            ensure_ascii=False,
        )
        parts.append(f"Attributes: {encoded}")
    return "\n".join(parts)


def load_content_store(
    factory_path: str,
    options: Mapping[str, Any] | None = None,
) -> ContentStore:
    """Import ``package.module:callable`` and call it with ``options``.

    Raises:
        ContentStoreError: If the factory cannot be imported or does not
            return a :class:`ContentStore`.
    """

    module_name, _, attr = factory_path.partition(":")
    if not module_name or not attr:
        raise ContentStoreError(
            f"Invalid content store factory {factory_path!r}; "
            "expected 'package.module:callable'."
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ContentStoreError(
            f"Cannot import content store module {module_name!r}: {exc}"
        ) from exc
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ContentStoreError(
            f"{factory_path!r} does not name a callable factory."
        )

    store = factory(**dict(options or {}))
    if not isinstance(store, ContentStore):
        raise ContentStoreError(
            f"{factory_path!r} returned {type(store).__name__}, "
            "which has no get_text method."
        )
    return store
