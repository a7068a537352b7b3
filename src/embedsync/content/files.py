"""Directory-backed content store.

Layout under ``root``::

    <project_id>/documents/<document_id>.md     (or .txt)
    <project_id>/entities/<entity_id>.json

Entity files hold ``name`` plus optional ``aliases``, ``notes``,
``attributes`` and ``type``. Documents use their first Markdown heading
as the title. Target ids are unique across projects.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from . import (
    ContentNotFoundError,
    ContentStoreError,
    MalformedTargetError,
    TargetContent,
    TargetType,
    build_entity_text,
)

__all__ = ["FileContentStore", "create_store"]

_DOCUMENT_SUFFIXES = (".md", ".txt")


class FileContentStore:
    """Serve targets from plain files on disk."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root).expanduser()

    def get_text(self, target_type: TargetType, target_id: str) -> TargetContent:
        if "/" in target_id or "\\" in target_id or target_id in {"", ".", ".."}:
            raise ContentNotFoundError(str(target_type), target_id)
        if target_type is TargetType.DOCUMENT:
            return self._document(target_id)
        if target_type is TargetType.ENTITY:
            return self._entity(target_id)
        raise ContentStoreError(f"Unsupported target type {target_type!r}")

    def _find(self, folder: str, names: tuple[str, ...]) -> Path | None:
        if not self.root.is_dir():
            return None
        for project_dir in sorted(self.root.iterdir()):
            if not project_dir.is_dir():
                continue
            for name in names:
                candidate = project_dir / folder / name
                if candidate.is_file():
                    return candidate
        return None

    def _document(self, target_id: str) -> TargetContent:
        names = tuple(f"{target_id}{suffix}" for suffix in _DOCUMENT_SUFFIXES)
        path = self._find("documents", names)
        if path is None:
            raise ContentNotFoundError(TargetType.DOCUMENT, target_id)
        text = path.read_text(encoding="utf-8")
        title = next(
            (
                line.lstrip("#").strip()
                for line in text.splitlines()
                if line.startswith("#")
            ),
            None,
        )
        return TargetContent(
            project_id=path.parent.parent.name,
            text=text,
            title=title or "Untitled",
            subtype="document",
        )

    def _entity(self, target_id: str) -> TargetContent:
        path = self._find("entities", (f"{target_id}.json",))
        if path is None:
            raise ContentNotFoundError(TargetType.ENTITY, target_id)
        try:
            data: dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise MalformedTargetError(f"Malformed entity file {path}: {exc}") from exc
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise MalformedTargetError(f"Entity file {path} has no name")
        text = build_entity_text(
            name,
            aliases=data.get("aliases") or (),
            notes=data.get("notes"),
            attributes=data.get("attributes"),
        )
        return TargetContent(
            project_id=path.parent.parent.name,
            text=text,
            title=name,
            subtype=data.get("type"),
        )


def create_store(*, root: str | Path) -> FileContentStore:
    """Factory usable as ``embedsync.content.files:create_store``."""

    return FileContentStore(Path(root))
