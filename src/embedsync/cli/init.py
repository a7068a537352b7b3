"""Helpers for the ``embedsync init`` command."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from embedsync.core.config import (
    AppConfig,
    load_config,
    load_packaged_defaults,
    render_user_config,
)
from embedsync.core.paths import resolve_workspace
from embedsync.sync.store import JobStore

FILE_CONTENT_STORE_FACTORY = "embedsync.content.files:create_store"


def init_workspace(
    *,
    workspace: Path,
    log_level: str | None = None,
    content_root: Path | None = None,
    qdrant_url: str | None = None,
    force: bool = False,
) -> AppConfig:
    """Create the workspace tree, the job database, and ``embedsync.toml``.

    An existing ``embedsync.toml`` is left untouched unless ``force`` is set.

    Example:
        >>> from pathlib import Path
        >>> config = init_workspace(workspace=Path("/tmp/embedsync-example"))
        >>> str(config.workspace).endswith("embedsync-example")
        True
    """

    paths = resolve_workspace(workspace_override=workspace)
    paths.ensure_directories()

    overrides: dict[str, Any] = {"workspace": str(paths.workspace)}
    if log_level:
        overrides["log_level"] = log_level
    if content_root is not None:
        overrides["content_store"] = {
            "factory": FILE_CONTENT_STORE_FACTORY,
            "options": {"root": str(content_root.expanduser().resolve())},
        }
    if qdrant_url:
        overrides["vector_store"] = {"url": qdrant_url}

    config = load_config(
        defaults=load_packaged_defaults(),
        cli_overrides=overrides,
    )

    if force or not paths.config_file.exists():
        paths.config_file.write_text(
            render_user_config(config),
            encoding="utf-8",
        )

    JobStore(paths.jobs_database).initialize()
    return config


__all__ = ["FILE_CONTENT_STORE_FACTORY", "init_workspace"]
