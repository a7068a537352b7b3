"""Tests for :mod:`embedsync.cli.init`."""

from __future__ import annotations

import sqlite3
import tomllib
from pathlib import Path

from embedsync.cli.init import FILE_CONTENT_STORE_FACTORY, init_workspace


def test_init_workspace_seeds_config_and_job_database(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    config = init_workspace(workspace=workspace)

    config_path = workspace / "embedsync.toml"
    assert config_path.exists()
    assert (workspace / "logs").is_dir()

    rendered = tomllib.loads(config_path.read_text(encoding="utf-8"))
    assert rendered["workspace"].endswith("workspace")
    assert rendered["log_level"] == "INFO"
    assert rendered["sync"]["max_attempts"] == 5
    assert "factory" not in rendered["content_store"]

    assert config.workspace == Path(rendered["workspace"])

    with sqlite3.connect(workspace / "data" / "jobs.sqlite3") as conn:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
    assert {"sync_jobs", "vector_delete_jobs"} <= tables


def test_init_workspace_keeps_existing_config_unless_forced(tmp_path: Path) -> None:
    workspace = tmp_path / "custom"
    init_workspace(workspace=workspace)
    config_path = workspace / "embedsync.toml"
    config_path.write_text('log_level = "WARNING"\n', encoding="utf-8")

    init_workspace(workspace=workspace, log_level="debug")
    assert config_path.read_text(encoding="utf-8") == 'log_level = "WARNING"\n'

    init_workspace(
        workspace=workspace,
        log_level="debug",
        qdrant_url="http://qdrant:6333/",
        force=True,
    )
    rendered = tomllib.loads(config_path.read_text(encoding="utf-8"))
    assert rendered["log_level"] == "DEBUG"
    assert rendered["vector_store"]["url"] == "http://qdrant:6333"


def test_init_workspace_configures_file_content_store(tmp_path: Path) -> None:
    content_root = tmp_path / "content"
    content_root.mkdir()

    config = init_workspace(
        workspace=tmp_path / "workspace",
        content_root=content_root,
    )

    assert config.content_store.factory == FILE_CONTENT_STORE_FACTORY
    assert config.content_store.options == {"root": str(content_root.resolve())}
