"""Tests for :mod:`embedsync.sync.service`."""

from __future__ import annotations

from pathlib import Path

import structlog

from embedsync.core.config import AppConfig
from embedsync.core.logging import get_logger
from embedsync.core.paths import resolve_workspace
from embedsync.sync import SyncService
from embedsync.vectors.memory import InMemoryVectorStore


def test_from_config_shares_the_command_logger(
    tmp_path: Path, content_store, fake_provider_cls
) -> None:
    paths = resolve_workspace(workspace_override=tmp_path / "ws")
    config = AppConfig(workspace=paths.workspace, vector_store={"backend": "memory"})

    service = SyncService.from_config(
        config,
        paths,
        content=content_store,
        provider=fake_provider_cls(),
        logger=get_logger("test.service", command="run"),
    )

    assert isinstance(service.vectors, InMemoryVectorStore)
    assert paths.jobs_database.exists()
    components = {
        "job-store": service.store.logger,
        "enqueue": service._gate.logger,
        "executor": service._executor.logger,
        "worker": service._worker.logger,
        "gc": service._gc.logger,
    }
    for component, logger in components.items():
        context = structlog.get_context(logger)
        assert context["command"] == "run"
        assert context["component"] == component
