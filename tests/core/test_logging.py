"""Tests for :mod:`embedsync.core.logging`."""

from __future__ import annotations

import gzip
import io
import json
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import pytest
from rich.console import Console
from rich.logging import RichHandler

from embedsync.core.logging import configure_logging, get_logger, job_log_context


def _clear_root_handlers() -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Ensure each test runs with a clean logging configuration."""

    _clear_root_handlers()
    yield
    _clear_root_handlers()


def _build_console() -> Console:
    """Return a console that writes to an in-memory buffer for tests."""

    return Console(file=io.StringIO(), width=120, record=True)


def _flush() -> None:
    for handler in logging.getLogger().handlers:
        handler.flush()


def _file_handler() -> TimedRotatingFileHandler:
    return next(
        h
        for h in logging.getLogger().handlers
        if isinstance(h, TimedRotatingFileHandler)
    )


def test_configure_logging_installs_console_and_file_handlers(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    configure_logging(level="debug", workspace_path=workspace, console=_build_console())

    root = logging.getLogger()
    assert len([h for h in root.handlers if isinstance(h, RichHandler)]) == 1

    log_file = Path(_file_handler().baseFilename)
    assert log_file == workspace / "logs" / "embedsync.log"

    get_logger(__name__, component="worker").info("sync-tick-complete", due=2)
    _flush()

    payload = json.loads(log_file.read_text(encoding="utf-8").strip())
    assert payload["event"] == "sync-tick-complete"
    assert payload["component"] == "worker"
    assert payload["due"] == 2
    assert payload["level"] == "info"


def test_configure_logging_without_workspace_omits_file_handler() -> None:
    configure_logging(level="info", console=_build_console())

    root = logging.getLogger()
    assert any(isinstance(h, RichHandler) for h in root.handlers)
    assert not any(isinstance(h, TimedRotatingFileHandler) for h in root.handlers)


def test_configure_logging_rejects_unknown_level(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        configure_logging(level="chatty", console=_build_console())


def test_configure_logging_quiets_http_transports() -> None:
    configure_logging(level="debug", console=_build_console())

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("openai").level == logging.WARNING


def test_job_log_context_binds_fields_inside_block(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"
    configure_logging(level="info", workspace_path=workspace, console=_build_console())
    logger = get_logger("test.worker")

    with job_log_context(job_id=7, run_id="run-1"):
        logger.info("sync-job-claimed")
    logger.info("sync-tick-complete")
    _flush()

    lines = (workspace / "logs" / "embedsync.log").read_text("utf-8").splitlines()
    inside, outside = (json.loads(line) for line in lines)
    assert inside["job_id"] == 7
    assert inside["run_id"] == "run-1"
    assert "job_id" not in outside


def test_configure_logging_rotates_with_compression(tmp_path: Path) -> None:
    workspace = tmp_path / "workspace"

    configure_logging(level="warning", workspace_path=workspace, console=_build_console())

    get_logger("rotate", task="rotation").warning("pre-rotation", sample=True)
    _flush()
    _file_handler().doRollover()

    gz_files = sorted((workspace / "logs").glob("embedsync.log.*.gz"))
    assert gz_files, "Expected a compressed log archive after rollover"

    with gzip.open(gz_files[-1], "rt", encoding="utf-8") as fh:
        archived = fh.read()

    assert "pre-rotation" in archived
    assert "task" in archived
