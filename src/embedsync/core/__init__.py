"""Core utilities shared across :mod:`embedsync` packages.

The core namespace groups configuration loading, logging setup, and
workspace path resolution so the sync pipeline stays free of bootstrapping
concerns.

Example:
    >>> from embedsync.core import get_logger
    >>> logger = get_logger(__name__)
    >>> isinstance(logger, object)
    True
"""

from __future__ import annotations

from .config import AppConfig, ConfigError, SyncSettings, load_config
from .logging import configure_logging, get_logger, job_log_context
from .paths import WorkspacePaths, resolve_workspace

__all__ = [
    "AppConfig",
    "ConfigError",
    "SyncSettings",
    "configure_logging",
    "get_logger",
    "job_log_context",
    "load_config",
    "WorkspacePaths",
    "resolve_workspace",
]
