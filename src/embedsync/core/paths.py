"""Workspace path helpers for :mod:`embedsync`."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

__all__ = [
    "CONFIG_FILENAME",
    "JOBS_DATABASE_FILENAME",
    "WorkspacePaths",
    "resolve_workspace",
]

CONFIG_FILENAME = "embedsync.toml"
JOBS_DATABASE_FILENAME = "jobs.sqlite3"


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Resolved locations for a workspace instance.

    Example:
        >>> from pathlib import Path
        >>> paths = WorkspacePaths(
        ...     workspace=Path("/tmp/embedsync"),
        ...     config_file=Path("/tmp/embedsync/embedsync.toml"),
        ...     logs_dir=Path("/tmp/embedsync/logs"),
        ...     data_dir=Path("/tmp/embedsync/data"),
        ... )
        >>> paths.jobs_database.name
        'jobs.sqlite3'
    """

    workspace: Path
    config_file: Path
    logs_dir: Path
    data_dir: Path

    @property
    def jobs_database(self) -> Path:
        """Return the SQLite database holding the sync job table."""

        return self.data_dir / JOBS_DATABASE_FILENAME

    def iter_all(self) -> Iterable[Path]:
        """Yield every path managed within the workspace."""

        yield from (
            self.workspace,
            self.config_file,
            self.logs_dir,
            self.data_dir,
        )

    def ensure_directories(self) -> None:
        """Create the workspace directory tree if it is missing."""

        for path in (self.workspace, self.logs_dir, self.data_dir):
            path.mkdir(parents=True, exist_ok=True)


def resolve_workspace(
    *,
    workspace_override: Path | None = None,
    env_override: Path | None = None,
) -> WorkspacePaths:
    """Resolve canonical workspace locations.

    Args:
        workspace_override: Optional override provided by CLI flags.
        env_override: Optional override from environment variables.

    Returns:
        Resolved workspace paths after precedence rules are applied.

    Raises:
        ValueError: If the resolved workspace points to a regular file.
    """

    def _normalize(candidate: Path) -> Path:
        raw = Path(candidate).expanduser()
        if raw.is_absolute():
            return raw.resolve(strict=False)
        return (Path.cwd() / raw).resolve(strict=False)

    base = workspace_override or env_override or Path.home() / ".embedsync"
    workspace = _normalize(base)

    if workspace.exists() and workspace.is_file():
        raise ValueError(f"Workspace file path not allowed: {workspace}")

    return WorkspacePaths(
        workspace=workspace,
        config_file=workspace / CONFIG_FILENAME,
        logs_dir=workspace / "logs",
        data_dir=workspace / "data",
    )
