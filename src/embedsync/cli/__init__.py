"""Command-line interface for :mod:`embedsync`.

This module exposes the Typer application behind the ``embedsync`` console
script. ``init`` bootstraps a workspace; the remaining commands are thin
wrappers over :class:`embedsync.sync.SyncService` meant to be driven by cron
or another scheduler.

Example:
    >>> import typer
    >>> from embedsync.cli import create_app
    >>> app = create_app()
    >>> isinstance(app, typer.Typer)
    True
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import typer

from embedsync.cli.init import init_workspace
from embedsync.content import ContentStoreError, load_content_store
from embedsync.core.config import (
    AppConfig,
    ConfigError,
    env_config_from_environ,
    load_config,
    load_packaged_defaults,
    read_user_config,
)
from embedsync.core.logging import Logger, configure_logging, get_logger
from embedsync.core.paths import WorkspacePaths, resolve_workspace
from embedsync.embeddings import ProviderRegistry, ProviderRegistryError
from embedsync.embeddings.errors import EmbeddingProviderError
from embedsync.sync import SyncService, TargetUnresolvable
from embedsync.sync.health import HealthStatus
from embedsync.vectors import VectorStoreError

_app_help = (
    "Keep a vector index in sync with frequently edited content."
    "\n\n"
    "Use `embedsync init` to bootstrap a workspace, then schedule "
    "`embedsync run` and `embedsync gc`."
)

_STATUS_COLORS: Mapping[HealthStatus, str] = {
    HealthStatus.OK: typer.colors.GREEN,
    HealthStatus.DEGRADED: typer.colors.YELLOW,
    HealthStatus.ERROR: typer.colors.RED,
}


@dataclass(slots=True)
class CLIOptions:
    """Global options captured by the top-level callback."""

    workspace: Path | None
    log_level: str | None


@dataclass(slots=True)
class SyncCLIContext:
    """Resolved workspace, configuration, and service for one command."""

    paths: WorkspacePaths
    config: AppConfig
    service: SyncService
    logger: Logger


def _resolve_paths(workspace: Path | None) -> WorkspacePaths:
    env_workspace = os.environ.get("EMBEDSYNC_WORKSPACE")
    env_override = Path(env_workspace).expanduser() if env_workspace else None
    try:
        return resolve_workspace(
            workspace_override=workspace,
            env_override=env_override,
        )
    except ValueError as exc:
        typer.secho(f"Workspace error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc


def _load_workspace_config(
    paths: WorkspacePaths,
    *,
    log_level: str | None,
) -> AppConfig:
    cli_overrides: dict[str, Any] = {"workspace": str(paths.workspace)}
    if log_level:
        cli_overrides["log_level"] = log_level
    return load_config(
        defaults=load_packaged_defaults(),
        user_config=read_user_config(paths.config_file),
        env_config=env_config_from_environ(os.environ),
        cli_overrides=cli_overrides,
    )


def _fail(message: str, error: BaseException | None = None) -> typer.Exit:
    typer.secho(message, fg=typer.colors.RED, err=True)
    exit_error = typer.Exit(code=1)
    if error is not None:
        exit_error.__cause__ = error
    return exit_error


def _build_context(
    ctx: typer.Context,
    *,
    command: str,
    registry: ProviderRegistry | None,
) -> SyncCLIContext:
    options = ctx.obj if isinstance(ctx.obj, CLIOptions) else CLIOptions(None, None)
    paths = _resolve_paths(options.workspace)

    if not paths.config_file.exists():
        raise _fail(
            f"Workspace config not found at {paths.config_file}. "
            "Run `embedsync init` first."
        )

    try:
        config = _load_workspace_config(paths, log_level=options.log_level)
    except ConfigError as exc:
        raise _fail(f"Failed to load workspace config: {exc}", exc) from exc

    configure_logging(level=config.log_level, workspace_path=config.workspace)
    logger = get_logger(__name__, command=command)

    factory = config.content_store.factory
    if factory is None:
        raise _fail(
            "No content store configured. Set content_store.factory in "
            f"{paths.config_file} or EMBEDSYNC_CONTENT_STORE."
        )

    try:
        content = load_content_store(factory, config.content_store.options)
        service = SyncService.from_config(
            config,
            paths,
            content=content,
            registry=registry,
            logger=logger,
        )
    except (
        ContentStoreError,
        VectorStoreError,
        EmbeddingProviderError,
        ProviderRegistryError,
    ) as exc:
        logger.error("cli-setup-failed", error=str(exc))
        raise _fail(f"Setup failed: {exc}", exc) from exc

    return SyncCLIContext(
        paths=paths,
        config=config,
        service=service,
        logger=logger,
    )


def _echo_mapping(title: str, values: Mapping[str, object]) -> None:
    typer.secho(title, bold=True)
    for key, value in values.items():
        if isinstance(value, list):
            continue
        typer.echo(f"  {key}: {value}")


def create_app(
    *,
    provider_registry: ProviderRegistry | None = None,
) -> "typer.Typer":
    """Return the Typer application powering the ``embedsync`` CLI.

    Args:
        provider_registry: Optional registry used instead of the built-in
            providers, primarily for testing.
    """

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
    )

    @app.callback()
    def main_callback(
        ctx: typer.Context,
        workspace: Path | None = typer.Option(
            None,
            "--workspace",
            "-w",
            help=(
                "Override the workspace directory (defaults to "
                "EMBEDSYNC_WORKSPACE or ~/.embedsync)."
            ),
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
        ),
    ) -> None:
        """Capture global options for subcommands."""

        ctx.obj = CLIOptions(workspace=workspace, log_level=log_level)

    @app.command("init", help="Create a workspace and seed embedsync.toml.")
    def init_command(
        ctx: typer.Context,
        content_root: Path | None = typer.Option(
            None,
            "--content-root",
            help="Serve content from a directory via the file content store.",
        ),
        qdrant_url: str | None = typer.Option(
            None,
            "--qdrant-url",
            help="Base URL of the Qdrant instance.",
        ),
        force: bool = typer.Option(
            False,
            "--force",
            help="Overwrite an existing embedsync.toml.",
        ),
    ) -> None:
        options = ctx.obj if isinstance(ctx.obj, CLIOptions) else None
        paths = _resolve_paths(options.workspace if options else None)
        existed = paths.config_file.exists()

        try:
            config = init_workspace(
                workspace=paths.workspace,
                log_level=options.log_level if options else None,
                content_root=content_root,
                qdrant_url=qdrant_url,
                force=force,
            )
        except (ConfigError, OSError) as exc:
            raise _fail(f"Failed to initialize workspace: {exc}", exc) from exc

        configure_logging(level=config.log_level, workspace_path=config.workspace)
        get_logger(__name__, command="init").info(
            "init-complete",
            workspace=str(config.workspace),
            config_written=force or not existed,
        )

        typer.secho("Workspace initialized", fg=typer.colors.GREEN, bold=True)
        typer.echo(f"  workspace: {config.workspace}")
        typer.echo(f"  config: {paths.config_file}")
        typer.echo(f"  jobs database: {paths.jobs_database}")
        if existed and not force:
            typer.echo("  note: existing embedsync.toml left untouched")

    @app.command("enqueue", help="Signal that a target's text changed.")
    def enqueue_command(
        ctx: typer.Context,
        project_id: str = typer.Argument(..., metavar="PROJECT"),
        target_type: str = typer.Argument(..., metavar="TYPE"),
        target_id: str = typer.Argument(..., metavar="ID"),
    ) -> None:
        context = _build_context(ctx, command="enqueue", registry=provider_registry)
        try:
            job = context.service.enqueue(project_id, target_type, target_id)
        except TargetUnresolvable as exc:
            context.logger.error("enqueue-failed", error=str(exc))
            raise _fail(str(exc), exc) from exc
        typer.echo(
            f"{job.target_key}: {job.status}"
            f"{' (dirty)' if job.dirty else ''}, "
            f"next run at {job.next_run_at.isoformat()}"
        )

    @app.command("run", help="Process due jobs and drain vector deletes once.")
    def run_command(
        ctx: typer.Context,
        limit: int | None = typer.Option(
            None,
            "--limit",
            "-n",
            min=1,
            help="Maximum jobs to process (clamped to sync.max_batch_size).",
        ),
        json_output: bool = typer.Option(False, "--json"),
    ) -> None:
        context = _build_context(ctx, command="run", registry=provider_registry)
        tick = context.service.process_due_jobs(limit)
        deletes = context.service.process_vector_delete_jobs()
        if json_output:
            payload = {"jobs": tick.to_mapping(), "vector_deletes": deletes.to_mapping()}
            typer.echo(json.dumps(payload, indent=2, sort_keys=True))
            return
        _echo_mapping("Jobs", tick.to_mapping())
        for error in tick.errors:
            typer.secho(f"  error: {error}", fg=typer.colors.YELLOW)
        _echo_mapping("Vector deletes", deletes.to_mapping())

    @app.command("gc", help="Release expired leases and prune old jobs.")
    def gc_command(ctx: typer.Context) -> None:
        context = _build_context(ctx, command="gc", registry=provider_registry)
        stale = context.service.requeue_stale_processing_jobs()
        cleanup = context.service.cleanup_jobs()
        _echo_mapping("Expired leases", stale.to_mapping())
        _echo_mapping("Cleanup", cleanup.to_mapping())

    @app.command("delete", help="Drop a deleted target's job and its vectors.")
    def delete_command(
        ctx: typer.Context,
        project_id: str = typer.Argument(..., metavar="PROJECT"),
        target_type: str = typer.Argument(..., metavar="TYPE"),
        target_id: str = typer.Argument(..., metavar="ID"),
    ) -> None:
        context = _build_context(ctx, command="delete", registry=provider_registry)
        try:
            existed = context.service.delete_jobs_for_target(
                project_id, target_type, target_id
            )
        except ValueError as exc:
            raise _fail(f"Unsupported target type {target_type!r}", exc) from exc
        state = "job removed" if existed else "no job found"
        typer.echo(f"{project_id}/{target_type}/{target_id}: {state}; vector delete queued")

    @app.command("delete-project", help="Drop every job and vector of a project.")
    def delete_project_command(
        ctx: typer.Context,
        project_id: str = typer.Argument(..., metavar="PROJECT"),
    ) -> None:
        context = _build_context(
            ctx, command="delete-project", registry=provider_registry
        )
        deleted = context.service.delete_jobs_for_project(project_id)
        typer.echo(f"{project_id}: {deleted} job(s) removed; vector delete queued")

    @app.command("status", help="Show job counts and pipeline health.")
    def status_command(
        ctx: typer.Context,
        json_output: bool = typer.Option(False, "--json"),
    ) -> None:
        context = _build_context(ctx, command="status", registry=provider_registry)
        report = context.service.health()
        if json_output:
            typer.echo(report.model_dump_json(indent=2))
            return

        typer.secho(
            f"Status: {report.status}",
            fg=_STATUS_COLORS[report.status],
            bold=True,
        )
        for status, count in report.counts.items():
            typer.echo(f"  {status}: {count}")
        if report.oldest_failed_age_seconds is not None:
            typer.echo(
                f"  oldest failure: {report.oldest_failed_age_seconds:.0f}s ago"
            )
        typer.echo(f"  stale processing: {report.stale_processing}")
        typer.echo(
            f"  vector deletes: {report.pending_vector_deletes} pending, "
            f"{report.failed_vector_deletes} failed"
        )
        for error in report.recent_errors:
            typer.secho(f"  error: {error}", fg=typer.colors.YELLOW)
        for action in report.actions:
            typer.echo(f"  action: {action}")

    return app


__all__ = ["CLIOptions", "SyncCLIContext", "create_app"]
