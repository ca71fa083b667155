"""Typer commands that run sync passes once or on a schedule."""

from __future__ import annotations

import json
import os
import signal
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import typer

from kbsync.core.config import AppConfig, ConfigError, load_workspace_config
from kbsync.core.logging import Logger, configure_logging, get_logger
from kbsync.core.paths import WorkspacePaths, resolve_workspace
from kbsync.sync.engine import SyncEngine
from kbsync.sync.errors import KbSyncError, SyncPassError
from kbsync.sync.models import SyncSummary
from kbsync.sync.scheduler import SyncScheduler

__all__ = ["SyncCLIContext", "register_sync_commands"]


@dataclass(slots=True)
class SyncCLIContext:
    """Resolved workspace, configuration, and logger for one command."""

    paths: WorkspacePaths
    config: AppConfig
    logger: Logger


def _resolve_workspace_override(workspace: Path | None) -> WorkspacePaths:
    env_workspace = os.environ.get("KBSYNC_WORKSPACE")
    env_override = Path(env_workspace).expanduser() if env_workspace else None
    return resolve_workspace(
        workspace_override=workspace,
        env_override=env_override,
    )


def _cli_overrides(
    *,
    log_level: str | None,
    directory: Path | None,
    collection: str | None,
) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    if log_level:
        overrides["log_level"] = log_level
    if directory is not None:
        overrides["knowledge_base"] = {"directory": str(directory)}
    if collection:
        overrides["qdrant"] = {"collection": collection}
    return overrides


def _prepare_context(
    *,
    command: str,
    workspace: Path | None,
    log_level: str | None,
    directory: Path | None,
    collection: str | None,
) -> SyncCLIContext:
    try:
        paths = _resolve_workspace_override(workspace)
        config = load_workspace_config(
            paths,
            cli_overrides=_cli_overrides(
                log_level=log_level,
                directory=directory,
                collection=collection,
            ),
        )
    except (ValueError, ConfigError) as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    configure_logging(level=config.log_level, log_dir=config.paths.logs_dir)
    logger = get_logger(__name__, command=command)
    return SyncCLIContext(paths=config.paths, config=config, logger=logger)


def _build_engine(context: SyncCLIContext) -> SyncEngine:
    try:
        return SyncEngine.from_config(
            context.config,
            logger=context.logger.bind(component="engine"),
        )
    except ConfigError as exc:
        typer.secho(f"Configuration error: {exc}", fg=typer.colors.RED)
        context.logger.error("engine-config-failed", error=str(exc))
        raise typer.Exit(code=1) from exc


def _echo_summary(summary: SyncSummary, *, as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(summary.to_mapping(), indent=2))
        return

    title = "Sync cancelled" if summary.cancelled else "Sync complete"
    color = typer.colors.YELLOW if summary.cancelled else typer.colors.GREEN
    typer.secho(title, fg=color, bold=True)
    typer.echo(f"  root: {summary.root}")
    typer.echo(f"  collection: {summary.collection}")
    typer.echo(
        f"  files: {summary.files_total} "
        f"(processed {summary.processed}, skipped {summary.skipped})"
    )
    typer.echo(
        f"  changes: {summary.created} new, {summary.updated} updated, "
        f"{summary.errored} errored, {summary.empty} empty"
    )
    typer.echo(
        f"  uploaded: {summary.uploaded} in {summary.batches} batches"
    )
    typer.echo(
        f"  verified: {summary.verified} ok, "
        f"{summary.verification_failures} failed"
    )
    if summary.lookup_failures:
        typer.echo(f"  lookup failures: {summary.lookup_failures}")


def _install_signal_handlers(shutdown: threading.Event) -> dict[int, Any]:
    def _handle(signum: int, _frame: Any) -> None:
        shutdown.set()

    previous: dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handle)
    return previous


def _restore_signal_handlers(previous: dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


_workspace_option = typer.Option(
    None,
    "--workspace",
    "-w",
    help="Override workspace directory (defaults to KBSYNC_WORKSPACE or ~/.kbsync).",
)
_log_level_option = typer.Option(
    None,
    "--log-level",
    "-l",
    help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
)
_directory_option = typer.Option(
    None,
    "--directory",
    "-d",
    help="Knowledge-base directory to scan.",
)
_collection_option = typer.Option(
    None,
    "--collection",
    "-c",
    help="Qdrant collection receiving the documents.",
)


def register_sync_commands(app: typer.Typer) -> None:
    """Attach ``sync`` and ``serve`` to ``app``."""

    @app.command("sync", help="Run a single sync pass and print its summary.")
    def sync_command(
        workspace: Path | None = _workspace_option,
        log_level: str | None = _log_level_option,
        directory: Path | None = _directory_option,
        collection: str | None = _collection_option,
        as_json: bool = typer.Option(
            False,
            "--json",
            help="Emit the summary as JSON.",
        ),
    ) -> None:
        context = _prepare_context(
            command="sync",
            workspace=workspace,
            log_level=log_level,
            directory=directory,
            collection=collection,
        )
        engine = _build_engine(context)
        try:
            summary = engine.run_sync_pass()
        except SyncPassError as exc:
            typer.secho(f"Sync failed: {exc}", fg=typer.colors.RED)
            if exc.summary is not None and as_json:
                typer.echo(json.dumps(exc.summary.to_mapping(), indent=2))
            raise typer.Exit(code=1) from exc
        except KbSyncError as exc:
            typer.secho(f"Sync failed: {exc}", fg=typer.colors.RED)
            context.logger.error("sync-command-failed", error=str(exc))
            raise typer.Exit(code=1) from exc
        finally:
            engine.close()

        _echo_summary(summary, as_json=as_json)

    @app.command(
        "serve",
        help="Ensure the collection, then sync on the configured interval.",
    )
    def serve_command(
        workspace: Path | None = _workspace_option,
        log_level: str | None = _log_level_option,
        directory: Path | None = _directory_option,
        collection: str | None = _collection_option,
        interval: float | None = typer.Option(
            None,
            "--interval",
            "-i",
            min=1.0,
            help="Seconds between passes (overrides schedule.interval_seconds).",
        ),
    ) -> None:
        context = _prepare_context(
            command="serve",
            workspace=workspace,
            log_level=log_level,
            directory=directory,
            collection=collection,
        )
        schedule = context.config.schedule
        engine = _build_engine(context)

        try:
            engine.ensure_collection()
        except KbSyncError as exc:
            typer.secho(f"Startup failed: {exc}", fg=typer.colors.RED)
            context.logger.error("serve-startup-failed", error=str(exc))
            engine.close()
            raise typer.Exit(code=1) from exc

        scheduler = SyncScheduler(
            engine,
            interval_seconds=interval or schedule.interval_seconds,
            run_on_start=schedule.run_on_start,
            logger=context.logger.bind(component="scheduler"),
        )
        shutdown = threading.Event()
        previous = _install_signal_handlers(shutdown)
        try:
            scheduler.start()
            typer.secho(
                f"Serving {engine.files.root} -> {engine.index.collection} "
                f"every {scheduler.interval_seconds:g}s (Ctrl+C to stop)",
                fg=typer.colors.GREEN,
            )
            shutdown.wait()
            context.logger.info("serve-shutdown-requested")
        finally:
            scheduler.stop()
            engine.close()
            _restore_signal_handlers(previous)

        typer.echo(
            f"Stopped after {scheduler.completed_passes} passes "
            f"({scheduler.failed_passes} failed, "
            f"{scheduler.skipped_triggers} skipped)."
        )
