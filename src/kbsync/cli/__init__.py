"""Command-line interface for :mod:`kbsync`.

This module exposes the Typer application behind the ``kbsync`` console
script. ``init`` lives here; the pass-running commands are registered from
:mod:`kbsync.cli.sync`.

Example:
    >>> import typer
    >>> from kbsync.cli import create_app
    >>> isinstance(create_app(), typer.Typer)
    True
"""

from __future__ import annotations

import os
from pathlib import Path

import typer

from kbsync.cli.init import init_workspace
from kbsync.cli.sync import register_sync_commands
from kbsync.core.config import DEFAULTS_RESOURCE_NAME, ConfigError
from kbsync.core.logging import configure_logging, get_logger
from kbsync.core.paths import resolve_workspace

__all__ = ["create_app"]

_app_help = (
    "Keep a Qdrant collection in sync with a directory of text files."
    "\n\n"
    "Use `kbsync init` to bootstrap a workspace and populate `kbsync.toml`."
)


def create_app() -> "typer.Typer":
    """Return the Typer application powering the ``kbsync`` CLI."""

    app = typer.Typer(
        help=_app_help,
        no_args_is_help=True,
        rich_markup_mode="rich",
        invoke_without_command=False,
        cls=typer.core.TyperGroup,
    )

    @app.callback()
    def main_callback() -> None:
        """Top-level CLI callback ensuring subcommands are dispatched."""

        return None

    @app.command(
        "init",
        help="Bootstrap a workspace and seed kbsync.toml.",
    )
    def init_command(
        workspace: Path | None = typer.Option(
            None,
            "--workspace",
            "-w",
            help=(
                "Override the workspace directory (defaults to "
                "$HOME/.kbsync or KBSYNC_WORKSPACE)."
            ),
        ),
        directory: Path | None = typer.Option(
            None,
            "--directory",
            "-d",
            help="Knowledge-base directory to record in kbsync.toml.",
        ),
        log_level: str | None = typer.Option(
            None,
            "--log-level",
            "-l",
            help="Override the logging level (DEBUG/INFO/WARNING/ERROR).",
        ),
        force: bool = typer.Option(
            False,
            "--force",
            help="Overwrite an existing kbsync.toml.",
        ),
    ) -> None:
        env_workspace = os.environ.get("KBSYNC_WORKSPACE")
        env_workspace_path = (
            Path(env_workspace).expanduser() if env_workspace else None
        )

        try:
            paths = resolve_workspace(
                workspace_override=workspace,
                env_override=env_workspace_path,
            )
            config, written = init_workspace(
                paths,
                force=force,
                log_level=log_level,
                directory=directory,
            )
        except (ValueError, ConfigError, OSError) as exc:
            typer.secho(
                f"Failed to initialize workspace: {exc}",
                fg=typer.colors.RED,
            )
            raise typer.Exit(code=1) from exc

        configure_logging(level=config.log_level, log_dir=paths.logs_dir)
        logger = get_logger(__name__, command="init")
        logger.info(
            "init-complete",
            workspace=str(paths.workspace),
            config_written=written,
        )

        typer.secho("Workspace initialized", fg=typer.colors.GREEN, bold=True)
        typer.echo(f"  workspace: {paths.workspace}")
        typer.echo(f"  config: {paths.config_file}")
        typer.echo(f"  defaults: packaged resource ({DEFAULTS_RESOURCE_NAME})")
        typer.echo(f"  log level: {config.log_level}")
        if not written:
            typer.echo("  note: existing kbsync.toml left untouched")
        if config.knowledge_base.directory is None:
            typer.echo(
                "  next: set knowledge_base.directory in kbsync.toml "
                "before running `kbsync sync`"
            )

    register_sync_commands(app)
    return app
