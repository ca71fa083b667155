"""Helpers for the ``kbsync init`` command."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Mapping

from kbsync.core.config import (
    AppConfig,
    env_config_from_environ,
    load_config,
    load_packaged_defaults,
    render_user_config,
)
from kbsync.core.paths import WorkspacePaths

__all__ = ["init_workspace"]


def init_workspace(
    paths: WorkspacePaths,
    *,
    force: bool = False,
    log_level: str | None = None,
    directory: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> tuple[AppConfig, bool]:
    """Bootstrap the workspace directories and ``kbsync.toml``.

    An existing ``kbsync.toml`` is left untouched unless ``force`` is set;
    its settings do not feed the rendered file so ``force`` starts clean.

    Returns:
        The resolved configuration and whether the config file was written.
    """

    paths.ensure()

    cli_overrides: dict[str, Any] = {"workspace": str(paths.workspace)}
    if log_level:
        cli_overrides["log_level"] = log_level
    if directory is not None:
        cli_overrides["knowledge_base"] = {"directory": str(directory)}

    config = load_config(
        defaults=load_packaged_defaults(),
        env_config=env_config_from_environ(environ),
        cli_overrides=cli_overrides,
    )

    written = False
    if force or not paths.config_file.exists():
        paths.config_file.write_text(
            render_user_config(config),
            encoding="utf-8",
        )
        written = True

    return config, written
