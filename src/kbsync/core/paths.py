"""Workspace path helpers for :mod:`kbsync`."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

__all__ = [
    "CONFIG_FILENAME",
    "WorkspacePaths",
    "resolve_workspace",
]

CONFIG_FILENAME = "kbsync.toml"


@dataclass(frozen=True, slots=True)
class WorkspacePaths:
    """Resolved locations for a workspace instance.

    Example:
        >>> from pathlib import Path
        >>> paths = WorkspacePaths(
        ...     workspace=Path("/tmp/kbsync"),
        ...     config_file=Path("/tmp/kbsync/kbsync.toml"),
        ...     logs_dir=Path("/tmp/kbsync/logs"),
        ... )
        >>> paths.logs_dir.name
        'logs'
    """

    workspace: Path
    config_file: Path
    logs_dir: Path

    @classmethod
    def at(cls, workspace: Path) -> "WorkspacePaths":
        """Return the canonical layout rooted at ``workspace``."""

        return cls(
            workspace=workspace,
            config_file=workspace / CONFIG_FILENAME,
            logs_dir=workspace / "logs",
        )

    def iter_directories(self) -> Iterable[Path]:
        yield from (self.workspace, self.logs_dir)

    def ensure(self) -> None:
        """Create the workspace directories if they are missing."""

        for directory in self.iter_directories():
            directory.mkdir(parents=True, exist_ok=True)


def resolve_workspace(
    *,
    workspace_override: Path | None = None,
    env_override: Path | None = None,
) -> WorkspacePaths:
    """Resolve canonical workspace locations.

    CLI flags win over the environment, which wins over ``~/.kbsync``.

    Raises:
        ValueError: If the resolved workspace points to a regular file.
    """

    base = workspace_override or env_override or Path.home() / ".kbsync"
    raw = Path(base).expanduser()
    if not raw.is_absolute():
        raw = Path.cwd() / raw
    workspace = raw.resolve(strict=False)

    if workspace.exists() and workspace.is_file():
        raise ValueError(f"Workspace file path not allowed: {workspace}")

    return WorkspacePaths.at(workspace)
