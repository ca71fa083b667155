"""Core utilities shared across :mod:`kbsync` modules.

Configuration loading, logging setup, and workspace path resolution live here
so the sync modules stay focused on the pipeline itself.
"""

from __future__ import annotations

from .config import AppConfig, ConfigError, load_config, load_workspace_config
from .logging import configure_logging, get_logger, pass_context
from .paths import WorkspacePaths, resolve_workspace

__all__ = [
    "AppConfig",
    "ConfigError",
    "configure_logging",
    "get_logger",
    "load_config",
    "load_workspace_config",
    "pass_context",
    "WorkspacePaths",
    "resolve_workspace",
]
