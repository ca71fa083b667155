"""Logging helpers for :mod:`kbsync`.

Console output goes through Rich while the optional workspace log file
receives one JSON object per line. Both handlers share the structlog
processor chain so context bound with :func:`pass_context` shows up in
every sink.
"""

from __future__ import annotations

import gzip
import logging
import shutil
from contextlib import contextmanager
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Iterable, Iterator

import structlog
from rich.console import Console
from rich.logging import RichHandler

Logger = structlog.stdlib.BoundLogger

LOG_FILENAME = "kbsync.log"

_ROTATION_BACKUP_COUNT = 7
_TIMESTAMPER = structlog.processors.TimeStamper(fmt="iso", utc=True)
_FOREIGN_PRE_CHAIN = (
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    _TIMESTAMPER,
)


def _normalize_level(level: str) -> int:
    """Return the stdlib level constant for ``level``.

    Raises:
        ValueError: If the level name is not recognized.
    """

    normalized = level.strip().upper()
    value = logging.getLevelName(normalized)
    if isinstance(value, str):  # ``getLevelName`` echoes unknown names.
        raise ValueError(f"Unsupported log level: {level!r}")
    return value


def _install_handlers(
    root: logging.Logger,
    handlers: Iterable[logging.Handler],
) -> None:
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)


def _configure_structlog() -> None:
    structlog.reset_defaults()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            _TIMESTAMPER,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as src, gzip.open(dest, "wb") as target:
        shutil.copyfileobj(src, target)
    Path(source).unlink(missing_ok=True)


def _formatter(renderer: Any) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=list(_FOREIGN_PRE_CHAIN),
    )


def _file_handler(log_file: Path, level: int) -> TimedRotatingFileHandler:
    """Return a midnight-rotating JSON handler with gzip archives."""

    handler = TimedRotatingFileHandler(
        log_file,
        when="midnight",
        backupCount=_ROTATION_BACKUP_COUNT,
        utc=True,
        encoding="utf-8",
        delay=True,
    )
    handler.setLevel(level)
    handler.suffix = "%Y-%m-%d"
    handler.namer = lambda name: f"{name}.gz"
    handler.rotator = _gzip_rotator
    handler.setFormatter(
        _formatter(structlog.processors.JSONRenderer(sort_keys=True))
    )
    return handler


def _console_handler(level: int, console: Console | None) -> RichHandler:
    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_path=False,
        markup=False,
        enable_link_path=False,
        log_time_format="%Y-%m-%d %H:%M:%S",
    )
    handler.setLevel(level)
    handler.setFormatter(
        _formatter(structlog.dev.ConsoleRenderer(colors=False))
    )
    return handler


def configure_logging(
    *,
    level: str = "INFO",
    log_dir: str | Path | None = None,
    console: Console | None = None,
) -> Path | None:
    """Configure structlog on top of stdlib logging.

    Args:
        level: Log level name applied to the root logger (case-insensitive).
        log_dir: Optional directory receiving ``kbsync.log``; created when
            missing.
        console: Optional Rich console override, primarily for tests.

    Returns:
        Path of the log file when ``log_dir`` was provided, else ``None``.

    Raises:
        ValueError: If ``level`` is not a recognized level name.
    """

    log_level = _normalize_level(level)
    root = logging.getLogger()
    root.setLevel(log_level)

    _configure_structlog()

    handlers: list[logging.Handler] = [_console_handler(log_level, console)]
    log_file: Path | None = None
    if log_dir is not None:
        directory = Path(log_dir).expanduser().resolve(strict=False)
        directory.mkdir(parents=True, exist_ok=True)
        log_file = directory / LOG_FILENAME
        handlers.append(_file_handler(log_file, log_level))

    _install_handlers(root, handlers)
    logging.captureWarnings(True)
    return log_file


def get_logger(name: str | None = None, **initial_context: Any) -> Logger:
    """Return a structured logger bound to an optional context.

    Example:
        >>> logger = get_logger(__name__, component="engine")
        >>> isinstance(logger, structlog.stdlib.BoundLogger)
        True
    """

    return structlog.get_logger(name).bind(**initial_context)


@contextmanager
def pass_context(pass_id: str, **context: Any) -> Iterator[None]:
    """Bind ``pass_id`` (and extra context) to every log line in the block."""

    with structlog.contextvars.bound_contextvars(pass_id=pass_id, **context):
        yield


__all__ = [
    "LOG_FILENAME",
    "Logger",
    "configure_logging",
    "get_logger",
    "pass_context",
]
