"""Typed error hierarchy for the sync pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - type checker imports only
    from kbsync.sync.models import SyncSummary

__all__ = [
    "KbSyncError",
    "EmbeddingError",
    "EmbeddingRetryableError",
    "EmbeddingRequestError",
    "EmbeddingRetryExceededError",
    "EmbeddingDimensionError",
    "RemoteIndexError",
    "CollectionError",
    "UpsertError",
    "SyncPassError",
    "KnowledgeBaseNotFoundError",
    "SchedulerError",
]


class KbSyncError(RuntimeError):
    """Base error for :mod:`kbsync` failures."""


@dataclass(slots=True)
class EmbeddingError(KbSyncError):
    """Base error raised by the embedding client."""

    message: str
    model: str
    status_code: int | None = None
    attempts: int = 0

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class EmbeddingRetryableError(EmbeddingError):
    """Transient provider failure (rate limit, 5xx, timeout, network)."""


@dataclass(slots=True)
class EmbeddingRequestError(EmbeddingError):
    """Non-retryable provider failure such as auth or a malformed request."""


@dataclass(slots=True)
class EmbeddingRetryExceededError(EmbeddingError):
    """Raised when the retry budget is exhausted on transient failures."""


@dataclass(slots=True)
class EmbeddingDimensionError(EmbeddingError):
    """Raised when the provider returns a vector of unexpected width."""

    expected: int | None = None
    actual: int | None = None


@dataclass(slots=True)
class RemoteIndexError(KbSyncError):
    """Base error for vector store operations that must not be ignored."""

    message: str
    collection: str
    operation: str

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)


@dataclass(slots=True)
class CollectionError(RemoteIndexError):
    """Raised when the target collection cannot be checked or created."""


@dataclass(slots=True)
class UpsertError(RemoteIndexError):
    """Raised when a batch upsert fails; the whole batch is not persisted."""

    batch_size: int = 0


class SyncPassError(KbSyncError):
    """Raised when a pass aborts; carries the counts gathered so far."""

    def __init__(
        self,
        message: str,
        *,
        summary: "SyncSummary | None" = None,
    ) -> None:
        super().__init__(message)
        self.summary = summary


class KnowledgeBaseNotFoundError(SyncPassError):
    """Raised when the configured knowledge-base root is missing."""


@dataclass(slots=True)
class SchedulerError(KbSyncError):
    """Raised when the scheduler is driven out of order."""

    message: str
    state: str = field(default="unknown")

    def __post_init__(self) -> None:
        RuntimeError.__init__(self, self.message)
