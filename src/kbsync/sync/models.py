"""Typed records flowing through a sync pass."""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from pathlib import Path
from typing import Any, Callable

from kbsync.sync.fingerprint import DEFAULT_ALGORITHM, fingerprint

__all__ = [
    "ChangeKind",
    "Classification",
    "Document",
    "EmbeddingVector",
    "FileCandidate",
    "RemoteRecord",
    "SyncSummary",
]

EmbeddingVector = tuple[float, ...]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class FileCandidate:
    """A local file read for one pass: path, decoded text, and fingerprint."""

    path: Path
    content: str
    content_hash: str

    @classmethod
    def from_text(
        cls,
        path: Path | str,
        content: str,
        *,
        algorithm: str = DEFAULT_ALGORITHM,
    ) -> "FileCandidate":
        return cls(
            path=Path(path),
            content=content,
            content_hash=fingerprint(content, algorithm=algorithm),
        )

    @property
    def source_path(self) -> str:
        return str(self.path)


@dataclass(slots=True)
class Document:
    """The unit of synchronization.

    Documents are built fresh for every pass and never persisted locally; the
    vector store holds the durable copy. An empty :attr:`embedding` means the
    vector was not computed (yet) or the computation failed.
    """

    id: str
    title: str
    content: str
    source_path: str
    content_hash: str
    last_modified: datetime
    embedding: EmbeddingVector = ()

    @classmethod
    def from_path(
        cls,
        path: Path,
        content: str,
        content_hash: str,
        *,
        existing_id: str | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> "Document":
        """Build a document for ``path``, reusing ``existing_id`` if given."""

        return cls(
            id=existing_id or str(uuid.uuid4()),
            title=path.name,
            content=content,
            source_path=str(path),
            content_hash=content_hash,
            last_modified=now(),
        )

    @property
    def has_embedding(self) -> bool:
        return len(self.embedding) > 0

    def payload(self, *, content_key: str = "content") -> dict[str, Any]:
        """Return the payload snapshot stored alongside the vector."""

        return {
            "title": self.title,
            content_key: self.content,
            "sourcePath": self.source_path,
            "contentHash": self.content_hash,
            "lastModified": self.last_modified.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class RemoteRecord:
    """Result of looking up a source path in the vector store.

    ``lookup_failed`` marks a transport failure; callers treat it like a
    missing record so the file gets reprocessed.
    """

    exists: bool
    point_id: str | None = None
    stored_hash: str | None = None
    lookup_failed: bool = False

    @classmethod
    def missing(cls) -> "RemoteRecord":
        return cls(exists=False)

    @classmethod
    def failed(cls) -> "RemoteRecord":
        return cls(exists=False, lookup_failed=True)


class ChangeKind(StrEnum):
    """Classification outcomes for a local file."""

    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True, slots=True)
class Classification:
    """Change classification plus the remote id to reuse for updates."""

    kind: ChangeKind
    existing_id: str | None = None
    lookup_failed: bool = False

    @property
    def needs_upload(self) -> bool:
        return self.kind is not ChangeKind.UNCHANGED


@dataclass(slots=True)
class SyncSummary:
    """Counters for one pass; returned instead of shared global state."""

    root: str
    collection: str
    pass_id: str
    started_at: datetime
    files_total: int = 0
    processed: int = 0
    skipped: int = 0
    created: int = 0
    updated: int = 0
    errored: int = 0
    empty: int = 0
    uploaded: int = 0
    batches: int = 0
    embedding_failures: int = 0
    lookup_failures: int = 0
    verified: int = 0
    verification_failures: int = 0
    cancelled: bool = False
    finished_at: datetime | None = field(default=None)

    def to_mapping(self) -> dict[str, object]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = (
            self.finished_at.isoformat() if self.finished_at else None
        )
        return data
