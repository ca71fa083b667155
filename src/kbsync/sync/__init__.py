"""Incremental knowledge-base synchronization pipeline.

Files are fingerprinted, classified against the hashes stored in the vector
index, embedded in bounded batches, upserted, and spot-checked.
"""

from __future__ import annotations

from .detector import ChangeDetector
from .embedding import EmbedBatchReport, EmbeddingClient
from .engine import SyncEngine
from .errors import (
    CollectionError,
    EmbeddingDimensionError,
    EmbeddingError,
    EmbeddingRequestError,
    EmbeddingRetryableError,
    EmbeddingRetryExceededError,
    KbSyncError,
    KnowledgeBaseNotFoundError,
    RemoteIndexError,
    SchedulerError,
    SyncPassError,
    UpsertError,
)
from .files import FileSource, LocalFileSource
from .fingerprint import fingerprint
from .models import (
    ChangeKind,
    Classification,
    Document,
    FileCandidate,
    RemoteRecord,
    SyncSummary,
)
from .remote import QdrantRemoteIndex, RemoteIndex
from .scheduler import SyncScheduler

__all__ = [
    "ChangeDetector",
    "ChangeKind",
    "Classification",
    "CollectionError",
    "Document",
    "EmbedBatchReport",
    "EmbeddingClient",
    "EmbeddingDimensionError",
    "EmbeddingError",
    "EmbeddingRequestError",
    "EmbeddingRetryableError",
    "EmbeddingRetryExceededError",
    "FileCandidate",
    "FileSource",
    "KbSyncError",
    "KnowledgeBaseNotFoundError",
    "LocalFileSource",
    "QdrantRemoteIndex",
    "RemoteIndex",
    "RemoteIndexError",
    "RemoteRecord",
    "SchedulerError",
    "SyncEngine",
    "SyncPassError",
    "SyncScheduler",
    "SyncSummary",
    "UpsertError",
    "fingerprint",
]
