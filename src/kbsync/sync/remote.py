"""Vector store boundary and its Qdrant implementation."""

from __future__ import annotations

import math
from typing import Any, Protocol, Sequence, runtime_checkable

from qdrant_client import QdrantClient, models

from kbsync.core.config import QdrantSettings
from kbsync.core.logging import Logger, get_logger
from kbsync.sync.errors import CollectionError, UpsertError
from kbsync.sync.models import Document, RemoteRecord

__all__ = [
    "RemoteIndex",
    "QdrantRemoteIndex",
    "SOURCE_PATH_KEY",
    "CONTENT_HASH_KEY",
]

SOURCE_PATH_KEY = "sourcePath"
CONTENT_HASH_KEY = "contentHash"


@runtime_checkable
class RemoteIndex(Protocol):
    """Operations a sync pass needs from the vector store."""

    collection: str

    def ensure_collection(self, vector_size: int) -> bool:
        """Create the collection if absent; return ``True`` when created."""

    def find_by_source_path(self, source_path: str) -> RemoteRecord:
        """Look up the stored point for ``source_path``; never raises."""

    def upsert(self, documents: Sequence[Document]) -> int:
        """Insert or replace ``documents``; raise :class:`UpsertError`."""

    def exists(self, point_id: str) -> bool:
        """Return ``True`` when a point with ``point_id`` is stored."""

    def close(self) -> None:
        """Release transport resources."""


class QdrantRemoteIndex:
    """:class:`RemoteIndex` backed by :class:`qdrant_client.QdrantClient`."""

    def __init__(
        self,
        client: QdrantClient,
        *,
        collection: str,
        content_key: str = "doc_content",
        logger: Logger | None = None,
    ) -> None:
        self._client = client
        self.collection = collection
        self.content_key = content_key
        self.logger = logger or get_logger(
            __name__,
            component="remote",
            collection=collection,
        )

    @classmethod
    def from_settings(
        cls,
        settings: QdrantSettings,
        *,
        logger: Logger | None = None,
    ) -> "QdrantRemoteIndex":
        client = QdrantClient(
            url=settings.url,
            api_key=settings.api_key,
            # The client takes whole seconds; round up so it never hits zero.
            timeout=math.ceil(settings.timeout),
        )
        return cls(
            client,
            collection=settings.collection,
            content_key=settings.content_key,
            logger=logger,
        )

    def ensure_collection(self, vector_size: int) -> bool:
        """Make sure the collection exists with cosine distance.

        An existing collection is left alone; a width that differs from
        ``vector_size`` is logged since every upsert would then fail.

        Raises:
            CollectionError: The check or the creation failed.
        """

        try:
            if self._client.collection_exists(self.collection):
                self._warn_on_dimension_mismatch(vector_size)
                self.logger.info(
                    "collection-exists",
                    collection=self.collection,
                )
                return False

            self._client.create_collection(
                collection_name=self.collection,
                vectors_config=models.VectorParams(
                    size=vector_size,
                    distance=models.Distance.COSINE,
                ),
            )
        except Exception as exc:
            raise CollectionError(
                f"Failed to ensure collection {self.collection!r}: {exc}",
                collection=self.collection,
                operation="ensure_collection",
            ) from exc

        self.logger.info(
            "collection-created",
            collection=self.collection,
            vector_size=vector_size,
            distance="cosine",
        )
        return True

    def find_by_source_path(self, source_path: str) -> RemoteRecord:
        """Return the first stored point whose payload matches ``source_path``.

        A transport failure is reported as ``RemoteRecord.failed()`` so the
        caller reprocesses the file instead of aborting the pass.
        """

        try:
            points, _ = self._client.scroll(
                collection_name=self.collection,
                scroll_filter=models.Filter(
                    must=[
                        models.FieldCondition(
                            key=SOURCE_PATH_KEY,
                            match=models.MatchValue(value=source_path),
                        )
                    ]
                ),
                limit=1,
                with_payload=True,
                with_vectors=False,
            )
        except Exception as exc:
            self.logger.warning(
                "remote-lookup-failed",
                source_path=source_path,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            return RemoteRecord.failed()

        if not points:
            return RemoteRecord.missing()

        point = points[0]
        payload: dict[str, Any] = point.payload or {}
        stored_hash = payload.get(CONTENT_HASH_KEY)
        return RemoteRecord(
            exists=True,
            point_id=str(point.id),
            stored_hash=str(stored_hash) if stored_hash is not None else None,
        )

    def upsert(self, documents: Sequence[Document]) -> int:
        """Upsert ``documents`` as one request and return how many were sent.

        Raises:
            UpsertError: The request failed; no document in the batch is
                considered persisted.
        """

        if not documents:
            return 0

        points = [
            models.PointStruct(
                id=document.id,
                vector=list(document.embedding),
                payload=document.payload(content_key=self.content_key),
            )
            for document in documents
        ]
        try:
            self._client.upsert(
                collection_name=self.collection,
                points=points,
                wait=True,
            )
        except Exception as exc:
            raise UpsertError(
                f"Failed to upsert {len(points)} points into "
                f"{self.collection!r}: {exc}",
                collection=self.collection,
                operation="upsert",
                batch_size=len(points),
            ) from exc

        self.logger.info(
            "remote-upsert",
            collection=self.collection,
            points=len(points),
        )
        return len(points)

    def exists(self, point_id: str) -> bool:
        try:
            found = self._client.retrieve(
                collection_name=self.collection,
                ids=[point_id],
                with_payload=False,
                with_vectors=False,
            )
        except Exception as exc:
            self.logger.warning(
                "remote-retrieve-failed",
                point_id=point_id,
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            return False
        return len(found) > 0

    def close(self) -> None:
        self._client.close()

    def _warn_on_dimension_mismatch(self, vector_size: int) -> None:
        info = self._client.get_collection(self.collection)
        vectors = info.config.params.vectors
        actual = getattr(vectors, "size", None)
        if actual is not None and actual != vector_size:
            self.logger.warning(
                "collection-dimension-mismatch",
                collection=self.collection,
                expected=vector_size,
                actual=actual,
            )
