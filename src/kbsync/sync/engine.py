"""Orchestrate one synchronization pass over the knowledge base."""

from __future__ import annotations

import random
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Sequence

from kbsync.core.config import AppConfig, ConfigError
from kbsync.core.logging import Logger, get_logger, pass_context
from kbsync.sync.detector import ChangeDetector
from kbsync.sync.embedding import EmbeddingClient
from kbsync.sync.errors import (
    CollectionError,
    KnowledgeBaseNotFoundError,
    SyncPassError,
    UpsertError,
)
from kbsync.sync.files import FileSource, LocalFileSource
from kbsync.sync.models import ChangeKind, Document, SyncSummary
from kbsync.sync.remote import QdrantRemoteIndex, RemoteIndex

__all__ = ["SyncEngine", "Selector"]

Selector = Callable[[Sequence[str]], str]

_PROGRESS_EVERY = 10
_SAMPLE_SIZE = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """Run sync passes: scan, classify, batch, embed, upsert, verify.

    The engine is long-lived and holds no state between passes; every pass
    re-derives what to do from the files on disk and the hashes stored in
    the index. Call :meth:`run_sync_pass` from a single thread at a time.
    """

    def __init__(
        self,
        *,
        files: FileSource,
        index: RemoteIndex,
        embedder: EmbeddingClient,
        vector_size: int,
        batch_size: int = 100,
        max_lookup_failures: int | None = None,
        detector: ChangeDetector | None = None,
        selector: Selector | None = None,
        logger: Logger | None = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.files = files
        self.index = index
        self.embedder = embedder
        self.vector_size = vector_size
        self.batch_size = batch_size
        self.max_lookup_failures = max_lookup_failures
        self.detector = detector or ChangeDetector(index)
        self.logger = logger or get_logger(__name__, component="engine")
        self._select = selector or random.Random().choice
        self._now = now

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        logger: Logger | None = None,
    ) -> "SyncEngine":
        """Wire an engine against Qdrant and OpenAI from ``config``."""

        kb = config.knowledge_base
        if kb.directory is None:
            raise ConfigError(
                "knowledge_base.directory must be set "
                "(kbsync.toml, KBSYNC_KNOWLEDGE_BASE_DIR, or --directory)."
            )
        files = LocalFileSource.create(
            kb.directory,
            kb.extensions,
            algorithm=kb.hash_algorithm,
        )
        index = QdrantRemoteIndex.from_settings(config.qdrant)
        embedder = EmbeddingClient.from_settings(
            config.embedding,
            vector_size=config.qdrant.vector_size,
        )
        return cls(
            files=files,
            index=index,
            embedder=embedder,
            vector_size=config.qdrant.vector_size,
            batch_size=config.upload.batch_size,
            max_lookup_failures=config.upload.max_lookup_failures,
            logger=logger,
        )

    def ensure_collection(self) -> bool:
        """Create the target collection when it is missing."""

        return self.index.ensure_collection(self.vector_size)

    def close(self) -> None:
        self.index.close()

    # ------------------------------------------------------------------#
    # Pass
    # ------------------------------------------------------------------#
    def run_sync_pass(
        self,
        *,
        stop_event: threading.Event | None = None,
    ) -> SyncSummary:
        """Synchronize every candidate file and return the pass counters.

        Per-file failures are counted and skipped. A missing root, a
        collection that cannot be ensured, an upsert failure, or too many
        failed lookups abort the pass with :class:`SyncPassError`, which
        carries the counts gathered up to that point. Batches upserted
        before the failure stay in place.

        When ``stop_event`` is set the pass stops at the next file
        boundary; documents waiting in an unflushed batch are dropped and
        picked up again by the next pass.
        """

        pass_id = uuid.uuid4().hex[:12]
        summary = SyncSummary(
            root=str(self.files.root),
            collection=self.index.collection,
            pass_id=pass_id,
            started_at=self._now(),
        )
        with pass_context(pass_id, collection=self.index.collection):
            try:
                self._run(summary, stop_event)
            except SyncPassError as exc:
                summary.finished_at = self._now()
                self.logger.error(
                    "sync-pass-aborted",
                    error=str(exc),
                    **self._counts(summary),
                )
                raise
            summary.finished_at = self._now()
            self.logger.info(
                "sync-pass-complete",
                cancelled=summary.cancelled,
                duration=(
                    summary.finished_at - summary.started_at
                ).total_seconds(),
                **self._counts(summary),
            )
        return summary

    def _run(
        self,
        summary: SyncSummary,
        stop_event: threading.Event | None,
    ) -> None:
        self.logger.info(
            "sync-pass-start",
            root=summary.root,
            batch_size=self.batch_size,
        )
        if not self.files.exists():
            raise KnowledgeBaseNotFoundError(
                f"Knowledge base directory does not exist: {summary.root}",
                summary=summary,
            )
        try:
            self.ensure_collection()
        except CollectionError as exc:
            raise SyncPassError(str(exc), summary=summary) from exc

        paths = self.files.scan()
        summary.files_total = len(paths)
        self.logger.info(
            "sync-files-found",
            files=summary.files_total,
            sample=[str(path) for path in paths[:_SAMPLE_SIZE]],
        )

        batch: list[Document] = []
        for path in paths:
            if stop_event is not None and stop_event.is_set():
                summary.cancelled = True
                self.logger.warning(
                    "sync-pass-cancelled",
                    dropped=len(batch),
                    remaining=summary.files_total - summary.processed,
                )
                return

            document = self._stage(path, summary)
            if document is not None:
                batch.append(document)
                if len(batch) >= self.batch_size:
                    self._flush(batch, summary)
                    batch = []

            summary.processed += 1
            if summary.processed % _PROGRESS_EVERY == 0:
                self._log_progress(summary)

        if batch:
            self._flush(batch, summary)

    def _stage(self, path: Path, summary: SyncSummary) -> Document | None:
        try:
            candidate = self.files.load(path)
            result = self.detector.classify(
                candidate.source_path,
                candidate.content_hash,
            )
        except Exception as exc:
            summary.errored += 1
            self.logger.warning(
                "sync-file-failed",
                path=str(path),
                error_type=exc.__class__.__name__,
                error=str(exc),
            )
            return None

        if result.lookup_failed:
            summary.lookup_failures += 1
            if (
                self.max_lookup_failures is not None
                and summary.lookup_failures > self.max_lookup_failures
            ):
                raise SyncPassError(
                    f"Index lookups failed for {summary.lookup_failures} "
                    f"files (limit {self.max_lookup_failures}).",
                    summary=summary,
                )

        if not result.needs_upload:
            summary.skipped += 1
            self.logger.debug("sync-file-unchanged", path=str(path))
            return None

        if result.kind is ChangeKind.UPDATED:
            summary.updated += 1
        else:
            summary.created += 1
        self.logger.debug(
            "sync-file-changed",
            path=str(path),
            kind=result.kind.value,
            existing_id=result.existing_id,
        )
        return Document.from_path(
            candidate.path,
            candidate.content,
            candidate.content_hash,
            existing_id=result.existing_id,
            now=self._now,
        )

    def _flush(self, batch: list[Document], summary: SyncSummary) -> None:
        report = self.embedder.embed_many(batch)
        summary.errored += report.failed
        summary.embedding_failures += report.failed
        summary.empty += report.empty

        ready = report.embedded
        summary.batches += 1
        if not ready:
            self.logger.info("sync-batch-empty", size=len(batch))
            return

        try:
            uploaded = self.index.upsert(ready)
        except UpsertError as exc:
            raise SyncPassError(str(exc), summary=summary) from exc

        summary.uploaded += uploaded
        self.logger.info(
            "sync-batch-uploaded",
            size=len(batch),
            uploaded=uploaded,
            failed=report.failed,
        )
        self._verify(ready, summary)

    def _verify(
        self,
        documents: Sequence[Document],
        summary: SyncSummary,
    ) -> None:
        point_id = self._select([doc.id for doc in documents])
        if self.index.exists(point_id):
            summary.verified += 1
            self.logger.debug("sync-verify-ok", point_id=point_id)
        else:
            summary.verification_failures += 1
            self.logger.warning("sync-verify-failed", point_id=point_id)

    def _log_progress(self, summary: SyncSummary) -> None:
        total = summary.files_total or 1
        self.logger.info(
            "sync-progress",
            percent=round(summary.processed / total * 100),
            **self._counts(summary),
        )

    @staticmethod
    def _counts(summary: SyncSummary) -> dict[str, int]:
        return {
            "files": summary.files_total,
            "processed": summary.processed,
            "skipped": summary.skipped,
            "created": summary.created,
            "updated": summary.updated,
            "errored": summary.errored,
            "uploaded": summary.uploaded,
        }
