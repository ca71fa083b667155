"""Classify local files against the state stored in the vector index."""

from __future__ import annotations

from kbsync.core.logging import Logger, get_logger
from kbsync.sync.models import ChangeKind, Classification
from kbsync.sync.remote import RemoteIndex

__all__ = ["ChangeDetector"]


class ChangeDetector:
    """Decide whether a file is new, updated, or unchanged.

    Classification relies only on what the index reports for the file's
    source path; nothing is remembered between passes. A failed lookup is
    reported as NEW so the file is reprocessed rather than silently skipped.
    """

    def __init__(
        self,
        index: RemoteIndex,
        *,
        logger: Logger | None = None,
    ) -> None:
        self._index = index
        self.logger = logger or get_logger(__name__, component="detector")

    def classify(self, source_path: str, content_hash: str) -> Classification:
        record = self._index.find_by_source_path(source_path)

        if record.lookup_failed:
            self.logger.warning(
                "classify-lookup-failed",
                source_path=source_path,
                fallback=ChangeKind.NEW.value,
            )
            return Classification(ChangeKind.NEW, lookup_failed=True)

        if not record.exists:
            return Classification(ChangeKind.NEW)

        if record.stored_hash == content_hash:
            return Classification(
                ChangeKind.UNCHANGED,
                existing_id=record.point_id,
            )

        return Classification(ChangeKind.UPDATED, existing_id=record.point_id)
