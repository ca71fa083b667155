from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from qdrant_client import models
from structlog import get_logger

from kbsync.core.config import QdrantSettings
from kbsync.sync.errors import CollectionError, UpsertError
from kbsync.sync.models import Document
from kbsync.sync.remote import QdrantRemoteIndex


class _FakeQdrantClient:
    """Records calls made through the qdrant_client surface we rely on."""

    def __init__(self, *, existing_size: int | None = None) -> None:
        self.existing_size = existing_size
        self.created: list[dict[str, Any]] = []
        self.scrolls: list[dict[str, Any]] = []
        self.upserts: list[dict[str, Any]] = []
        self.points: list[SimpleNamespace] = []
        self.retrievable: set[str] = set()
        self.raise_on: dict[str, Exception] = {}
        self.closed = False

    def _maybe_raise(self, name: str) -> None:
        if name in self.raise_on:
            raise self.raise_on[name]

    def collection_exists(self, collection_name: str) -> bool:
        self._maybe_raise("collection_exists")
        return self.existing_size is not None

    def get_collection(self, collection_name: str) -> SimpleNamespace:
        vectors = models.VectorParams(
            size=self.existing_size,
            distance=models.Distance.COSINE,
        )
        return SimpleNamespace(
            config=SimpleNamespace(params=SimpleNamespace(vectors=vectors))
        )

    def create_collection(self, **kwargs: Any) -> bool:
        self._maybe_raise("create_collection")
        self.created.append(kwargs)
        return True

    def scroll(self, **kwargs: Any):
        self._maybe_raise("scroll")
        self.scrolls.append(kwargs)
        return self.points[: kwargs["limit"]], None

    def upsert(self, **kwargs: Any) -> None:
        self._maybe_raise("upsert")
        self.upserts.append(kwargs)

    def retrieve(self, **kwargs: Any) -> list[SimpleNamespace]:
        self._maybe_raise("retrieve")
        return [
            SimpleNamespace(id=point_id)
            for point_id in kwargs["ids"]
            if point_id in self.retrievable
        ]

    def close(self) -> None:
        self.closed = True


def _index(client: _FakeQdrantClient, **kwargs: Any) -> QdrantRemoteIndex:
    return QdrantRemoteIndex(
        client,  # type: ignore[arg-type]
        collection="kb",
        logger=get_logger("test.remote"),
        **kwargs,
    )


def _document(doc_id: str = "1b4e28ba-2fa1-11d2-883f-0016d3cca427"):
    document = Document.from_path(
        Path("/kb/a.md"),
        "alpha",
        "abc123",
        existing_id=doc_id,
        now=lambda: datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )
    document.embedding = (0.1, 0.2)
    return document


def test_ensure_collection_creates_with_cosine_distance() -> None:
    client = _FakeQdrantClient()

    assert _index(client).ensure_collection(1536) is True

    (call,) = client.created
    assert call["collection_name"] == "kb"
    assert call["vectors_config"].size == 1536
    assert call["vectors_config"].distance == models.Distance.COSINE


def test_ensure_collection_is_idempotent() -> None:
    client = _FakeQdrantClient(existing_size=1536)

    assert _index(client).ensure_collection(1536) is False
    assert client.created == []


def test_ensure_collection_tolerates_dimension_mismatch() -> None:
    client = _FakeQdrantClient(existing_size=768)

    assert _index(client).ensure_collection(1536) is False
    assert client.created == []


def test_ensure_collection_failure_is_terminal() -> None:
    client = _FakeQdrantClient()
    client.raise_on["create_collection"] = RuntimeError("forbidden")

    with pytest.raises(CollectionError) as excinfo:
        _index(client).ensure_collection(1536)

    assert excinfo.value.operation == "ensure_collection"
    assert "forbidden" in str(excinfo.value)


def test_find_by_source_path_filters_on_payload() -> None:
    client = _FakeQdrantClient()
    client.points = [
        SimpleNamespace(
            id="1b4e28ba-2fa1-11d2-883f-0016d3cca427",
            payload={"sourcePath": "/kb/a.md", "contentHash": "abc123"},
        )
    ]

    record = _index(client).find_by_source_path("/kb/a.md")

    assert record.exists is True
    assert record.point_id == "1b4e28ba-2fa1-11d2-883f-0016d3cca427"
    assert record.stored_hash == "abc123"
    (call,) = client.scrolls
    assert call["limit"] == 1
    (condition,) = call["scroll_filter"].must
    assert condition.key == "sourcePath"
    assert condition.match.value == "/kb/a.md"


def test_find_by_source_path_missing() -> None:
    record = _index(_FakeQdrantClient()).find_by_source_path("/kb/none.md")

    assert record.exists is False
    assert record.lookup_failed is False


def test_find_by_source_path_transport_failure_fails_open() -> None:
    client = _FakeQdrantClient()
    client.raise_on["scroll"] = ConnectionError("refused")

    record = _index(client).find_by_source_path("/kb/a.md")

    assert record.exists is False
    assert record.lookup_failed is True


def test_upsert_sends_points_with_payload_snapshot() -> None:
    client = _FakeQdrantClient()
    document = _document()

    assert _index(client, content_key="doc_content").upsert([document]) == 1

    (call,) = client.upserts
    (point,) = call["points"]
    assert point.id == document.id
    assert point.vector == [0.1, 0.2]
    assert point.payload == {
        "title": "a.md",
        "doc_content": "alpha",
        "sourcePath": "/kb/a.md",
        "contentHash": "abc123",
        "lastModified": "2024-05-01T12:00:00+00:00",
    }


def test_upsert_empty_batch_is_noop() -> None:
    client = _FakeQdrantClient()

    assert _index(client).upsert([]) == 0
    assert client.upserts == []


def test_upsert_failure_raises() -> None:
    client = _FakeQdrantClient()
    client.raise_on["upsert"] = TimeoutError("timed out")

    with pytest.raises(UpsertError) as excinfo:
        _index(client).upsert([_document()])

    assert excinfo.value.batch_size == 1


def test_exists_checks_point_and_treats_errors_as_missing() -> None:
    client = _FakeQdrantClient()
    client.retrievable.add("present")
    index = _index(client)

    assert index.exists("present") is True
    assert index.exists("absent") is False

    client.raise_on["retrieve"] = ConnectionError("refused")
    assert index.exists("present") is False


def test_close_closes_client() -> None:
    client = _FakeQdrantClient()

    _index(client).close()

    assert client.closed is True



@pytest.mark.parametrize(
    ("configured", "expected"),
    [(0.5, 1), (2.5, 3), (10, 10)],
)
def test_from_settings_rounds_timeout_up(
    monkeypatch, configured: float, expected: int
) -> None:
    captured: dict[str, Any] = {}

    def _fake_client(**kwargs: Any) -> _FakeQdrantClient:
        captured.update(kwargs)
        return _FakeQdrantClient()

    monkeypatch.setattr("kbsync.sync.remote.QdrantClient", _fake_client)
    settings = QdrantSettings(
        url="http://qdrant:6333",
        collection="kb",
        timeout=configured,
    )

    index = QdrantRemoteIndex.from_settings(settings)

    assert captured["timeout"] == expected
    assert captured["url"] == "http://qdrant:6333"
    assert index.collection == "kb"
