"""Shared pytest fixtures: fake OpenAI client, in-memory index, engines."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from structlog import get_logger

from kbsync.sync.embedding import EmbeddingClient
from kbsync.sync.engine import SyncEngine
from kbsync.sync.errors import CollectionError, UpsertError
from kbsync.sync.files import LocalFileSource
from kbsync.sync.models import Document, RemoteRecord

DIM = 8
MODEL = "text-embedding-3-small"

Responder = Callable[[str], Sequence[float] | Exception]


def constant_vector(value: float = 0.5, *, dim: int = DIM) -> list[float]:
    return [value] * dim


class FakeEmbeddingsAPI:
    """Stub embeddings API answering through ``responder``."""

    def __init__(self, responder: Responder):
        self._responder = responder
        self.calls: list[tuple[str, tuple[str, ...]]] = []

    def create(self, *, model: str, input: Sequence[str]) -> SimpleNamespace:
        self.calls.append((model, tuple(input)))
        outcome = self._responder(input[0])
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(data=[SimpleNamespace(embedding=list(outcome))])

    @property
    def inputs(self) -> list[str]:
        return [texts[0] for _, texts in self.calls]


class FakeOpenAIClient:
    """Container exposing an embeddings API attribute."""

    def __init__(self, responder: Responder):
        self.embeddings = FakeEmbeddingsAPI(responder)


def scripted(items: Iterable[Sequence[float] | Exception]) -> Responder:
    """Return a responder that replays ``items`` in order."""

    queue = list(items)

    def _respond(_text: str) -> Sequence[float] | Exception:
        if not queue:
            raise AssertionError("unexpected OpenAI call")
        return queue.pop(0)

    return _respond


class MemoryIndex:
    """In-memory stand-in for the Qdrant-backed index."""

    def __init__(self, collection: str = "knowledge_base") -> None:
        self.collection = collection
        self.vector_size: int | None = None
        self.points: dict[str, dict[str, Any]] = {}
        self.ensure_calls = 0
        self.upsert_calls: list[list[str]] = []
        self.exists_calls: list[str] = []
        self.closed = False
        self.fail_lookup_for: set[str] = set()
        self.fail_ensure = False
        self.fail_upsert = False
        self.drop_on_upsert = False

    def ensure_collection(self, vector_size: int) -> bool:
        self.ensure_calls += 1
        if self.fail_ensure:
            raise CollectionError(
                "qdrant unavailable",
                collection=self.collection,
                operation="ensure_collection",
            )
        if self.vector_size is not None:
            return False
        self.vector_size = vector_size
        return True

    def find_by_source_path(self, source_path: str) -> RemoteRecord:
        if source_path in self.fail_lookup_for:
            return RemoteRecord.failed()
        for point_id, point in self.points.items():
            if point["payload"]["sourcePath"] == source_path:
                return RemoteRecord(
                    exists=True,
                    point_id=point_id,
                    stored_hash=point["payload"]["contentHash"],
                )
        return RemoteRecord.missing()

    def upsert(self, documents: Sequence[Document]) -> int:
        if self.fail_upsert:
            raise UpsertError(
                "connection reset",
                collection=self.collection,
                operation="upsert",
                batch_size=len(documents),
            )
        self.upsert_calls.append([doc.id for doc in documents])
        if self.drop_on_upsert:
            return len(documents)
        for doc in documents:
            assert doc.has_embedding, "documents without vectors are never sent"
            self.points[doc.id] = {
                "vector": list(doc.embedding),
                "payload": doc.payload(content_key="doc_content"),
            }
        return len(documents)

    def exists(self, point_id: str) -> bool:
        self.exists_calls.append(point_id)
        return point_id in self.points

    def close(self) -> None:
        self.closed = True

    def ids_for(self, source_path: str) -> list[str]:
        return [
            point_id
            for point_id, point in self.points.items()
            if point["payload"]["sourcePath"] == source_path
        ]


@pytest.fixture
def memory_index() -> MemoryIndex:
    return MemoryIndex()


@pytest.fixture
def kb_root(tmp_path: Path) -> Path:
    root = tmp_path / "kb"
    root.mkdir()
    return root


@pytest.fixture
def make_openai() -> Callable[..., FakeOpenAIClient]:
    def _factory(responder: Responder | None = None) -> FakeOpenAIClient:
        return FakeOpenAIClient(responder or (lambda _text: constant_vector()))

    return _factory


@pytest.fixture
def make_embedder(make_openai) -> Callable[..., EmbeddingClient]:
    def _factory(
        client: FakeOpenAIClient | None = None,
        **overrides: Any,
    ) -> EmbeddingClient:
        options: dict[str, Any] = {
            "model": MODEL,
            "vector_size": DIM,
            "logger": get_logger("test.embedding"),
            "sleep": lambda _: None,
            "now": lambda: 0.0,
        }
        options.update(overrides)
        return EmbeddingClient(client=client or make_openai(), **options)

    return _factory


@pytest.fixture
def make_engine(
    kb_root: Path,
    memory_index: MemoryIndex,
    make_embedder,
) -> Callable[..., SyncEngine]:
    def _factory(
        *,
        embedder: EmbeddingClient | None = None,
        index: Any = None,
        root: Path | None = None,
        **overrides: Any,
    ) -> SyncEngine:
        options: dict[str, Any] = {
            "vector_size": DIM,
            "selector": lambda ids: ids[0],
            "logger": get_logger("test.engine"),
        }
        options.update(overrides)
        return SyncEngine(
            files=LocalFileSource.create(root or kb_root, ["txt", "md"]),
            index=index if index is not None else memory_index,
            embedder=embedder or make_embedder(),
            **options,
        )

    return _factory
