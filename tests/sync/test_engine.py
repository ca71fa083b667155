"""Tests for :mod:`kbsync.sync.engine`."""

from __future__ import annotations

import math
import threading
import uuid
from pathlib import Path

import httpx
import pytest
from openai import APITimeoutError, AuthenticationError

from kbsync.sync.errors import KnowledgeBaseNotFoundError, SyncPassError
from kbsync.sync.fingerprint import fingerprint

DIM = 8


def constant_vector() -> list[float]:
    return [0.5] * DIM


def _write(root: Path, name: str, text: str) -> Path:
    path = root / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _auth_error() -> AuthenticationError:
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    response = httpx.Response(401, request=request)
    return AuthenticationError("bad key", response=response, body=None)


def test_first_pass_creates_collection_and_uploads_new_files(
    kb_root, memory_index, make_engine
) -> None:
    path = _write(kb_root, "a.md", "alpha")
    engine = make_engine(vector_size=DIM)

    summary = engine.run_sync_pass()

    assert memory_index.vector_size == DIM
    assert summary.files_total == 1
    assert summary.created == 1
    assert summary.uploaded == 1
    assert summary.batches == 1
    assert summary.verified == 1
    assert summary.finished_at is not None

    (point_id,) = memory_index.ids_for(str(path))
    assert uuid.UUID(point_id).version == 4
    payload = memory_index.points[point_id]["payload"]
    assert payload["title"] == "a.md"
    assert payload["doc_content"] == "alpha"
    assert payload["contentHash"] == fingerprint("alpha")


def test_second_pass_without_changes_is_a_noop(
    kb_root, memory_index, make_openai, make_embedder, make_engine
) -> None:
    _write(kb_root, "a.md", "alpha")
    _write(kb_root, "notes/b.txt", "beta")
    client = make_openai()
    engine = make_engine(embedder=make_embedder(client))

    engine.run_sync_pass()
    calls_after_first = len(client.embeddings.calls)
    points_after_first = dict(memory_index.points)

    summary = engine.run_sync_pass()

    assert summary.skipped == 2
    assert summary.uploaded == 0
    assert summary.batches == 0
    assert len(client.embeddings.calls) == calls_after_first
    assert memory_index.points.keys() == points_after_first.keys()


def test_modified_file_is_upserted_under_existing_id(
    kb_root, memory_index, make_engine
) -> None:
    path = _write(kb_root, "a.md", "alpha")
    engine = make_engine()
    engine.run_sync_pass()
    (original_id,) = memory_index.ids_for(str(path))

    path.write_text("alpha v2", encoding="utf-8")
    summary = engine.run_sync_pass()

    assert summary.updated == 1
    assert summary.created == 0
    assert summary.uploaded == 1
    assert memory_index.ids_for(str(path)) == [original_id]
    payload = memory_index.points[original_id]["payload"]
    assert payload["contentHash"] == fingerprint("alpha v2")


def test_one_embedding_failure_does_not_abort_batch(
    kb_root, memory_index, make_openai, make_embedder, make_engine
) -> None:
    for index in range(5):
        _write(kb_root, f"doc{index}.md", f"document {index}")

    def _respond(text: str):
        if text == "document 2":
            return _auth_error()
        return constant_vector()

    engine = make_engine(embedder=make_embedder(make_openai(_respond)))

    summary = engine.run_sync_pass()

    assert len(memory_index.upsert_calls) == 1
    assert len(memory_index.upsert_calls[0]) == 4
    assert summary.uploaded == 4
    assert summary.errored == 1
    assert summary.embedding_failures == 1
    assert memory_index.ids_for(str(kb_root / "doc2.md")) == []


@pytest.mark.parametrize(
    ("files", "batch_size"),
    [(7, 3), (6, 3), (1, 100)],
)
def test_upserts_once_per_batch(
    kb_root, memory_index, make_engine, files, batch_size
) -> None:
    for index in range(files):
        _write(kb_root, f"{index:02d}.txt", f"text {index}")
    engine = make_engine(batch_size=batch_size)

    summary = engine.run_sync_pass()

    assert len(memory_index.upsert_calls) == math.ceil(files / batch_size)
    assert all(len(ids) <= batch_size for ids in memory_index.upsert_calls)
    assert summary.batches == math.ceil(files / batch_size)
    assert summary.uploaded == files


def test_long_content_is_truncated_for_embedding_only(
    kb_root, memory_index, make_openai, make_embedder, make_engine
) -> None:
    text = "x" * 50
    path = _write(kb_root, "long.md", text)
    client = make_openai()
    engine = make_engine(embedder=make_embedder(client, max_chars=20))

    engine.run_sync_pass()

    assert client.embeddings.inputs == ["x" * 20]
    (point_id,) = memory_index.ids_for(str(path))
    assert memory_index.points[point_id]["payload"]["doc_content"] == text


def test_blank_files_are_counted_empty_and_not_uploaded(
    kb_root, memory_index, make_openai, make_embedder, make_engine
) -> None:
    _write(kb_root, "blank.md", "   \n")
    client = make_openai()
    engine = make_engine(embedder=make_embedder(client))

    summary = engine.run_sync_pass()

    assert client.embeddings.calls == []
    assert summary.empty == 1
    assert summary.errored == 0
    assert summary.uploaded == 0
    assert summary.batches == 1
    assert memory_index.upsert_calls == []


def test_lookup_failure_reprocesses_file(
    kb_root, memory_index, make_engine
) -> None:
    path = _write(kb_root, "a.md", "alpha")
    engine = make_engine()
    engine.run_sync_pass()

    memory_index.fail_lookup_for.add(str(path))
    summary = engine.run_sync_pass()

    assert summary.lookup_failures == 1
    assert summary.created == 1
    assert summary.uploaded == 1


def test_lookup_failures_escalate_past_limit(
    kb_root, memory_index, make_engine
) -> None:
    for name in ("a.md", "b.md", "c.md"):
        path = _write(kb_root, name, name)
        memory_index.fail_lookup_for.add(str(path))
    engine = make_engine(max_lookup_failures=1)

    with pytest.raises(SyncPassError) as excinfo:
        engine.run_sync_pass()

    assert excinfo.value.summary is not None
    assert excinfo.value.summary.lookup_failures == 2


def test_missing_root_aborts_pass(tmp_path, make_engine, memory_index) -> None:
    engine = make_engine(root=tmp_path / "missing")

    with pytest.raises(KnowledgeBaseNotFoundError) as excinfo:
        engine.run_sync_pass()

    assert excinfo.value.summary is not None
    assert memory_index.ensure_calls == 0


def test_collection_failure_aborts_before_scanning(
    kb_root, memory_index, make_openai, make_embedder, make_engine
) -> None:
    _write(kb_root, "a.md", "alpha")
    memory_index.fail_ensure = True
    client = make_openai()
    engine = make_engine(embedder=make_embedder(client))

    with pytest.raises(SyncPassError, match="qdrant unavailable"):
        engine.run_sync_pass()

    assert client.embeddings.calls == []


def test_upsert_failure_keeps_earlier_batches(
    kb_root, memory_index, make_engine
) -> None:
    for index in range(4):
        _write(kb_root, f"{index}.md", f"text {index}")
    engine = make_engine(batch_size=2)

    original_upsert = memory_index.upsert

    def _fail_second(documents):
        if memory_index.upsert_calls:
            memory_index.fail_upsert = True
        return original_upsert(documents)

    memory_index.upsert = _fail_second

    with pytest.raises(SyncPassError) as excinfo:
        engine.run_sync_pass()

    assert len(memory_index.points) == 2
    assert excinfo.value.summary.uploaded == 2


def test_unreadable_file_is_counted_and_skipped(
    kb_root, memory_index, make_engine
) -> None:
    (kb_root / "bad.md").write_bytes(b"\xff\xfe\xfa")
    _write(kb_root, "good.md", "fine")
    engine = make_engine()

    summary = engine.run_sync_pass()

    assert summary.errored == 1
    assert summary.processed == 2
    assert summary.uploaded == 1


def test_verification_failure_is_recorded_only(
    kb_root, memory_index, make_engine
) -> None:
    _write(kb_root, "a.md", "alpha")
    memory_index.drop_on_upsert = True
    engine = make_engine()

    summary = engine.run_sync_pass()

    assert summary.uploaded == 1
    assert summary.verified == 0
    assert summary.verification_failures == 1


def test_selector_picks_verified_id(kb_root, memory_index, make_engine) -> None:
    for name in ("a.md", "b.md", "c.md"):
        _write(kb_root, name, name)
    engine = make_engine(selector=lambda ids: ids[-1])

    engine.run_sync_pass()

    (last_id,) = memory_index.ids_for(str(kb_root / "c.md"))
    assert memory_index.exists_calls == [last_id]


def test_stop_event_cancels_pass(kb_root, memory_index, make_engine) -> None:
    _write(kb_root, "a.md", "alpha")
    stop = threading.Event()
    stop.set()
    engine = make_engine()

    summary = engine.run_sync_pass(stop_event=stop)

    assert summary.cancelled is True
    assert summary.processed == 0
    assert memory_index.upsert_calls == []


def test_retryable_failures_recover_within_pass(
    kb_root, memory_index, make_openai, make_embedder, make_engine
) -> None:
    _write(kb_root, "a.md", "alpha")
    attempts = []
    request = httpx.Request("POST", "https://api.openai.com/v1/embeddings")

    def _respond(_text: str):
        attempts.append(1)
        if len(attempts) < 3:
            return APITimeoutError(request=request)
        return constant_vector()

    engine = make_engine(embedder=make_embedder(make_openai(_respond)))

    summary = engine.run_sync_pass()

    assert len(attempts) == 3
    assert summary.uploaded == 1
    assert summary.errored == 0


def test_close_closes_index(make_engine, memory_index) -> None:
    make_engine().close()

    assert memory_index.closed is True


def test_full_width_collection_round_trip(
    kb_root, memory_index, make_openai, make_embedder, make_engine
) -> None:
    width = 1536
    path = _write(kb_root, "a.md", "alpha")
    client = make_openai(lambda _text: [0.1] * width)
    engine = make_engine(
        embedder=make_embedder(client, vector_size=width),
        vector_size=width,
    )

    assert memory_index.find_by_source_path(str(path)).exists is False
    first = engine.run_sync_pass()
    second = engine.run_sync_pass()

    assert memory_index.vector_size == width
    (point_id,) = memory_index.ids_for(str(path))
    assert len(memory_index.points[point_id]["vector"]) == width
    assert first.created == 1
    assert second.skipped == 1
    assert second.uploaded == 0
    assert len(memory_index.upsert_calls) == 1


def test_relative_and_absolute_roots_share_one_record(
    kb_root, memory_index, make_engine, monkeypatch
) -> None:
    path = _write(kb_root, "a.md", "alpha")
    monkeypatch.chdir(kb_root.parent)

    first = make_engine(root=Path("kb")).run_sync_pass()
    _write(kb_root, "a.md", "alpha, revised")
    second = make_engine(root=kb_root).run_sync_pass()

    assert first.created == 1
    assert second.created == 0
    assert second.updated == 1
    assert memory_index.ids_for(str(path)) == memory_index.ids_for(
        str(path.resolve())
    )
    assert len(memory_index.points) == 1
