"""OpenAI-backed embedding client with truncation and bounded retries."""

from __future__ import annotations

import concurrent.futures
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Sequence

import httpx
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    OpenAI,
    RateLimitError,
)

from kbsync.core.config import ConfigError, EmbeddingSettings
from kbsync.core.logging import Logger, get_logger
from kbsync.sync.errors import (
    EmbeddingDimensionError,
    EmbeddingRequestError,
    EmbeddingRetryExceededError,
    EmbeddingRetryableError,
)
from kbsync.sync.models import Document, EmbeddingVector

__all__ = [
    "EmbedBatchReport",
    "EmbeddingClient",
]

_PROGRESS_EVERY = 10


@dataclass(slots=True)
class EmbedBatchReport:
    """Outcome of :meth:`EmbeddingClient.embed_many` for one batch."""

    documents: list[Document]
    succeeded: int = 0
    failed: int = 0
    empty: int = 0
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def embedded(self) -> list[Document]:
        """Documents that carry a vector and may be upserted."""

        return [doc for doc in self.documents if doc.has_embedding]


class EmbeddingClient:
    """Convert text into fixed-width vectors via the OpenAI embeddings API.

    Texts longer than ``max_chars`` are cut from the start before the call;
    blank texts never reach the provider. Transient provider failures are
    retried up to ``max_attempts`` times, waiting ``k * retry_delay`` seconds
    after attempt ``k``. Errors the provider will never accept (auth, bad
    request) fail on the first attempt.
    """

    def __init__(
        self,
        *,
        model: str,
        vector_size: int | None = None,
        max_chars: int = 30_000,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        concurrency: int = 1,
        client: OpenAI | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
        logger: Logger | None = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], float] = time.perf_counter,
    ) -> None:
        if max_chars < 1:
            raise ValueError("max_chars must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        self.model = model
        self.vector_size = vector_size
        self.max_chars = max_chars
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.concurrency = concurrency
        self.logger = logger or get_logger(__name__, component="embedding")
        self._sleep = sleep
        self._now = now
        self._stats_lock = threading.Lock()
        self._stats = {
            "requests": 0,
            "retries": 0,
            "failures": 0,
            "truncated": 0,
        }
        self._client = client or self._build_client(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
        )

    @classmethod
    def from_settings(
        cls,
        settings: EmbeddingSettings,
        *,
        vector_size: int | None = None,
        client: OpenAI | None = None,
        logger: Logger | None = None,
    ) -> "EmbeddingClient":
        return cls(
            model=settings.model,
            vector_size=vector_size,
            max_chars=settings.max_chars,
            max_attempts=settings.max_attempts,
            retry_delay=settings.retry_delay,
            concurrency=settings.concurrency,
            client=client,
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.timeout,
            logger=logger,
        )

    @property
    def stats(self) -> dict[str, int]:
        """Return counters captured during the client lifetime."""

        with self._stats_lock:
            return dict(self._stats)

    # ------------------------------------------------------------------#
    # Public API
    # ------------------------------------------------------------------#
    def truncate(self, text: str) -> str:
        """Return ``text`` cut to :attr:`max_chars`, logging when it is cut."""

        if len(text) <= self.max_chars:
            return text
        self._bump("truncated")
        self.logger.warning(
            "embedding-input-truncated",
            model=self.model,
            length=len(text),
            limit=self.max_chars,
        )
        return text[: self.max_chars]

    def embed(self, text: str) -> EmbeddingVector:
        """Return the embedding for ``text``.

        Blank input yields an empty vector without calling the provider.

        Raises:
            EmbeddingRequestError: The provider rejected the request.
            EmbeddingRetryExceededError: Transient failures used up the
                retry budget.
            EmbeddingDimensionError: The vector width is not
                :attr:`vector_size`.
        """

        if not text or not text.strip():
            return ()

        vector = self._invoke_with_retries(self.truncate(text))
        if self.vector_size is not None and len(vector) != self.vector_size:
            self._bump("failures")
            raise EmbeddingDimensionError(
                (
                    f"Embedding dimension mismatch: expected "
                    f"{self.vector_size}, got {len(vector)}."
                ),
                model=self.model,
                expected=self.vector_size,
                actual=len(vector),
            )
        return vector

    def embed_document(self, document: Document) -> Document:
        """Attach an embedding of ``document.content`` to ``document``.

        The stored content is left untouched even when the text sent to the
        provider was truncated.
        """

        if not document.content.strip():
            self.logger.warning(
                "embedding-empty-document",
                document_id=document.id,
                source_path=document.source_path,
            )
        document.embedding = self.embed(document.content)
        return document

    def embed_many(self, documents: Sequence[Document]) -> EmbedBatchReport:
        """Embed every document, isolating failures per document.

        A failed document keeps an empty embedding and is recorded in the
        report; it never aborts the rest of the batch. With ``concurrency``
        above one the documents are embedded on a thread pool and the call
        returns only once every document has finished.
        """

        report = EmbedBatchReport(documents=list(documents))
        total = len(report.documents)
        if total == 0:
            return report

        self.logger.info(
            "embedding-batch-start",
            model=self.model,
            documents=total,
            concurrency=self.concurrency,
        )

        if self.concurrency == 1:
            for document in report.documents:
                error = self._embed_isolated(document)
                self._record(report, document, error, total=total)
        else:
            with concurrent.futures.ThreadPoolExecutor(
                max_workers=self.concurrency,
                thread_name_prefix="embed",
            ) as executor:
                futures = {
                    executor.submit(self._embed_isolated, document): document
                    for document in report.documents
                }
                for future in concurrent.futures.as_completed(futures):
                    self._record(
                        report,
                        futures[future],
                        future.result(),
                        total=total,
                    )

        self.logger.info(
            "embedding-batch-complete",
            model=self.model,
            documents=total,
            succeeded=report.succeeded,
            failed=report.failed,
            empty=report.empty,
        )
        return report

    # ------------------------------------------------------------------#
    # Internal helpers
    # ------------------------------------------------------------------#
    def _bump(self, counter: str) -> None:
        with self._stats_lock:
            self._stats[counter] += 1

    def _build_client(
        self,
        *,
        api_key: str | None,
        base_url: str | None,
        timeout: float,
    ) -> OpenAI:
        key = api_key or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ConfigError(
                "OPENAI_API_KEY must be set to generate embeddings."
            )
        # The SDK's own retries are disabled; the budget here is authoritative.
        return OpenAI(
            api_key=key,
            base_url=base_url or os.environ.get("OPENAI_BASE_URL"),
            timeout=timeout,
            max_retries=0,
        )

    def _embed_isolated(self, document: Document) -> Exception | None:
        try:
            self.embed_document(document)
        except Exception as exc:
            document.embedding = ()
            return exc
        return None

    def _record(
        self,
        report: EmbedBatchReport,
        document: Document,
        error: Exception | None,
        *,
        total: int,
    ) -> None:
        if error is not None:
            report.failed += 1
            report.failures[document.id] = str(error)
            self.logger.error(
                "embedding-document-failed",
                document_id=document.id,
                source_path=document.source_path,
                error_type=error.__class__.__name__,
                error=str(error),
            )
        elif document.has_embedding:
            report.succeeded += 1
        else:
            report.empty += 1

        done = report.succeeded + report.failed + report.empty
        if done % _PROGRESS_EVERY == 0 or done == total:
            self.logger.info(
                "embedding-progress",
                done=done,
                total=total,
                percent=round(done / total * 100),
                succeeded=report.succeeded,
                failed=report.failed,
            )

    def _invoke_with_retries(self, text: str) -> EmbeddingVector:
        start = self._now()
        attempt = 0

        while True:
            attempt += 1
            try:
                response = self._client.embeddings.create(
                    model=self.model,
                    input=[text],
                )
            except Exception as exc:
                error = self._classify_failure(exc, attempt=attempt)
                if not isinstance(error, EmbeddingRetryableError):
                    self._bump("failures")
                    raise error from exc
                if attempt >= self.max_attempts:
                    self._bump("failures")
                    raise self._retry_exhausted(error) from error

                delay = self.retry_delay * attempt
                self.logger.warning(
                    "embedding-retry",
                    model=self.model,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    retry_delay=delay,
                    error_type=exc.__class__.__name__,
                    status_code=error.status_code,
                )
                self._bump("retries")
                self._sleep(delay)
                continue

            self._bump("requests")
            data = getattr(response, "data", None) or []
            if not data:
                self._bump("failures")
                raise EmbeddingRequestError(
                    "Provider returned no embedding data.",
                    model=self.model,
                    attempts=attempt,
                )
            self.logger.debug(
                "embedding-request",
                model=self.model,
                chars=len(text),
                attempts=attempt,
                latency=self._now() - start,
                recovered=attempt > 1,
            )
            return tuple(float(value) for value in data[0].embedding)

    def _retry_exhausted(
        self,
        last_error: EmbeddingRetryableError,
    ) -> EmbeddingRetryExceededError:
        self.logger.error(
            "embedding-retry-exhausted",
            model=self.model,
            attempts=self.max_attempts,
            status_code=last_error.status_code,
            error=last_error.message,
        )
        return EmbeddingRetryExceededError(
            (
                f"Failed to generate embedding after {self.max_attempts} "
                f"attempts: {last_error.message}"
            ),
            model=self.model,
            status_code=last_error.status_code,
            attempts=self.max_attempts,
        )

    def _classify_failure(
        self,
        exc: Exception,
        *,
        attempt: int,
    ) -> EmbeddingRetryableError | EmbeddingRequestError:
        error_type = (
            EmbeddingRetryableError
            if self._is_retryable(exc)
            else EmbeddingRequestError
        )
        error = error_type(
            str(exc) or exc.__class__.__name__,
            model=self.model,
            status_code=self._status_of(exc),
            attempts=attempt,
        )
        error.__cause__ = exc
        return error

    @staticmethod
    def _is_retryable(exc: Exception) -> bool:
        if isinstance(
            exc,
            (
                RateLimitError,
                APITimeoutError,
                APIConnectionError,
                httpx.TimeoutException,
                httpx.NetworkError,
            ),
        ):
            return True
        if isinstance(exc, APIStatusError):
            status = EmbeddingClient._status_of(exc)
            return status is not None and status >= 500
        return False

    @staticmethod
    def _status_of(exc: Exception) -> int | None:
        value = getattr(exc, "status_code", None)
        if isinstance(value, int):
            return value
        return None
