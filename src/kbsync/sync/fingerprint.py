"""Content fingerprints used to detect changed files."""

from __future__ import annotations

import hashlib
from typing import Iterable, Iterator

__all__ = [
    "DEFAULT_ALGORITHM",
    "fingerprint",
    "fingerprint_chunks",
]

# md5 matches the contentHash values already stored in existing collections.
DEFAULT_ALGORITHM = "md5"


def _as_bytes(chunks: Iterable[bytes]) -> Iterator[bytes]:
    for chunk in chunks:
        if not isinstance(chunk, (bytes, bytearray)):
            raise TypeError("fingerprint chunks must be bytes")
        if chunk:
            yield bytes(chunk)


def fingerprint_chunks(
    chunks: Iterable[bytes],
    *,
    algorithm: str = DEFAULT_ALGORITHM,
) -> str:
    """Return the hex digest of the concatenated ``chunks``."""

    digest = hashlib.new(algorithm)
    for chunk in _as_bytes(chunks):
        digest.update(chunk)
    return digest.hexdigest()


def fingerprint(
    content: bytes | str,
    *,
    algorithm: str = DEFAULT_ALGORITHM,
) -> str:
    """Return a deterministic hex digest of ``content``.

    Text is encoded as UTF-8 first, so a file's decoded text and its raw
    bytes produce the same fingerprint.

    Example:
        >>> fingerprint("hello") == fingerprint(b"hello")
        True
        >>> fingerprint("hello")
        '5d41402abc4b2a76b9719d911017c592'
    """

    if isinstance(content, str):
        content = content.encode("utf-8")
    return fingerprint_chunks((content,), algorithm=algorithm)
