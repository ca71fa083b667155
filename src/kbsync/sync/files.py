"""Local knowledge-base file discovery and loading."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol, Sequence, runtime_checkable

from kbsync.sync.fingerprint import DEFAULT_ALGORITHM
from kbsync.sync.models import FileCandidate

__all__ = [
    "FileSource",
    "LocalFileSource",
    "normalize_extensions",
]


def normalize_extensions(extensions: Iterable[str]) -> frozenset[str]:
    """Lower-case extensions and drop leading dots.

    Example:
        >>> sorted(normalize_extensions([".MD", "txt", " "]))
        ['md', 'txt']
    """

    normalized = (item.strip().lstrip(".").lower() for item in extensions)
    return frozenset(item for item in normalized if item)


@runtime_checkable
class FileSource(Protocol):
    """Boundary contract for whatever feeds files into a pass."""

    @property
    def root(self) -> Path:
        """Directory the source scans."""

    def exists(self) -> bool:
        """Return ``True`` when the root can be scanned."""

    def scan(self) -> Sequence[Path]:
        """Return candidate paths in a stable order."""

    def load(self, path: Path) -> FileCandidate:
        """Read and fingerprint ``path``; may raise ``OSError``."""


@dataclass(frozen=True, slots=True)
class LocalFileSource:
    """Walk a directory tree for files with allowed extensions."""

    root: Path
    extensions: frozenset[str]
    algorithm: str = DEFAULT_ALGORITHM
    encoding: str = "utf-8"

    @classmethod
    def create(
        cls,
        root: Path,
        extensions: Iterable[str],
        *,
        algorithm: str = DEFAULT_ALGORITHM,
    ) -> "LocalFileSource":
        return cls(
            root=Path(root).expanduser().resolve(),
            extensions=normalize_extensions(extensions),
            algorithm=algorithm,
        )

    def exists(self) -> bool:
        return self.root.is_dir()

    def matches(self, path: Path) -> bool:
        return path.suffix.lstrip(".").lower() in self.extensions

    def scan(self) -> Sequence[Path]:
        return tuple(
            sorted(
                path
                for path in self.root.rglob("*")
                if path.is_file() and self.matches(path)
            )
        )

    def load(self, path: Path) -> FileCandidate:
        # newline="" keeps line endings so the hash matches the raw bytes.
        with path.open(encoding=self.encoding, newline="") as handle:
            content = handle.read()
        return FileCandidate.from_text(path, content, algorithm=self.algorithm)
