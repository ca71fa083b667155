"""Configuration models and loaders for :mod:`kbsync`."""

from __future__ import annotations

import hashlib
import os
from collections.abc import Mapping as MappingABC
from pathlib import Path
from typing import Any, Mapping

import tomllib
import tomlkit
from pydantic import BaseModel, Field, ValidationError, field_validator

from kbsync.core.paths import WorkspacePaths
from kbsync.resources import get_resource

DEFAULTS_RESOURCE_NAME = "kbsync.defaults.toml"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be read or fails validation."""


class QdrantSettings(BaseModel):
    """Connection and collection settings for the Qdrant vector store."""

    url: str = Field(
        default="http://localhost:6333",
        description="Base URL of the Qdrant HTTP API.",
    )
    api_key: str | None = Field(
        default=None,
        description="Optional API key; prefer the QDRANT_API_KEY env var.",
    )
    collection: str = Field(
        default="knowledge_base",
        min_length=1,
        description="Collection receiving the knowledge-base points.",
    )
    vector_size: int = Field(
        default=1536,
        ge=1,
        description="Embedding width the collection is created with.",
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Seconds before a Qdrant request times out.",
    )
    content_key: str = Field(
        default="doc_content",
        min_length=1,
        description="Payload key that stores the document text.",
    )

    model_config = {"str_strip_whitespace": True, "validate_assignment": True}


class EmbeddingSettings(BaseModel):
    """OpenAI embedding request settings."""

    model: str = Field(
        default="text-embedding-3-small",
        min_length=1,
        description="Embedding model name.",
    )
    api_key: str | None = Field(
        default=None,
        description="Optional API key; falls back to OPENAI_API_KEY.",
    )
    base_url: str | None = Field(
        default=None,
        description="Optional alternate OpenAI-compatible endpoint.",
    )
    timeout: float = Field(
        default=60.0,
        gt=0.0,
        description="Seconds before a single embedding request times out.",
    )
    max_chars: int = Field(
        default=30_000,
        ge=1,
        description="Texts longer than this are truncated before embedding.",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts per text before the call fails terminally.",
    )
    retry_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay; attempt k waits k * retry_delay seconds.",
    )
    concurrency: int = Field(
        default=1,
        ge=1,
        description="Worker threads used to embed a batch (1 = sequential).",
    )

    model_config = {"str_strip_whitespace": True, "validate_assignment": True}


class KnowledgeBaseSettings(BaseModel):
    """Where the local corpus lives and which files belong to it."""

    directory: Path | None = Field(
        default=None,
        description="Root directory scanned for knowledge-base files.",
    )
    extensions: tuple[str, ...] = Field(
        default=("txt", "md"),
        description="File extensions (without dots) included in the scan.",
    )
    hash_algorithm: str = Field(
        default="md5",
        description="hashlib algorithm used for content fingerprints.",
    )

    model_config = {"str_strip_whitespace": True, "validate_assignment": True}

    @field_validator("directory")
    @classmethod
    def _expand_directory(cls, value: Path | None) -> Path | None:
        if value is None:
            return None
        return value.expanduser().resolve()

    @field_validator("extensions", mode="before")
    @classmethod
    def _normalize_extensions(cls, value: Any) -> tuple[str, ...]:
        if isinstance(value, str):
            value = value.split(",")
        normalized = []
        for item in value or ():
            extension = str(item).strip().lstrip(".").lower()
            if extension:
                normalized.append(extension)
        if not normalized:
            raise ValueError("At least one file extension is required.")
        return tuple(dict.fromkeys(normalized))

    @field_validator("hash_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in hashlib.algorithms_available:
            raise ValueError(f"Unsupported hash algorithm: {value!r}")
        return normalized


class UploadSettings(BaseModel):
    """Batching controls for the upsert pipeline."""

    batch_size: int = Field(
        default=100,
        ge=1,
        description="Documents accumulated before a batch is flushed.",
    )
    max_lookup_failures: int | None = Field(
        default=None,
        ge=0,
        description=(
            "Abort a pass once more lookups than this fail; unset keeps "
            "reprocessing failed lookups indefinitely."
        ),
    )

    model_config = {"validate_assignment": True}


class ScheduleSettings(BaseModel):
    """Periodic trigger settings for ``kbsync serve``."""

    interval_seconds: float = Field(
        default=3600.0,
        gt=0.0,
        description="Seconds between scheduled sync passes.",
    )
    run_on_start: bool = Field(
        default=True,
        description="Run one pass immediately when the service starts.",
    )

    model_config = {"validate_assignment": True}


class AppConfig(BaseModel):
    """Root configuration for the :mod:`kbsync` application."""

    workspace: Path = Field(
        default_factory=lambda: Path("~/.kbsync").expanduser(),
        description="Workspace root holding kbsync.toml and logs.",
    )
    log_level: str = Field(
        default="INFO",
        description="Default logging level for the application runtime.",
    )
    qdrant: QdrantSettings = Field(default_factory=QdrantSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    knowledge_base: KnowledgeBaseSettings = Field(
        default_factory=KnowledgeBaseSettings,
    )
    upload: UploadSettings = Field(default_factory=UploadSettings)
    schedule: ScheduleSettings = Field(default_factory=ScheduleSettings)

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @field_validator("workspace")
    @classmethod
    def _expand_workspace(cls, value: Path) -> Path:
        return value.expanduser()

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def paths(self) -> WorkspacePaths:
        """Return the workspace layout derived from :attr:`workspace`."""

        return WorkspacePaths.at(self.workspace)


def read_packaged_defaults_text() -> str:
    """Return the raw packaged defaults TOML content."""

    return get_resource(DEFAULTS_RESOURCE_NAME).read_text(encoding="utf-8")


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> load_packaged_defaults()["qdrant"]["vector_size"]
        1536
    """

    return tomllib.loads(read_packaged_defaults_text())


def load_user_config(path: Path) -> dict[str, Any] | None:
    """Parse the user ``kbsync.toml`` at ``path`` when it exists."""

    if not path.exists():
        return None
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Failed to read config at {path}: {exc}") from exc


_ENV_KEYS: Mapping[str, tuple[str, ...]] = {
    "KBSYNC_WORKSPACE": ("workspace",),
    "KBSYNC_LOG_LEVEL": ("log_level",),
    "KBSYNC_KNOWLEDGE_BASE_DIR": ("knowledge_base", "directory"),
    "KBSYNC_QDRANT_URL": ("qdrant", "url"),
    "KBSYNC_COLLECTION": ("qdrant", "collection"),
    "QDRANT_API_KEY": ("qdrant", "api_key"),
    "OPENAI_API_KEY": ("embedding", "api_key"),
}


def env_config_from_environ(
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Translate recognized environment variables into a config layer.

    Example:
        >>> env_config_from_environ({"KBSYNC_COLLECTION": "docs"})
        {'qdrant': {'collection': 'docs'}}
    """

    source = os.environ if environ is None else environ
    layer: dict[str, Any] = {}
    for variable, keys in _ENV_KEYS.items():
        value = source.get(variable)
        if not value:
            continue
        target = layer
        for key in keys[:-1]:
            target = target.setdefault(key, {})
        target[keys[-1]] = value
    return layer


def _deep_merge(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge ``overlay`` into ``base`` returning a new dict."""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MappingABC)
            and isinstance(value, MappingABC)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    *,
    defaults: Mapping[str, Any],
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load configuration according to the precedence stack.

    Args:
        defaults: Packaged defaults shipped with the application.
        user_config: Parsed user ``kbsync.toml`` content.
        env_config: Settings derived from environment variables.
        cli_overrides: Settings supplied via CLI flags.

    Raises:
        ConfigError: If the merged payload fails validation.
    """

    stack: dict[str, Any] = dict(defaults)
    for layer in (user_config, env_config, cli_overrides):
        if layer:
            stack = _deep_merge(stack, layer)

    try:
        return AppConfig(**stack)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def load_workspace_config(
    paths: WorkspacePaths,
    *,
    environ: Mapping[str, str] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Resolve the effective configuration for the workspace at ``paths``."""

    overrides = _deep_merge(
        {"workspace": str(paths.workspace)},
        cli_overrides or {},
    )
    return load_config(
        defaults=load_packaged_defaults(),
        user_config=load_user_config(paths.config_file),
        env_config=env_config_from_environ(environ),
        cli_overrides=overrides,
    )


def render_user_config(config: AppConfig) -> str:
    """Render a ``kbsync.toml`` for users to customize.

    API keys are left out; they belong in the environment.
    """

    document = tomlkit.document()
    document.add(tomlkit.comment("Generated by kbsync init"))
    document.add(
        tomlkit.comment(
            "Precedence: CLI flags > env vars > kbsync.toml > defaults"
        )
    )
    document.add(tomlkit.comment("Secrets: OPENAI_API_KEY, QDRANT_API_KEY"))
    document.add(tomlkit.nl())

    document["workspace"] = str(config.workspace)
    document["log_level"] = config.log_level

    qdrant = tomlkit.table()
    qdrant["url"] = config.qdrant.url
    qdrant["collection"] = config.qdrant.collection
    qdrant["vector_size"] = config.qdrant.vector_size
    qdrant["timeout"] = config.qdrant.timeout
    qdrant["content_key"] = config.qdrant.content_key
    document["qdrant"] = qdrant

    embedding = tomlkit.table()
    embedding["model"] = config.embedding.model
    if config.embedding.base_url:
        embedding["base_url"] = config.embedding.base_url
    embedding["timeout"] = config.embedding.timeout
    embedding["max_chars"] = config.embedding.max_chars
    embedding["max_attempts"] = config.embedding.max_attempts
    embedding["retry_delay"] = config.embedding.retry_delay
    embedding["concurrency"] = config.embedding.concurrency
    document["embedding"] = embedding

    knowledge_base = tomlkit.table()
    if config.knowledge_base.directory is not None:
        knowledge_base["directory"] = str(config.knowledge_base.directory)
    else:
        knowledge_base.add(
            tomlkit.comment('directory = "/path/to/knowledge-base"')
        )
    knowledge_base["extensions"] = list(config.knowledge_base.extensions)
    knowledge_base["hash_algorithm"] = config.knowledge_base.hash_algorithm
    document["knowledge_base"] = knowledge_base

    upload = tomlkit.table()
    upload["batch_size"] = config.upload.batch_size
    if config.upload.max_lookup_failures is not None:
        upload["max_lookup_failures"] = config.upload.max_lookup_failures
    document["upload"] = upload

    schedule = tomlkit.table()
    schedule["interval_seconds"] = config.schedule.interval_seconds
    schedule["run_on_start"] = config.schedule.run_on_start
    document["schedule"] = schedule

    return tomlkit.dumps(document)


__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULTS_RESOURCE_NAME",
    "EmbeddingSettings",
    "KnowledgeBaseSettings",
    "QdrantSettings",
    "ScheduleSettings",
    "UploadSettings",
    "env_config_from_environ",
    "load_config",
    "load_packaged_defaults",
    "load_user_config",
    "load_workspace_config",
    "read_packaged_defaults_text",
    "render_user_config",
]
