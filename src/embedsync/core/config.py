"""Configuration models and loaders for :mod:`embedsync`."""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from pathlib import Path
from typing import Any, Literal, Mapping

import tomllib
import tomlkit
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from embedsync.resources import get_resource

DEFAULTS_RESOURCE_NAME = "embedsync.defaults.toml"
ENV_PREFIX = "EMBEDSYNC_"


class ConfigError(RuntimeError):
    """Raised when configuration files cannot be read or validated."""


class SyncSettings(BaseModel):
    """Tunables for the sync job pipeline."""

    debounce_seconds: float = Field(
        default=15.0,
        ge=0.0,
        description="Delay after the last edit before a job may run.",
    )
    lease_ttl_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Age after which a processing lease is considered stale.",
    )
    max_attempts: int = Field(
        default=5,
        ge=1,
        description="Claims allowed before a job is moved to failed.",
    )
    backoff_base_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Base delay for the first retry after a failure.",
    )
    backoff_max_seconds: float = Field(
        default=900.0,
        gt=0.0,
        description="Upper bound for retry delays.",
    )
    backoff_jitter: float = Field(
        default=0.2,
        ge=0.0,
        lt=1.0,
        description="Fractional jitter applied to retry delays.",
    )
    failed_retention_days: float = Field(
        default=14.0,
        ge=0.0,
        description="Days a failed job is kept before cleanup deletes it.",
    )
    batch_size: int = Field(
        default=10,
        ge=1,
        description="Default number of due jobs processed per tick.",
    )
    max_batch_size: int = Field(
        default=50,
        ge=1,
        description="Hard ceiling on due jobs fetched per tick.",
    )
    scan_limit: int = Field(
        default=50,
        ge=1,
        description="Rows inspected per garbage collection pass.",
    )
    max_chunk_chars: int = Field(
        default=1200,
        ge=1,
        description="Maximum characters per indexed chunk.",
    )
    embed_batch_size: int = Field(
        default=16,
        ge=1,
        description="Chunks sent to the embedding provider per request.",
    )
    max_existing_chunk_scan: int = Field(
        default=500,
        ge=0,
        description="Chunk count above which the chunk-hash diff is skipped.",
    )
    preview_chars: int = Field(
        default=200,
        ge=0,
        description="Characters of chunk text stored as the preview payload.",
    )
    vector_delete_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts allowed for a vector delete job.",
    )
    vector_delete_batch_size: int = Field(
        default=10,
        ge=1,
        description="Vector delete jobs drained per tick.",
    )

    model_config = {"validate_assignment": True}

    @model_validator(mode="after")
    def _check_bounds(self) -> "SyncSettings":
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError(
                "backoff_max_seconds must be >= backoff_base_seconds"
            )
        if self.batch_size > self.max_batch_size:
            raise ValueError("batch_size must be <= max_batch_size")
        return self


class EmbeddingSettings(BaseModel):
    """Embedding provider selection."""

    provider: str = Field(
        default="openai",
        description="Registered provider key.",
    )
    model: str = Field(
        default="text-embedding-3-small",
        description="Model name passed to the provider.",
    )
    timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="Request timeout in seconds.",
    )
    options: dict[str, Any] = Field(
        default_factory=dict,
        description="Provider specific options passed to the factory.",
    )

    model_config = {"str_strip_whitespace": True}

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not normalized:
            raise ValueError("embedding provider cannot be blank")
        return normalized


class VectorStoreSettings(BaseModel):
    """Vector store connection settings."""

    backend: Literal["qdrant", "memory"] = Field(
        default="qdrant",
        description="Vector store implementation.",
    )
    url: str | None = Field(
        default=None,
        description="Base URL of the Qdrant instance.",
    )
    api_key: str | None = Field(
        default=None,
        description="Qdrant API key sent as the ``api-key`` header.",
    )
    collection: str = Field(
        default="embedsync_vectors",
        description="Collection holding indexed chunks.",
    )
    timeout: float = Field(
        default=8.0,
        gt=0.0,
        description="Per-request timeout in seconds.",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries for retryable vector store failures.",
    )
    retry_base_delay: float = Field(
        default=0.5,
        ge=0.0,
        description="Base delay for vector store request retries.",
    )
    retry_max_delay: float = Field(
        default=5.0,
        ge=0.0,
        description="Cap for vector store request retry delays.",
    )

    model_config = {"str_strip_whitespace": True}

    @field_validator("url")
    @classmethod
    def _strip_trailing_slash(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip().rstrip("/")
        return stripped or None


class ContentStoreSettings(BaseModel):
    """Location of the content store factory."""

    factory: str | None = Field(
        default=None,
        description="Import path ``package.module:callable`` of the factory.",
    )
    options: dict[str, Any] = Field(
        default_factory=dict,
        description="Keyword options passed to the factory.",
    )

    @field_validator("factory")
    @classmethod
    def _validate_factory(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped:
            return None
        module, sep, attr = stripped.partition(":")
        if not sep or not module or not attr:
            raise ValueError(
                "content_store.factory must look like 'package.module:callable'"
            )
        return stripped


class AppConfig(BaseModel):
    """Root configuration for the :mod:`embedsync` application."""

    workspace: Path = Field(
        default_factory=lambda: Path("~/.embedsync").expanduser(),
        description="Workspace root holding logs and the job database.",
    )
    log_level: str = Field(
        default="INFO",
        description="Default logging level for the application runtime.",
    )
    sync: SyncSettings = Field(default_factory=SyncSettings)
    embeddings: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    vector_store: VectorStoreSettings = Field(
        default_factory=VectorStoreSettings,
    )
    content_store: ContentStoreSettings = Field(
        default_factory=ContentStoreSettings,
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
    }

    @model_validator(mode="after")
    def _post_process(self) -> "AppConfig":
        object.__setattr__(self, "log_level", self.log_level.upper())
        object.__setattr__(self, "workspace", self.workspace.expanduser())
        return self


def read_packaged_defaults_text() -> str:
    """Return the raw packaged defaults TOML content."""

    resource = get_resource(DEFAULTS_RESOURCE_NAME)
    return resource.read_text(encoding="utf-8")


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> defaults = load_packaged_defaults()
        >>> defaults["log_level"]
        'INFO'
    """

    return tomllib.loads(read_packaged_defaults_text())


def read_user_config(path: Path) -> dict[str, Any]:
    """Parse a user ``embedsync.toml``; missing files yield an empty mapping."""

    if not path.exists():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Failed to read config {path}: {exc}") from exc


_ENV_KEYS: Mapping[str, tuple[str, ...]] = {
    "WORKSPACE": ("workspace",),
    "LOG_LEVEL": ("log_level",),
    "QDRANT_URL": ("vector_store", "url"),
    "QDRANT_API_KEY": ("vector_store", "api_key"),
    "QDRANT_COLLECTION": ("vector_store", "collection"),
    "EMBEDDING_PROVIDER": ("embeddings", "provider"),
    "EMBEDDING_MODEL": ("embeddings", "model"),
    "CONTENT_STORE": ("content_store", "factory"),
}


def env_config_from_environ(environ: Mapping[str, str]) -> dict[str, Any]:
    """Translate ``EMBEDSYNC_*`` environment variables into a config layer.

    Example:
        >>> env_config_from_environ({"EMBEDSYNC_QDRANT_URL": "http://q:6333"})
        {'vector_store': {'url': 'http://q:6333'}}
    """

    layer: dict[str, Any] = {}
    for suffix, path in _ENV_KEYS.items():
        value = environ.get(f"{ENV_PREFIX}{suffix}")
        if value is None or not value.strip():
            continue
        cursor = layer
        for key in path[:-1]:
            cursor = cursor.setdefault(key, {})
        cursor[path[-1]] = value.strip()
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
        user_config: Parsed user ``embedsync.toml`` content.
        env_config: Settings derived from environment variables.
        cli_overrides: Settings supplied via CLI flags.

    Returns:
        A validated :class:`AppConfig` instance.

    Raises:
        ConfigError: If the merged configuration fails validation.
    """

    stack: dict[str, Any] = dict(defaults)
    for layer in (user_config, env_config, cli_overrides):
        if layer:
            stack = _deep_merge(stack, layer)

    try:
        return AppConfig(**stack)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def render_user_config(
    config: AppConfig,
    *,
    include_defaults: bool = True,
) -> str:
    """Render an ``embedsync.toml`` template for users to customize."""

    document = tomlkit.document()

    if include_defaults:
        document.add(tomlkit.comment("Generated by embedsync init"))
        document.add(
            tomlkit.comment(
                "Precedence: CLI flags > env vars > embedsync.toml > defaults"
            )
        )
        document.add(tomlkit.comment("Environment overrides:"))
        for suffix in _ENV_KEYS:
            document.add(tomlkit.comment(f"  {ENV_PREFIX}{suffix}"))
        document.add(tomlkit.nl())

    document["workspace"] = str(config.workspace)
    document["log_level"] = config.log_level

    sync_table = tomlkit.table()
    for key, value in config.sync.model_dump().items():
        sync_table[key] = value
    document["sync"] = sync_table

    embeddings_table = tomlkit.table()
    embeddings_table["provider"] = config.embeddings.provider
    embeddings_table["model"] = config.embeddings.model
    embeddings_table["timeout"] = config.embeddings.timeout
    if config.embeddings.options:
        embeddings_table["options"] = dict(config.embeddings.options)
    document["embeddings"] = embeddings_table

    vector_table = tomlkit.table()
    vector_table["backend"] = config.vector_store.backend
    if config.vector_store.url is not None:
        vector_table["url"] = config.vector_store.url
    vector_table["collection"] = config.vector_store.collection
    vector_table["timeout"] = config.vector_store.timeout
    vector_table["max_retries"] = config.vector_store.max_retries
    vector_table["retry_base_delay"] = config.vector_store.retry_base_delay
    vector_table["retry_max_delay"] = config.vector_store.retry_max_delay
    if include_defaults and config.vector_store.api_key is None:
        vector_table.add(
            tomlkit.comment("api_key is best supplied via EMBEDSYNC_QDRANT_API_KEY")
        )
    document["vector_store"] = vector_table

    content_table = tomlkit.table()
    if config.content_store.factory is not None:
        content_table["factory"] = config.content_store.factory
    elif include_defaults:
        content_table.add(
            tomlkit.comment('factory = "myapp.embedsync_adapter:create_store"')
        )
    if config.content_store.options:
        content_table["options"] = dict(config.content_store.options)
    document["content_store"] = content_table

    return tomlkit.dumps(document)


__all__ = [
    "AppConfig",
    "ConfigError",
    "ContentStoreSettings",
    "DEFAULTS_RESOURCE_NAME",
    "EmbeddingSettings",
    "ENV_PREFIX",
    "SyncSettings",
    "VectorStoreSettings",
    "env_config_from_environ",
    "load_config",
    "load_packaged_defaults",
    "read_packaged_defaults_text",
    "read_user_config",
    "render_user_config",
]
