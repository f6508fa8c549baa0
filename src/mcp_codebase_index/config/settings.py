"""Pydantic configuration models for MCP Codebase Index."""

import multiprocessing
import os
from pathlib import Path
from typing import Any, Literal

import orjson
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..core.exceptions import ConfigError
from ..utils.hardware import recommend_concurrency
from .defaults import (
    DEFAULT_CLEANUP_INTERVAL_HOURS,
    DEFAULT_DEBOUNCE_MS,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_EVENT_MAX_AGE_HOURS,
    DEFAULT_FAILOVER_COOLDOWN_SECONDS,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_INCLUDE_PATTERNS,
    DEFAULT_MAX_EVENT_RETRIES,
    DEFAULT_MAX_FILE_SIZE,
    DEFAULT_QUEUE_POLL_INTERVAL_MS,
    DEFAULT_WATCH_HEALTH_CHECK_SECONDS,
    DEFAULT_WATCH_RESTART_ATTEMPTS,
    DEFAULT_WATCH_RESTART_DELAY_SECONDS,
    get_default_data_dir,
)

ENV_PREFIX = "MCP_CODEBASE_INDEX_"


class ConcurrencySettings(BaseModel):
    """Bounds and retry policy for the embedding pipeline."""

    max_concurrent_embedding_requests: int = Field(default=4, ge=1)
    max_concurrent_file_batches: int = Field(default=2, ge=1)
    embedding_batch_size_optimal: int = Field(default=10, ge=1)
    min_batch_size: int = Field(default=1, ge=1)
    network_timeout_ms: int = Field(default=30000, ge=1)
    enable_dynamic_batch_sizing: bool = True
    enable_failure_fallback: bool = True
    max_retry_attempts: int = Field(default=3, ge=1)
    retry_delay_ms: int = Field(default=1000, ge=0)
    max_retry_delay_ms: int = Field(default=30000, ge=0)
    enable_concurrency_logging: bool = False

    def optimize_for_environment(
        self, cpu_count: int | None = None
    ) -> "ConcurrencySettings":
        """Return a copy tuned to the host's core count.

        Limits the user set explicitly are kept; only defaulted ones are tuned.
        """
        cores = cpu_count if cpu_count is not None else multiprocessing.cpu_count()
        embedding_requests, file_batches = recommend_concurrency(cores)
        tuned = {
            "max_concurrent_embedding_requests": embedding_requests,
            "max_concurrent_file_batches": file_batches,
        }
        updates = {
            name: value
            for name, value in tuned.items()
            if name not in self.model_fields_set
        }
        if not updates:
            return self
        return self.model_copy(update=updates)

    def retry_delay_seconds(self, attempt: int) -> float:
        """Exponential backoff for the given 1-based attempt, capped."""
        delay_ms = self.retry_delay_ms * (2 ** (attempt - 1))
        return min(delay_ms, self.max_retry_delay_ms) / 1000.0


class WatchConfig(BaseModel):
    """Per-library watch and eligibility configuration."""

    enabled: bool = True
    include_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_INCLUDE_PATTERNS)
    )
    exclude_patterns: list[str] = Field(default_factory=list)
    include_subdirectories: bool = True
    debounce_ms: int = Field(default=DEFAULT_DEBOUNCE_MS, ge=0)
    max_file_size: int = Field(default=DEFAULT_MAX_FILE_SIZE, gt=0)

    @field_validator("include_patterns", "exclude_patterns")
    @classmethod
    def _validate_patterns(cls, patterns: list[str]) -> list[str]:
        for pattern in patterns:
            if not pattern or not pattern.strip():
                raise ValueError("glob patterns must be non-empty")
            if "\x00" in pattern:
                raise ValueError(f"invalid glob pattern: {pattern!r}")
            if pattern.startswith("/") or Path(pattern).is_absolute():
                raise ValueError(f"glob patterns must be relative: {pattern!r}")
        return patterns


class ProviderConfig(BaseModel):
    """One embedding provider; the first configured provider is primary."""

    kind: Literal["sentence-transformers", "ollama", "openai"] = (
        "sentence-transformers"
    )
    name: str | None = None
    model: str = DEFAULT_EMBEDDING_MODEL
    base_url: str | None = None
    api_key: str | None = None
    api_key_env: str | None = None
    dimensions: int | None = Field(default=None, gt=0)
    max_input_size: int = Field(default=8192, gt=0)
    preferred_batch_size: int = Field(default=32, gt=0)
    timeout_seconds: float = Field(default=30.0, gt=0)

    @property
    def display_name(self) -> str:
        return self.name or f"{self.kind}:{self.model}"

    def resolve_api_key(self) -> str | None:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None


class IndexerSettings(BaseModel):
    """Top-level settings for the indexing service."""

    data_dir: Path = Field(default_factory=get_default_data_dir)
    log_level: str = "INFO"
    log_file: Path | None = None
    auto_tune: bool = True
    concurrency: ConcurrencySettings = Field(default_factory=ConcurrencySettings)
    providers: list[ProviderConfig] = Field(
        default_factory=lambda: [ProviderConfig()]
    )
    default_watch: WatchConfig = Field(default_factory=WatchConfig)
    failure_threshold: int = Field(default=DEFAULT_FAILURE_THRESHOLD, ge=1)
    failover_cooldown_seconds: float = Field(
        default=DEFAULT_FAILOVER_COOLDOWN_SECONDS, ge=0
    )
    max_event_retries: int = Field(default=DEFAULT_MAX_EVENT_RETRIES, ge=1)
    max_concurrent_libraries: int = Field(default=2, ge=1)
    vector_store_timeout_ms: int = Field(default=30000, ge=1)
    queue_poll_interval_ms: int = Field(default=DEFAULT_QUEUE_POLL_INTERVAL_MS, ge=0)
    event_max_age_hours: float = Field(default=DEFAULT_EVENT_MAX_AGE_HOURS, gt=0)
    cleanup_interval_hours: float = Field(
        default=DEFAULT_CLEANUP_INTERVAL_HOURS, gt=0
    )
    watch_health_check_seconds: float = Field(
        default=DEFAULT_WATCH_HEALTH_CHECK_SECONDS, gt=0
    )
    watch_restart_delay_seconds: float = Field(
        default=DEFAULT_WATCH_RESTART_DELAY_SECONDS, ge=0
    )
    watch_restart_attempts: int = Field(default=DEFAULT_WATCH_RESTART_ATTEMPTS, ge=0)
    search_threshold: float = Field(default=0.0, ge=0.0, le=1.0)

    @field_validator("providers")
    @classmethod
    def _require_provider(cls, providers: list[ProviderConfig]) -> list[ProviderConfig]:
        if not providers:
            raise ValueError("at least one embedding provider must be configured")
        return providers

    @property
    def state_db_path(self) -> Path:
        return self.data_dir / "state.db"

    @property
    def vectors_path(self) -> Path:
        return self.data_dir / "lance"

    def effective_concurrency(self) -> ConcurrencySettings:
        """Concurrency settings after hardware tuning and env overrides."""
        settings = self.concurrency
        if self.auto_tune:
            settings = settings.optimize_for_environment()
        updates: dict[str, Any] = {}
        for env_name, field_name in (
            ("MAX_CONCURRENT", "max_concurrent_embedding_requests"),
            ("FILE_BATCHES", "max_concurrent_file_batches"),
            ("BATCH_SIZE", "embedding_batch_size_optimal"),
            ("MAX_RETRIES", "max_retry_attempts"),
        ):
            value = _env_int(env_name)
            if value is not None:
                updates[field_name] = value
        if updates:
            settings = settings.model_copy(update=updates)
        return settings

    @classmethod
    def load(cls, path: Path | None = None) -> "IndexerSettings":
        """Load settings from a JSON file (if present) plus env overrides.

        Raises:
            ConfigError: If the file is unreadable or fails validation
        """
        data: dict[str, Any] = {}
        if path is not None and path.exists():
            try:
                with open(path, "rb") as f:
                    data = orjson.loads(f.read())
            except (OSError, orjson.JSONDecodeError) as e:
                raise ConfigError(f"Failed to read configuration {path}: {e}") from e

        if os.environ.get(f"{ENV_PREFIX}DATA_DIR"):
            data["data_dir"] = os.environ[f"{ENV_PREFIX}DATA_DIR"]
        if os.environ.get(f"{ENV_PREFIX}LOG_LEVEL"):
            data["log_level"] = os.environ[f"{ENV_PREFIX}LOG_LEVEL"]

        try:
            settings = cls(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

        logger.debug(f"Loaded settings (data_dir={settings.data_dir})")
        return settings

    def save(self, path: Path) -> None:
        """Save settings as indented JSON.

        Raises:
            ConfigError: If saving fails
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "wb") as f:
                f.write(
                    orjson.dumps(
                        self.model_dump(mode="json", exclude_unset=True),
                        option=orjson.OPT_INDENT_2,
                    )
                )
            logger.debug(f"Saved configuration to {path}")
        except OSError as e:
            raise ConfigError(f"Failed to save configuration: {e}") from e


def _env_int(name: str) -> int | None:
    raw = os.environ.get(f"{ENV_PREFIX}{name}")
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer {ENV_PREFIX}{name}={raw!r}")
        return None
    return value if value > 0 else None
