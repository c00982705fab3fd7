"""Configuration for vault-vector-search.

Settings come from three layers, later layers winning:

1. Field defaults (see :mod:`.defaults`)
2. An optional JSON config file
3. ``VAULT_VECTOR_SEARCH_*`` environment variables
"""

import os
from pathlib import Path
from typing import Literal

import orjson
from loguru import logger
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.exceptions import ConfigurationError
from .defaults import (
    DEFAULT_BATCH_PAUSE,
    DEFAULT_BATCH_SIZE,
    DEFAULT_CHECKPOINT_INTERVAL,
    DEFAULT_DEBOUNCE_DELAY,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_EMBEDDING_PROVIDER,
    DEFAULT_EMBEDDING_TIMEOUT,
    DEFAULT_EXCLUDE_PATTERNS,
    DEFAULT_INCLUDE_PATTERNS,
    DEFAULT_LIFECYCLE_PAUSE,
    DEFAULT_LIFECYCLE_RESET_INTERVAL,
    INDEX_METADATA_FILENAME,
    LANCE_DIRNAME,
    WORKER_PID_FILENAME,
    get_default_index_path,
)

ENV_PREFIX = "VAULT_VECTOR_SEARCH_"

IndexOnStartup = Literal["auto", "always", "never"]


class VaultConfig(BaseSettings):
    """Vault indexing configuration."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        extra="ignore",
    )

    vault_path: Path = Field(..., description="Root directory of the vault")
    index_path: Path | None = Field(
        default=None,
        description="Index directory (defaults to <vault>/.vault-vector-search)",
    )
    include_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_INCLUDE_PATTERNS)
    )
    exclude_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_PATTERNS)
    )

    embedding_provider: str = DEFAULT_EMBEDDING_PROVIDER
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    index_on_startup: IndexOnStartup = "auto"

    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    checkpoint_interval: int = Field(default=DEFAULT_CHECKPOINT_INTERVAL, ge=1)
    lifecycle_reset_interval: int = Field(
        default=DEFAULT_LIFECYCLE_RESET_INTERVAL, ge=1
    )
    embedding_timeout: float = Field(default=DEFAULT_EMBEDDING_TIMEOUT, gt=0)
    debounce_delay: float = Field(default=DEFAULT_DEBOUNCE_DELAY, ge=0)
    batch_pause: float = Field(default=DEFAULT_BATCH_PAUSE, ge=0)
    lifecycle_pause: float = Field(default=DEFAULT_LIFECYCLE_PAUSE, ge=0)

    log_level: str = "INFO"
    log_file: Path | None = None

    @field_validator("index_on_startup", mode="before")
    @classmethod
    def _coerce_index_on_startup(cls, value: object) -> object:
        # Older configs used a boolean
        if value is True:
            return "always"
        if value is False:
            return "never"
        if value is None:
            return "auto"
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_log_level(cls, value: object) -> object:
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _resolve_paths(self) -> "VaultConfig":
        self.vault_path = self.vault_path.expanduser().resolve()
        if self.index_path is None:
            self.index_path = get_default_index_path(self.vault_path)
        else:
            self.index_path = self.index_path.expanduser()
            if not self.index_path.is_absolute():
                self.index_path = (self.vault_path / self.index_path).resolve()
        return self

    @property
    def metadata_file(self) -> Path:
        """Fingerprint + index metadata JSON file."""
        return self.index_path / INDEX_METADATA_FILENAME

    @property
    def pid_file(self) -> Path:
        """Indexing worker PID file."""
        return self.index_path / WORKER_PID_FILENAME

    @property
    def lance_path(self) -> Path:
        """LanceDB database directory."""
        return self.index_path / LANCE_DIRNAME


def validate_vault_path(vault_path: Path) -> None:
    """Ensure the vault root exists and is a readable directory.

    Raises:
        ConfigurationError: If the vault cannot be used
    """
    if not vault_path.exists():
        raise ConfigurationError(
            f"Invalid vault path: {vault_path} does not exist. "
            f"Set {ENV_PREFIX}VAULT_PATH or pass --config with a vault_path."
        )
    if not vault_path.is_dir():
        raise ConfigurationError(f"Vault path is not a directory: {vault_path}")
    try:
        next(iter(os.scandir(vault_path)), None)
    except OSError as e:
        raise ConfigurationError(f"Vault path is not readable: {vault_path}: {e}") from e


def load_config(config_file: Path | None = None, **overrides: object) -> VaultConfig:
    """Load and validate configuration.

    Args:
        config_file: Optional JSON file with config fields (camelCase keys from
            older configs such as ``vaultPath`` are accepted)
        **overrides: Explicit values that win over file and environment

    Returns:
        Validated configuration

    Raises:
        ConfigurationError: If the file is unreadable, values are invalid or
            the vault path does not exist
    """
    file_data: dict[str, object] = {}
    if config_file is not None:
        try:
            file_data = orjson.loads(Path(config_file).read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Failed to load configuration from {config_file}: {e}"
            ) from e
        if not isinstance(file_data, dict):
            raise ConfigurationError(f"Configuration root must be an object: {config_file}")
        file_data = _normalize_file_keys(file_data)
        logger.debug(f"Configuration loaded from: {config_file}")

    # Environment variables take precedence over the file
    for key in list(file_data):
        if f"{ENV_PREFIX}{key}".upper() in os.environ:
            file_data.pop(key)

    data = {**file_data, **{k: v for k, v in overrides.items() if v is not None}}

    try:
        config = VaultConfig(**data)
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    validate_vault_path(config.vault_path)
    logger.debug(f"Vault path validated: {config.vault_path}")
    return config


_CAMEL_KEYS = {
    "vaultPath": "vault_path",
    "vectorStorePath": "index_path",
    "includePatterns": "include_patterns",
    "excludePatterns": "exclude_patterns",
    "indexOnStartup": "index_on_startup",
    "provider": "embedding_provider",
    "model": "embedding_model",
}


def _normalize_file_keys(data: dict[str, object]) -> dict[str, object]:
    """Flatten the nested ``vectorSearch``/``logging`` sections of older configs."""
    flat: dict[str, object] = {}
    for key, value in data.items():
        if key == "vectorSearch" and isinstance(value, dict):
            flat.update(_normalize_file_keys(value))
        elif key == "logging" and isinstance(value, dict):
            if "level" in value:
                flat["log_level"] = value["level"]
            if value.get("file"):
                flat["log_file"] = value["file"]
        elif key in _CAMEL_KEYS:
            flat[_CAMEL_KEYS[key]] = value
        elif key in VaultConfig.model_fields:
            flat[key] = value
    return flat
