import os
from pathlib import Path
from typing import Any, Final

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator

from detention_pyutils.errors import ConfigurationError
from src.detention_pipeline.constants import PROGRESS_FORMAT_VERSION

DEFAULT_CONFIG_PATH: Final[str] = "config_detention.yaml"
DEFAULT_STATE_DIR: Final[str] = ".detention_state"


class BatchConfig(BaseModel):
    """Chunking, parallelism and pacing of a batch run."""

    chunk_size: int = 50
    parallelism: int = 5
    sub_batch_delay: float = 0.5
    chunk_cooldown: float = 3.0
    pause_poll_interval: float = 0.5
    item_max_attempts: int = 3

    @field_validator("chunk_size", "parallelism", "item_max_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("sub_batch_delay", "chunk_cooldown", "pause_poll_interval")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays cannot be negative")
        return v

    @model_validator(mode="after")
    def validate_parallelism(self) -> "BatchConfig":
        if self.parallelism > self.chunk_size:
            self.parallelism = self.chunk_size
        return self


class RetryConfig(BaseModel):
    """Backoff for transient upstream errors."""

    max_attempts: int = Field(3, ge=1)
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(30.0, ge=0)
    jitter: float = Field(1.0, ge=0)
    rate_limit_multiplier: float = Field(3.0, ge=1)
    timeout: float = Field(30.0, gt=0, description="Hard deadline per upstream attempt")


class CircuitConfig(BaseModel):
    failure_threshold: int = Field(5, ge=1)
    success_threshold: int = Field(2, ge=1)
    reset_timeout: float = Field(30.0, gt=0)


class CacheConfig(BaseModel):
    maxsize: int = Field(500, ge=1)
    ttl: float = Field(300.0, gt=0)
    sweep_interval: float = Field(60.0, gt=0)


class CredentialConfig(BaseModel):
    """Credential lifetime and renewal."""

    max_age: float = Field(1800.0, gt=0)
    warning_threshold: float = Field(300.0, ge=0)
    monitor_interval: float = Field(30.0, gt=0)
    large_batch_threshold: int = Field(200, ge=1)
    env_token_var: str = "DETENTION_API_TOKEN"

    @model_validator(mode="after")
    def validate_threshold(self) -> "CredentialConfig":
        if self.warning_threshold >= self.max_age:
            raise ValueError("warning_threshold must be shorter than max_age")
        return self


class ProgressConfig(BaseModel):
    throttle: float = Field(2.0, ge=0)
    max_age: float = Field(24 * 3600.0, gt=0)
    format_version: int = PROGRESS_FORMAT_VERSION


class ApprovalConfig(BaseModel):
    window_seconds: float = Field(120.0, gt=0)


class ApiConfig(BaseModel):
    """Order API endpoint and client credentials."""

    base_url: str = "https://orders.example.com/api/v1"
    client_id: str | None = None
    client_secret: str | None = None

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("https://", "http://")):
            raise ValueError("base_url must include protocol (https://)")
        return v.rstrip("/")


class StorageConfig(BaseModel):
    directory: Path = Path(DEFAULT_STATE_DIR)


class EngineConfig(BaseModel):
    """Complete runtime configuration."""

    batch: BatchConfig = Field(default_factory=BatchConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    circuit: CircuitConfig = Field(default_factory=CircuitConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    credential: CredentialConfig = Field(default_factory=CredentialConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    approval: ApprovalConfig = Field(default_factory=ApprovalConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    contracts_file: Path = Path("contracts.yaml")


def _env_override(config: EngineConfig) -> dict[str, Any]:
    """Collect environment overrides into a nested update payload."""
    payload = config.model_dump()
    overrides: list[tuple[str, tuple[str, ...]]] = [
        ("DETENTION_API_URL", ("api", "base_url")),
        ("DETENTION_CLIENT_ID", ("api", "client_id")),
        ("DETENTION_CLIENT_SECRET", ("api", "client_secret")),
        ("DETENTION_CHUNK_SIZE", ("batch", "chunk_size")),
        ("DETENTION_PARALLELISM", ("batch", "parallelism")),
        ("DETENTION_STORAGE_DIR", ("storage", "directory")),
        ("DETENTION_APPROVAL_WINDOW", ("approval", "window_seconds")),
        ("DETENTION_CONTRACTS_FILE", ("contracts_file",)),
    ]
    for env_name, path in overrides:
        value = os.getenv(env_name)
        if not value:
            continue
        target = payload
        for part in path[:-1]:
            target = target[part]
        target[path[-1]] = value
        logger.debug(f"Config override from {env_name}")
    return payload


def load_config(*, config_path: str | None = None) -> EngineConfig:
    """Load configuration from YAML file and environment.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated configuration.

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid.
    """
    raw_config: dict[str, Any] = {}
    if config_path is not None:
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        try:
            with config_file.open("r") as file:
                raw_config = yaml.safe_load(file) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML config: {e}") from e

    try:
        config = EngineConfig(**raw_config)
        config = EngineConfig.model_validate(_env_override(config))
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    if config_path is not None:
        logger.info(f"Config loaded from {config_path}")
    return config
