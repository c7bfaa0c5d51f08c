"""
Centralized configuration management for mongowatch.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
from typing import Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..connectors.cdc.change_feed import PreImageMode
from ..connectors.cdc.supervisor import BackoffPolicy


class MongoSettings(BaseSettings):
    """Connections to the watched (target) and local databases."""

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    target_uri: str = Field(default="mongodb://localhost:27017", description="URI of the database to watch")
    target_database: str = Field(default="testdb", description="Database holding the watched collection")

    # where resume points are stored, defaults to the target connection
    local_uri: Optional[str] = Field(default=None, description="URI of the local database")
    local_database: str = Field(default="mongowatch", description="Database holding resume points")

    server_selection_timeout: int = Field(default=10, description="Server selection timeout in seconds")

    @property
    def effective_local_uri(self) -> str:
        return self.local_uri or self.target_uri


class WatchSettings(BaseSettings):
    """What to watch and how the change stream is opened."""

    model_config = SettingsConfigDict(
        env_prefix="WATCH_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    collection: str = Field(default="events", description="Collection to watch")
    resume_suffix: str = Field(
        default="_resume_points",
        description="Suffix of the resume collection; use a distinct one per watch on the same collection"
    )
    watch_id: Optional[str] = Field(default=None, description="Checkpoint identity for the SQL backend")

    full_document: Literal["default", "updateLookup", "whenAvailable", "required"] = Field(
        default="updateLookup",
        description="Post-image mode"
    )
    pre_image_mode: PreImageMode = Field(default=PreImageMode.OFF, description="Pre-image mode")

    max_await_time_ms: int = Field(default=1000, description="Max wait per getMore, bounds stop latency")
    batch_size: Optional[int] = Field(default=None, description="Change stream batch size")

    @field_validator("max_await_time_ms")
    @classmethod
    def validate_max_await(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_await_time_ms must be positive")
        return v

    @property
    def resume_collection_name(self) -> str:
        return f"{self.collection}{self.resume_suffix}"

    @property
    def effective_watch_id(self) -> str:
        return self.watch_id or self.resume_collection_name


class CheckpointSettings(BaseSettings):
    """Where checkpoints are stored."""

    model_config = SettingsConfigDict(
        env_prefix="CHECKPOINT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    backend: Literal["mongo", "sql"] = Field(default="mongo", description="Checkpoint backend")
    database_url: Optional[str] = Field(default=None, description="SQLAlchemy URL for the sql backend")

    @model_validator(mode="after")
    def validate_backend(self) -> "CheckpointSettings":
        if self.backend == "sql" and not self.database_url:
            raise ValueError("database_url is required for the sql checkpoint backend")
        return self


class BackoffSettings(BaseSettings):
    """Retry policy of the watch supervisor."""

    model_config = SettingsConfigDict(
        env_prefix="BACKOFF_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    initial_interval: float = Field(default=0.5, description="First wait in seconds")
    multiplier: float = Field(default=1.5, description="Wait growth factor")
    max_interval: float = Field(default=60.0, description="Max wait in seconds")
    max_elapsed_time: Optional[float] = Field(default=None, description="Give up after this many seconds")
    max_attempts: Optional[int] = Field(default=None, description="Give up after this many attempts")
    jitter: float = Field(default=0.0, description="Random extra wait in seconds")

    def to_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            initial_interval=self.initial_interval,
            multiplier=self.multiplier,
            max_interval=self.max_interval,
            max_elapsed_time=self.max_elapsed_time,
            max_attempts=self.max_attempts,
            jitter=self.jitter,
        )


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(default=True, description="Emit JSON log lines")

    # Sub-configurations
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    watch: WatchSettings = Field(default_factory=WatchSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    backoff: BackoffSettings = Field(default_factory=BackoffSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level name."""
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {sorted(allowed)}")
        return v.upper()


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
