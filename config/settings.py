"""
Centralized configuration management for the Cafe Sync service.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
from typing import List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """SQL database configuration (used by the SQL checkpoint backend)."""

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8"
    )

    # Connection URL (preferred) or individual components
    url: Optional[str] = Field(
        default=None,
        description="Full SQLAlchemy connection URL. Overrides individual fields if set."
    )

    host: str = Field(default="localhost", description="PostgreSQL host")
    port: int = Field(default=5432, description="PostgreSQL port")
    user: str = Field(default="user", description="PostgreSQL username")
    password: str = Field(default="pass", description="PostgreSQL password")
    database: str = Field(default="cafe_sync", description="PostgreSQL database name")

    # Connection pool settings
    pool_size: int = Field(default=5, description="Connection pool size")
    max_overflow: int = Field(default=10, description="Max overflow connections")
    pool_recycle: int = Field(default=3600, description="Recycle connections after N seconds")

    @property
    def connection_url(self) -> str:
        """Get the database connection URL."""
        if self.url:
            return self.url
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


class MongoSettings(BaseSettings):
    """Local MongoDB replica configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8"
    )

    uri: str = Field(default="mongodb://localhost:27017", description="Local MongoDB URI")
    database: str = Field(default="cafe", description="Local MongoDB database")

    # Connection settings
    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    server_selection_timeout: int = Field(default=5, description="Server selection timeout in seconds")
    max_pool_size: int = Field(default=20, description="Max connection pool size")


class CheckpointSettings(BaseSettings):
    """Resume-token checkpoint store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="CHECKPOINT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8"
    )

    backend: str = Field(default="mongo", description="Storage backend: mongo or sql")
    collection_name: str = Field(
        default="_sync_metadata",
        description="Mongo collection holding the checkpoint document"
    )
    token_id: str = Field(
        default="change-stream-resume-token",
        description="Fixed key of the singleton checkpoint record"
    )
    token_field: str = Field(default="_data", description="Resume token payload field")

    # Retry settings
    max_attempts: int = Field(default=3, description="Attempts per checkpoint operation")
    backoff_schedule: List[float] = Field(
        default=[1.0, 2.0, 5.0],
        description="Seconds to wait between attempts (JSON list in env)"
    )
    jitter: float = Field(default=0.0, description="Max random seconds added to each delay")

    staleness_days: float = Field(
        default=7.0,
        description="Age after which a loaded token is reported as possibly expired"
    )
    instance_id: str = Field(default="unknown", description="Identifier of this consumer instance")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate backend value."""
        allowed = {"mongo", "sql"}
        if v.lower() not in allowed:
            raise ValueError(f"Checkpoint backend must be one of: {allowed}")
        return v.lower()

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8"
    )

    level: str = Field(default="INFO", description="Root log level")
    json_format: bool = Field(default=True, description="Emit JSON-structured log lines")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    environment: str = Field(default="development", description="Application environment")
    debug: bool = Field(default=False, description="Debug mode")

    # Sub-configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    checkpoint: CheckpointSettings = Field(default_factory=CheckpointSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "staging", "production"}
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


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
