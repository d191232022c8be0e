"""Application configuration settings."""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingConfig(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="WARNING", description="Log level")
    file_path: Optional[str] = Field(default=None, description="Log file path")
    json_format: bool = Field(default=True, description="Use JSON log format")


class RepositoryConfig(BaseSettings):
    """Server repository configuration settings."""

    model_config = SettingsConfigDict(env_prefix="REPOSITORY_")

    backend: str = Field(
        default="file", description="Repository backend (memory or file)"
    )
    path: str = Field(
        default="servers.json", description="Repository file for the file backend"
    )
    cache_size: int = Field(default=256, description="Maximum cached entities")
    cache_ttl_ms: int = Field(
        default=30_000, description="Cache entry time-to-live in milliseconds"
    )
    enable_watchers: bool = Field(default=True, description="Enable watch streams")
    enable_events: bool = Field(default=True, description="Enable the event log")
    enable_transactions: bool = Field(
        default=True, description="Enable transaction scopes"
    )
    connection_timeout_ms: int = Field(
        default=5_000, description="Storage connection timeout in milliseconds"
    )
    query_timeout_ms: int = Field(
        default=5_000, description="Query timeout in milliseconds"
    )
    retry_count: int = Field(
        default=3, description="Retries for transient storage failures"
    )
    encryption_key: Optional[str] = Field(
        default=None, description="Key for at-rest encryption of the data file"
    )


class ServiceConfig(BaseSettings):
    """Server service behaviour settings."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_")

    restart_settle_delay: float = Field(
        default=1.0, description="Seconds to wait between stop and start on restart"
    )
    start_timeout: float = Field(
        default=10.0, description="Process start timeout in seconds"
    )
    stop_timeout: float = Field(
        default=30.0, description="Graceful process stop timeout in seconds"
    )


class HostConfigSettings(BaseSettings):
    """Host application (Claude Desktop) config file settings."""

    model_config = SettingsConfigDict(env_prefix="HOST_CONFIG_")

    path: Optional[str] = Field(
        default=None, description="Explicit host config path (skips platform lookup)"
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    host_config: HostConfigSettings = Field(default_factory=HostConfigSettings)

    debug: bool = Field(default=False, description="Enable debug mode")
    data_dir: str = Field(
        default=str(Path.home() / ".mcp-config-manager"),
        description="Data directory path",
    )

    def get_data_dir(self) -> Path:
        """Get the data directory path."""
        return Path(self.data_dir).expanduser()

    def get_repository_path(self) -> Path:
        """Get the repository file path."""
        if Path(self.repository.path).is_absolute():
            return Path(self.repository.path)
        return self.get_data_dir() / self.repository.path

    def get_log_file_path(self) -> Optional[Path]:
        """Get the log file path if configured."""
        if self.logging.file_path:
            return Path(self.logging.file_path)
        return None


# Global settings instance
settings = Settings()
