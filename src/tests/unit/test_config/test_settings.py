"""Tests for application settings and logging configuration."""

import json
from pathlib import Path

from mcp_config_manager.config.logging import (
    configure_logging,
    get_logger,
    sanitize_log_data,
)
from mcp_config_manager.config.settings import Settings
from mcp_config_manager.storage.base import RepositoryOptions


class TestSettings:
    """Test settings defaults and environment overrides."""

    def test_defaults(self, tmp_path):
        settings = Settings(data_dir=str(tmp_path))

        assert settings.repository.backend == "file"
        assert settings.repository.cache_size == 256
        assert settings.service.restart_settle_delay == 1.0
        assert settings.get_repository_path() == tmp_path / "servers.json"
        assert settings.get_log_file_path() is None

    def test_absolute_repository_path(self, tmp_path):
        settings = Settings(
            data_dir=str(tmp_path), repository={"path": str(tmp_path / "elsewhere.json")}
        )
        assert settings.get_repository_path() == tmp_path / "elsewhere.json"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("REPOSITORY_BACKEND", "memory")
        monkeypatch.setenv("REPOSITORY_CACHE_SIZE", "0")
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")

        settings = Settings()

        assert settings.repository.backend == "memory"
        assert settings.repository.cache_size == 0
        assert settings.logging.level == "DEBUG"

    def test_repository_options_from_config(self):
        settings = Settings(repository={"retry_count": 7, "encryption_key": "k"})
        options = RepositoryOptions.from_config(settings.repository)
        assert options.retry_count == 7
        assert options.encryption_key == "k"


def test_configure_logging_basic():
    """Test basic logging configuration."""
    logger = configure_logging(level="DEBUG")
    assert logger is not None


def test_json_logging_to_file(tmp_path):
    """Test JSON log lines written to a file."""
    log_file = tmp_path / "logs" / "app.log"
    logger = configure_logging(level="INFO", log_file=str(log_file), json_logs=True)
    logger.info("Registry loaded", servers=3)

    entry = json.loads(Path(log_file).read_text().strip().split("\n")[-1])
    assert entry["event"] == "Registry loaded"
    assert entry["servers"] == 3
    assert "timestamp" in entry


def test_get_logger_with_context():
    """Test logger creation with initial context."""
    logger = get_logger(__name__, component="test")
    assert hasattr(logger, "info")


def test_sanitize_log_data():
    """Test sensitive data sanitization."""
    data = {
        "name": "github",
        "environment": {"GITHUB_TOKEN": "ghp_x", "API_KEY": "k", "REGION": "eu"},
        "password": "secret123",
    }

    sanitized = sanitize_log_data(data)

    assert sanitized["name"] == "github"
    assert sanitized["password"] == "[REDACTED]"
    assert sanitized["environment"]["GITHUB_TOKEN"] == "[REDACTED]"
    assert sanitized["environment"]["API_KEY"] == "[REDACTED]"
    assert sanitized["environment"]["REGION"] == "eu"
    assert data["environment"]["GITHUB_TOKEN"] == "ghp_x"
