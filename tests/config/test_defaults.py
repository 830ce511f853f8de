"""
Unit tests for config.defaults module.

Tests cover:
- Server bind address and public base URL
- Logging level override
- Call registry cleanup threshold
"""

import pytest

from call_orchestrator.config.defaults import (
    apply_call_registry_defaults,
    apply_logging_defaults,
    apply_server_defaults,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("HOST", "PORT", "PUBLIC_BASE_URL", "LOG_LEVEL", "CALL_TRACKER_MAX_AGE_MS"):
        monkeypatch.delenv(name, raising=False)


class TestApplyServerDefaults:
    """Tests for apply_server_defaults function."""

    def test_default_values_when_no_env(self):
        """Should use hardcoded defaults when no env vars set."""
        config_data = {}
        apply_server_defaults(config_data)

        assert config_data["server"] == {"host": "0.0.0.0", "port": 3000}
        assert config_data["audio"]["public_base_url"] == "http://localhost:3000"

    def test_env_overrides(self, monkeypatch):
        """HOST, PORT and PUBLIC_BASE_URL come from the environment."""
        monkeypatch.setenv("HOST", "127.0.0.1")
        monkeypatch.setenv("PORT", "8080")
        monkeypatch.setenv("PUBLIC_BASE_URL", "https://calls.example.com/")

        config_data = {}
        apply_server_defaults(config_data)

        assert config_data["server"] == {"host": "127.0.0.1", "port": 8080}
        assert config_data["audio"]["public_base_url"] == "https://calls.example.com"

    def test_yaml_values_preserved(self):
        """YAML values win over env-less defaults."""
        config_data = {"server": {"port": 9000}, "audio": {"public_base_url": "https://yaml.example.com"}}
        apply_server_defaults(config_data)

        assert config_data["server"]["port"] == 9000
        assert config_data["audio"]["public_base_url"] == "https://yaml.example.com"

    def test_public_base_url_follows_port(self):
        config_data = {"server": {"port": 4000}}
        apply_server_defaults(config_data)
        assert config_data["audio"]["public_base_url"] == "http://localhost:4000"

    def test_invalid_port_falls_back(self, monkeypatch):
        monkeypatch.setenv("PORT", "not-a-port")
        config_data = {}
        apply_server_defaults(config_data)
        assert config_data["server"]["port"] == 3000


class TestApplyLoggingDefaults:
    """Tests for apply_logging_defaults function."""

    def test_default_level(self):
        config_data = {}
        apply_logging_defaults(config_data)
        assert config_data["logging"]["level"] == "info"

    def test_env_overrides_level(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        config_data = {"logging": {"level": "warning"}}
        apply_logging_defaults(config_data)
        assert config_data["logging"]["level"] == "debug"


class TestApplyCallRegistryDefaults:
    """Tests for apply_call_registry_defaults function."""

    def test_no_env_leaves_block_empty(self):
        config_data = {}
        apply_call_registry_defaults(config_data)
        assert config_data["calls"] == {}

    def test_env_in_milliseconds(self, monkeypatch):
        """CALL_TRACKER_MAX_AGE_MS is converted to seconds."""
        monkeypatch.setenv("CALL_TRACKER_MAX_AGE_MS", "900000")
        config_data = {}
        apply_call_registry_defaults(config_data)
        assert config_data["calls"]["cleanup_max_age_sec"] == 900.0

    def test_invalid_env_ignored(self, monkeypatch):
        monkeypatch.setenv("CALL_TRACKER_MAX_AGE_MS", "soon")
        config_data = {"calls": {"cleanup_max_age_sec": 60}}
        apply_call_registry_defaults(config_data)
        assert config_data["calls"]["cleanup_max_age_sec"] == 60
