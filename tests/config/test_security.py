"""
Unit tests for config.security module.

Tests cover:
- Provider API key injection (environment variables only)
- Agent id precedence
- Webhook secret injection
"""

import pytest

from call_orchestrator.config.security import inject_provider_api_keys, inject_webhook_secret


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("OPENAI_API_KEY", "ELEVENLABS_API_KEY", "ELEVENLABS_AGENT_ID", "WEBHOOK_SECRET"):
        monkeypatch.delenv(name, raising=False)


class TestInjectProviderApiKeys:
    """Tests for inject_provider_api_keys function."""

    def test_keys_from_environment(self, monkeypatch):
        """Keys should come from the environment."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
        monkeypatch.setenv("ELEVENLABS_API_KEY", "xi-env")

        config_data = {}
        inject_provider_api_keys(config_data)

        assert config_data["providers"]["openai"]["api_key"] == "sk-env"
        assert config_data["providers"]["elevenlabs"]["api_key"] == "xi-env"

    def test_yaml_keys_are_overwritten(self):
        """YAML-supplied keys must never survive injection."""
        config_data = {
            "providers": {
                "openai": {"api_key": "sk-from-yaml", "voice": "nova"},
                "elevenlabs": {"api_key": "xi-from-yaml"},
            }
        }
        inject_provider_api_keys(config_data)

        assert config_data["providers"]["openai"]["api_key"] is None
        assert config_data["providers"]["elevenlabs"]["api_key"] is None
        assert config_data["providers"]["openai"]["voice"] == "nova"

    def test_agent_id_env_wins(self, monkeypatch):
        """ELEVENLABS_AGENT_ID overrides the YAML agent id."""
        monkeypatch.setenv("ELEVENLABS_AGENT_ID", "agent-env")
        config_data = {"providers": {"elevenlabs": {"agent_id": "agent-yaml"}}}

        inject_provider_api_keys(config_data)
        assert config_data["providers"]["elevenlabs"]["agent_id"] == "agent-env"

    def test_agent_id_yaml_kept_without_env(self):
        """The agent id is not secret; YAML value stays when env is unset."""
        config_data = {"providers": {"elevenlabs": {"agent_id": "agent-yaml"}}}

        inject_provider_api_keys(config_data)
        assert config_data["providers"]["elevenlabs"]["agent_id"] == "agent-yaml"

    def test_non_dict_blocks_replaced(self):
        """A malformed providers block should not crash injection."""
        config_data = {"providers": None}
        inject_provider_api_keys(config_data)
        assert set(config_data["providers"]) == {"openai", "elevenlabs"}


class TestInjectWebhookSecret:
    """Tests for inject_webhook_secret function."""

    def test_secret_from_environment(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_SECRET", "hmac-secret")
        config_data = {}
        inject_webhook_secret(config_data)
        assert config_data["webhooks"]["secret"] == "hmac-secret"

    def test_yaml_secret_discarded(self):
        config_data = {"webhooks": {"secret": "from-yaml", "max_attempts": 5}}
        inject_webhook_secret(config_data)
        assert config_data["webhooks"]["secret"] is None
        assert config_data["webhooks"]["max_attempts"] == 5

    def test_empty_env_treated_as_unset(self, monkeypatch):
        monkeypatch.setenv("WEBHOOK_SECRET", "")
        config_data = {}
        inject_webhook_secret(config_data)
        assert config_data["webhooks"]["secret"] is None
