"""
Configuration package for the call orchestrator.

This package contains:
- schema: pydantic models for every configurable component
- loaders: YAML file loading and parsing
- security: credential injection from the environment
- defaults: environment-driven operational defaults
"""

import os
from typing import List, Tuple

from ..logging_config import get_logger
from .defaults import apply_call_registry_defaults, apply_logging_defaults, apply_server_defaults
from .loaders import load_yaml_with_env_expansion, resolve_config_path
from .schema import (
    AppConfig,
    AudioConfig,
    CallRegistryConfig,
    ConversationConfig,
    ElevenLabsProviderConfig,
    ElevenLabsVoiceSettings,
    ExitPolicyConfig,
    LoggingConfig,
    MaintenanceConfig,
    OpenAIProviderConfig,
    ProvidersConfig,
    ResponseCacheConfig,
    ServerConfig,
    SilenceConfig,
    WebhookConfig,
)
from .security import inject_provider_api_keys, inject_webhook_secret

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/orchestrator.yaml"
TTS_PROVIDERS = ("elevenlabs", "openai")


def load_config(path: str = DEFAULT_CONFIG_PATH) -> AppConfig:
    """
    Load and validate configuration from a YAML file.

    Args:
        path: Path to YAML configuration file (absolute or relative to project root)

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
    """
    # Phase 1: Load YAML file with environment variable expansion
    path = resolve_config_path(path)
    config_data = load_yaml_with_env_expansion(path)

    # Phase 2: Security - credentials come from the environment only
    inject_provider_api_keys(config_data)
    inject_webhook_secret(config_data)

    # Phase 3: Apply default values
    apply_server_defaults(config_data)
    apply_logging_defaults(config_data)
    apply_call_registry_defaults(config_data)

    # Phase 4: Validate and return
    return AppConfig(**config_data)


def validate_production_config(config: AppConfig) -> Tuple[List[str], List[str]]:
    """
    Validate configuration for production deployment.

    Returns:
        (errors, warnings): errors block startup, warnings are logged only.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if config.default_tts_provider not in TTS_PROVIDERS:
        errors.append(
            f"Invalid default_tts_provider: {config.default_tts_provider} (must be one of {', '.join(TTS_PROVIDERS)})"
        )

    if not config.providers.openai.api_key:
        errors.append("OPENAI_API_KEY is not set (required for response generation)")
    if not config.providers.elevenlabs.api_key:
        if config.default_tts_provider == "elevenlabs":
            errors.append("ELEVENLABS_API_KEY is not set but elevenlabs is the default TTS provider")
        else:
            warnings.append("ELEVENLABS_API_KEY is not set; agent mode and ElevenLabs voices are unavailable")
    elif not config.providers.elevenlabs.agent_id:
        warnings.append("ELEVENLABS_AGENT_ID is not set; agent-mode calls must supply an agent id")

    conv = config.conversation
    if not (conv.min_temperature <= conv.temperature <= conv.max_temperature):
        errors.append(
            f"conversation.temperature {conv.temperature} outside [{conv.min_temperature}, {conv.max_temperature}]"
        )
    if conv.history_limit < 2:
        errors.append(f"conversation.history_limit {conv.history_limit} too small (must be >= 2)")
    if not conv.closing_lines:
        errors.append("conversation.closing_lines is empty")
    if "neutral" not in conv.fallback_lines or not conv.fallback_lines["neutral"]:
        errors.append("conversation.fallback_lines must define a non-empty 'neutral' list")

    port = config.server.port
    if port < 1 or port > 65535:
        errors.append(f"server.port {port} out of valid range (1-65535)")

    if config.webhooks.max_attempts < 1:
        errors.append(f"webhooks.max_attempts {config.webhooks.max_attempts} must be >= 1")
    if not config.webhooks.secret:
        warnings.append("WEBHOOK_SECRET is not set; webhook signatures are unauthenticated identifiers")

    log_level = os.getenv('LOG_LEVEL', config.logging.level).lower()
    if log_level == 'debug':
        warnings.append("Debug logging enabled (security/performance risk in production)")
    if config.server.host == '0.0.0.0':
        warnings.append("Server bound to 0.0.0.0; ensure firewall/segmentation is in place")
    if config.audio.public_base_url.startswith("http://localhost"):
        warnings.append("audio.public_base_url points at localhost; the gateway cannot fetch generated audio")

    return errors, warnings


__all__ = [
    "AppConfig",
    "AudioConfig",
    "CallRegistryConfig",
    "ConversationConfig",
    "DEFAULT_CONFIG_PATH",
    "ElevenLabsProviderConfig",
    "ElevenLabsVoiceSettings",
    "ExitPolicyConfig",
    "LoggingConfig",
    "MaintenanceConfig",
    "OpenAIProviderConfig",
    "ProvidersConfig",
    "ResponseCacheConfig",
    "ServerConfig",
    "SilenceConfig",
    "WebhookConfig",
    "load_config",
    "validate_production_config",
]
