"""
Security-critical configuration injection.

SECURITY POLICY:
- API keys and secrets MUST NEVER be in YAML files
- All credentials come from environment variables only; any YAML value is overwritten
"""

import os
from typing import Any, Dict


def _block(parent: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
    parent[key] = value
    return value


def inject_provider_api_keys(config_data: Dict[str, Any]) -> None:
    """
    Inject provider credentials from environment variables ONLY.

    Environment variables:
    - OPENAI_API_KEY: response generator and OpenAI TTS
    - ELEVENLABS_API_KEY: ElevenLabs TTS and conversational agent
    - ELEVENLABS_AGENT_ID: default conversational agent (not secret, YAML value kept if env unset)
    """
    providers = _block(config_data, 'providers')

    openai_block = _block(providers, 'openai')
    openai_block['api_key'] = os.getenv('OPENAI_API_KEY')

    elevenlabs_block = _block(providers, 'elevenlabs')
    elevenlabs_block['api_key'] = os.getenv('ELEVENLABS_API_KEY')
    agent_id = os.getenv('ELEVENLABS_AGENT_ID')
    if agent_id:
        elevenlabs_block['agent_id'] = agent_id


def inject_webhook_secret(config_data: Dict[str, Any]) -> None:
    """Inject the HMAC secret used to sign webhook payloads (WEBHOOK_SECRET)."""
    webhooks = _block(config_data, 'webhooks')
    webhooks['secret'] = os.getenv('WEBHOOK_SECRET') or None
