"""
Default value application for configuration.

Operational knobs that deployments commonly override through the environment
rather than the YAML file.
"""

import os
from typing import Any, Dict

from ..logging_config import get_logger

logger = get_logger(__name__)


def _block(parent: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = parent.get(key)
    if not isinstance(value, dict):
        value = {}
    parent[key] = value
    return value


def apply_call_registry_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply the call cleanup threshold.

    Environment variables:
    - CALL_TRACKER_MAX_AGE_MS: max age of a call record before the sweep drops it
    """
    calls = _block(config_data, 'calls')
    raw = os.getenv('CALL_TRACKER_MAX_AGE_MS')
    if raw:
        try:
            calls['cleanup_max_age_sec'] = int(raw) / 1000.0
        except ValueError:
            logger.warning("Ignoring invalid CALL_TRACKER_MAX_AGE_MS", value=raw)


def apply_server_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply bind address and the public base URL for generated audio.

    Environment variables:
    - HOST / PORT: server bind address
    - PUBLIC_BASE_URL: externally reachable base URL the gateway fetches audio from
    """
    server = _block(config_data, 'server')
    server.setdefault('host', os.getenv('HOST', '0.0.0.0'))
    try:
        server.setdefault('port', int(os.getenv('PORT', '3000')))
    except ValueError:
        server['port'] = 3000

    audio = _block(config_data, 'audio')
    public_base_url = os.getenv('PUBLIC_BASE_URL', '').strip()
    if public_base_url:
        audio['public_base_url'] = public_base_url.rstrip('/')
    else:
        audio.setdefault('public_base_url', f"http://localhost:{server['port']}")


def apply_logging_defaults(config_data: Dict[str, Any]) -> None:
    """LOG_LEVEL overrides logging.level."""
    logging_cfg = _block(config_data, 'logging')
    env_level = os.getenv('LOG_LEVEL')
    if env_level:
        logging_cfg['level'] = env_level.lower()
    else:
        logging_cfg.setdefault('level', 'info')
