"""
Config file loading.

``${VAR}`` and ``$VAR`` expand from the environment and are left literal when
unset. ``${VAR:-default}`` falls back to ``default`` when VAR is unset or empty.
"""

import os
import re
from pathlib import Path

import yaml

# Project root (parent of call_orchestrator/)
_PROJ_DIR = Path(__file__).parent.parent.parent.resolve()

_DEFAULTED_VAR = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*):-([^}]*)\}")


def resolve_config_path(path: str) -> str:
    """Relative paths resolve against the project root."""
    if os.path.isabs(path):
        return path
    return os.path.join(_PROJ_DIR, path)


def expand_env(text: str) -> str:
    text = _DEFAULTED_VAR.sub(lambda m: os.environ.get(m.group(1)) or m.group(2), text)
    return os.path.expandvars(text)


def load_yaml_with_env_expansion(path: str) -> dict:
    """
    Read a YAML file, expand environment references and parse it.

    Raises:
        FileNotFoundError: the file does not exist
        yaml.YAMLError: the expanded text is not valid YAML
    """
    try:
        raw = Path(path).read_text()
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found at: {path}")

    try:
        data = yaml.safe_load(expand_env(raw))
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML configuration: {e}")
    return data or {}
