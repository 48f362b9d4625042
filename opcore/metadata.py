"""
opcore Metadata Module - single source of default configuration values.

This module reads the packaged defaults file and provides dot-notation
access with an optional environment-specific overlay.
"""

import os
from pathlib import Path
from typing import Any

import yaml

# Packaged defaults
METADATA_FILE = Path(__file__).parent / "config" / "opcore_metadata.yaml"

# Environment variable prefix
ENV_PREFIX = "OPCORE_"


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


def _load_environment_config() -> dict[str, Any]:
    """Load the overlay file named by OPCORE_CONFIG_FILE, if any."""
    overlay = os.environ.get(f"{ENV_PREFIX}CONFIG_FILE")
    return _load_yaml(Path(overlay)) if overlay else {}


_metadata = _load_yaml(METADATA_FILE)
_env_config = _load_environment_config()


def reload_config() -> None:
    """Reload configuration from disk (for testing or dynamic reloading)."""
    global _metadata, _env_config
    _metadata = _load_yaml(METADATA_FILE)
    _env_config = _load_environment_config()


def _lookup(source: dict[str, Any], parts: list[str]) -> tuple[bool, Any]:
    current: Any = source
    for part in parts:
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return False, None
    return True, current


def get(path: str, default: Any = None) -> Any:
    """
    Get a metadata value by dot-notation path.

    Example: get("dispatcher.batch_size") -> 10
    """
    parts = path.split(".")

    found, value = _lookup(_env_config, parts)
    if found:
        return value

    found, value = _lookup(_metadata, parts)
    return value if found else default


PROJECT_NAME = get("project.name", "opcore")
PROJECT_DESCRIPTION = get("project.description", "")
