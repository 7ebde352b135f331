"""
Configuration loader for orglink.

Loads config/orglink.yaml (or an explicit path), applies environment
overrides, validates against the Pydantic schema, and caches the result.
Also loads YAML seed documents into the in-memory enterprise store.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from orglink.config.schema import OrgLinkSettings

# Module-level cache: resolved path (or "<defaults>") -> settings
_loaded_settings: dict[str, OrgLinkSettings] = {}

_DEFAULTS_KEY = "<defaults>"


def find_config_file() -> Optional[Path]:
    """Locate config/orglink.yaml relative to the project root."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        candidate = parent / "config" / "orglink.yaml"
        if candidate.is_file():
            return candidate
    return None


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path, "r") as f:
        raw = yaml.safe_load(f)
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config root must be a mapping: {path}")
    return raw


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    env = os.environ.get("ORGLINK_ENV", "").strip().lower()
    if env:
        raw["env"] = env
    log_level = os.environ.get("ORGLINK_LOG_LEVEL", "").strip()
    if log_level:
        raw["log_level"] = log_level
    return raw


def load_settings(config_path: Optional[str | Path] = None) -> OrgLinkSettings:
    """
    Load and validate orglink settings.

    Args:
        config_path: Optional explicit path to a YAML file. If omitted,
                     ORGLINK_CONFIG is consulted, then config/orglink.yaml.
                     With no file at all, schema defaults are used.

    Returns:
        Validated OrgLinkSettings instance.

    Raises:
        FileNotFoundError: If an explicit path doesn't exist.
        ValueError: If the config is invalid.
    """
    if config_path is None and os.environ.get("ORGLINK_CONFIG"):
        config_path = os.environ["ORGLINK_CONFIG"]

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config not found: {path}")
    else:
        path = find_config_file()

    cache_key = str(path.resolve()) if path else _DEFAULTS_KEY
    if cache_key in _loaded_settings:
        return _loaded_settings[cache_key]

    raw = _read_yaml(path) if path else {}
    raw = _apply_env_overrides(raw)

    try:
        settings = OrgLinkSettings(**raw)
    except ValidationError as e:
        raise ValueError(f"Invalid orglink config ({path or 'defaults'}):\n{e}") from e

    _loaded_settings[cache_key] = settings
    return settings


def load_seed(path: str | Path):
    """
    Load a YAML seed document into a fresh in-memory store.

    The document maps table names (organizations, workspaces,
    workspace_links, link_requests, api_keys, members, invites) to
    lists of records.
    """
    from orglink.enterprise.storage import InMemoryEnterpriseStore

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Seed file not found: {path}")
    return InMemoryEnterpriseStore.from_seed(_read_yaml(path))


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    _loaded_settings.clear()
