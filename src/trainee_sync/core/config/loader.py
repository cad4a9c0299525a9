"""
Configuration loading with multi-layer merging.

Implements the configuration precedence chain:
    defaults < user config < project config < env vars

Env vars come from the process environment layered over TRAINEE_SYNC_*
keys found in user and project .env files.
"""

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .env import ENV_PREFIX, read_env_layers
from .models import SyncConfig

logger = logging.getLogger(__name__)

# Global cache to avoid reloading config multiple times per process
_config_cache: SyncConfig | None = None

# Env var suffix -> (section, field, type)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "STORE_BACKEND": ("store", "backend", str),
    "STORE_PATH": ("store", "path", str),
    "CACHE_BACKEND": ("cache", "backend", str),
    "CACHE_URL": ("cache", "url", str),
    "CACHE_TTL": ("cache", "ttl_seconds", int),
    "RETRY_MAX_ATTEMPTS": ("retry", "max_attempts", int),
    "REPAIR_MAX_ATTEMPTS": ("repair", "max_attempts", int),
    "REPAIR_MAX_AGE": ("repair", "max_age_seconds", float),
    "DEFERRED_DURABILITY": ("deferred", "durability", str),
    "MAX_RECEIVE_COUNT": ("gateway", "max_receive_count", int),
    "WORKERS": ("workers", "workers", int),
    "REQUESTS_ENABLED": ("requests", "enabled", bool),
    "LOG_LEVEL": ("logging", "level", str),
}


def get_xdg_config_home() -> Path:
    """
    Get XDG config home directory.

    Returns:
        Path to config directory (defaults to ~/.config)
    """
    if xdg_home := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_home)
    return Path.home() / ".config"


def get_user_config_path() -> Path:
    """Path to ~/.config/trainee-sync/config.json (or XDG equivalent)."""
    return get_xdg_config_home() / "trainee-sync" / "config.json"


def get_project_config_path(cwd: Path | None = None) -> Path:
    """
    Get path to project configuration file.

    Args:
        cwd: Working directory to search from (defaults to current directory)

    Returns:
        Path to .trainee-sync.json in the project root
    """
    if cwd is None:
        cwd = Path.cwd()
    return cwd / ".trainee-sync.json"


def get_env_settings(project_dir: Path | None = None) -> dict[str, str]:
    """
    TRAINEE_SYNC_* variables with .env layers beneath the process environment.

    Precedence (highest first): os.environ, project .env.local, project .env,
    user ~/.config/trainee-sync/.env.
    """
    root = project_dir or Path.cwd()
    settings = read_env_layers(
        [get_user_config_path().parent / ".env"],
        [root / ".env", root / ".env.local"],
    )
    settings.update((k, v) for k, v in os.environ.items() if k.startswith(ENV_PREFIX))
    return settings


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in `override` take precedence over values in `base`.
    Nested dicts are merged, not replaced.

    Example:
        >>> base = {"a": 1, "b": {"x": 10, "y": 20}}
        >>> override = {"b": {"y": 30, "z": 40}, "c": 3}
        >>> deep_merge(base, override)
        {'a': 1, 'b': {'x': 10, 'y': 30, 'z': 40}, 'c': 3}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any] | None:
    """
    Load a JSON file, returning None if it doesn't exist or is invalid.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON as dict, or None if file doesn't exist or can't be parsed
    """
    if not path.exists():
        return None

    try:
        with path.open() as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            logger.warning("Ignoring config at %s: top level is not an object", path)
            return None
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to parse config at %s: %s", path, e)
        return None


def _parse_env_value(raw: str, value_type: type) -> Any:
    if value_type is bool:
        return raw.lower() not in ("false", "0", "")
    return value_type(raw)


def apply_env_overrides(
    config_dict: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """
    Apply TRAINEE_SYNC_* environment variable overrides.

    Env vars have the highest precedence and override all config files.
    Values that fail to parse are logged and ignored.

    Supported env vars (prefix TRAINEE_SYNC_):
        STORE_BACKEND, STORE_PATH, CACHE_BACKEND, CACHE_URL, CACHE_TTL,
        RETRY_MAX_ATTEMPTS, REPAIR_MAX_ATTEMPTS, REPAIR_MAX_AGE,
        DEFERRED_DURABILITY, MAX_RECEIVE_COUNT, WORKERS, REQUESTS_ENABLED,
        LOG_LEVEL

    Args:
        config_dict: Configuration dictionary to override
        environ: Variables to read (defaults to os.environ)

    Returns:
        Configuration dictionary with env var overrides applied
    """
    if environ is None:
        environ = os.environ
    result = config_dict.copy()

    for suffix, (section, field, value_type) in _ENV_OVERRIDES.items():
        name = ENV_PREFIX + suffix
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            value = _parse_env_value(raw, value_type)
        except ValueError:
            logger.warning("Invalid %s value '%s', ignoring", name, raw)
            continue
        section_dict = dict(result.get(section) or {})
        section_dict[field] = value
        result[section] = section_dict

    return result


def get_default_config() -> dict[str, Any]:
    """
    Get hardcoded default configuration.

    Model defaults cover everything else; these are the values worth
    spelling out because deployments most often change them.
    """
    return {
        "store": {"backend": "memory"},
        "cache": {"backend": "memory", "ttl_seconds": 3600},
        "repair": {"max_attempts": 5, "max_age_seconds": 900.0},
    }


def load_config(project_dir: Path | None = None, use_cache: bool = True) -> SyncConfig:
    """
    Load configuration with multi-layer merging.

    Configuration precedence (highest to lowest):
        1. Environment variables (TRAINEE_SYNC_*)
        2. Project config (.trainee-sync.json)
        3. User config (~/.config/trainee-sync/config.json)
        4. Hardcoded defaults

    Args:
        project_dir: Project directory to load .trainee-sync.json from
        use_cache: If True, return cached config from previous load

    Returns:
        Validated SyncConfig instance

    Raises:
        ValidationError: If the merged config fails Pydantic validation
    """
    global _config_cache

    if use_cache and _config_cache is not None:
        return _config_cache

    merged = get_default_config()

    if user_config := load_json_file(get_user_config_path()):
        merged = deep_merge(merged, user_config)

    if project_config := load_json_file(get_project_config_path(project_dir)):
        merged = deep_merge(merged, project_config)

    merged = apply_env_overrides(merged, get_env_settings(project_dir))

    config = SyncConfig(**merged)
    _config_cache = config

    return config


def clear_cache() -> None:
    """
    Clear the cached configuration.

    Useful for testing or when config files change during execution.
    """
    global _config_cache
    _config_cache = None
