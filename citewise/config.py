from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG_PATH = "configs/app.yaml"
CONFIG_PATH_ENV = "CITEWISE_CONFIG"


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded."""


def _resolve_env(value: Any) -> Any:
    if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
        env_key = value[2:-1]
        default = ""
        if ":-" in env_key:
            env_key, default = env_key.split(":-", 1)
        return os.getenv(env_key, default)
    if isinstance(value, dict):
        return {k: _resolve_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_env(item) for item in value]
    return value


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Missing configuration file: {path}")
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration root must be a mapping: {path}")
    return _resolve_env(data)


@lru_cache(maxsize=4)
def load_app_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load the primary application config."""

    path = Path(config_path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    return _load_yaml(path)


def section(config: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    """Walk nested mappings, returning ``{}`` for any missing level."""

    current: Any = config
    for key in keys:
        if not isinstance(current, dict):
            return {}
        current = current.get(key) or {}
    return current if isinstance(current, dict) else {}


def cache_directory(config: Optional[Dict[str, Any]] = None) -> Path:
    """Ensure the cache directory exists and return its path."""

    config = config if config is not None else load_app_config()
    cache_dir = Path(config.get("cache_dir", "./.cache"))
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir
