"""Configuration helpers for incremental-flow-engine."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Optional

import yaml

from . import settings

PACKAGE_ROOT = Path(__file__).parent.parent.parent
LOCAL_CONFIG_PATH = PACKAGE_ROOT / "config.local.yaml"

DEFAULT_CONFIG = {
    "state_dir": str(settings.state_dir),
    "server": {
        "host": settings.server_host,
        "port": settings.server_port,
    },
    "execution": {
        "max_concurrent": settings.execution_max_concurrent,
    },
    "live": {
        "refresh_interval": settings.live_refresh_interval,
    },
}

_SECTIONS = {
    "server": {"host", "port"},
    "execution": {"max_concurrent"},
    "live": {"refresh_interval"},
}


class ConfigError(ValueError):
    """Configuration file is unreadable or invalid."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


def config_defaults() -> dict:
    """Return default configuration values."""
    return copy.deepcopy(DEFAULT_CONFIG)


def _deep_merge(base: dict, update: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_config_file(path: Path) -> Any:
    if not path.exists():
        return {}
    try:
        return yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError([f"Invalid YAML in {path}: {e}"]) from e


def load_config(config_path: Optional[Path] = None) -> dict:
    """
    Load resolved configuration (defaults merged with config file).

    Raises:
        ConfigError: the file is not valid YAML or fails validation
    """
    path = config_path or LOCAL_CONFIG_PATH
    file_config = _load_config_file(path)
    errors = validate_config_dict(file_config)
    if errors:
        raise ConfigError(errors)
    return _deep_merge(config_defaults(), file_config)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_config_dict(data: Any) -> list[str]:
    """Validate a config dict. Returns list of errors (empty = valid)."""
    errors: list[str] = []
    if not isinstance(data, dict):
        return ["Config must be a mapping/object"]

    allowed_top = {"state_dir", *_SECTIONS}
    for key in data:
        if key not in allowed_top:
            errors.append(f"Unknown config key: {key}")

    if "state_dir" in data and not isinstance(data["state_dir"], str):
        errors.append("state_dir must be a string")

    for section, allowed in _SECTIONS.items():
        if section not in data:
            continue
        if not isinstance(data[section], dict):
            errors.append(f"{section} must be an object")
            continue
        for key in data[section]:
            if key not in allowed:
                errors.append(f"Unknown {section} key: {key}")

    server = data.get("server")
    if isinstance(server, dict):
        port = server.get("port")
        if port is not None and not (_is_int(port) and 1 <= port <= 65535):
            errors.append("server.port must be an integer between 1 and 65535")
        host = server.get("host")
        if host is not None and not isinstance(host, str):
            errors.append("server.host must be a string")

    execution = data.get("execution")
    if isinstance(execution, dict):
        max_concurrent = execution.get("max_concurrent")
        if max_concurrent is not None and not (_is_int(max_concurrent) and max_concurrent >= 1):
            errors.append("execution.max_concurrent must be a positive integer")

    live = data.get("live")
    if isinstance(live, dict):
        interval = live.get("refresh_interval")
        if interval is not None and not (_is_number(interval) and interval > 0):
            errors.append("live.refresh_interval must be a positive number")

    return errors


def validate_config_file(config_path: Optional[Path] = None) -> list[str]:
    """Validate the config file. Returns list of errors (empty = valid)."""
    path = config_path or LOCAL_CONFIG_PATH
    try:
        data = _load_config_file(path)
    except ConfigError as e:
        return e.errors
    return validate_config_dict(data)
