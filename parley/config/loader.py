"""Configuration loading utilities."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from parley.config.schema import Config
from parley.utils.helpers import get_data_path

# Maps whose keys are user data (conversation keys, persona ids) and must not be renamed.
_VERBATIM_KEY_MAPS = {"personas", "conversations", "rules", "delta_caps", "deltaCaps", "emotion_delta_caps", "emotionDeltaCaps"}


def get_config_path() -> Path:
    """Config file location, overridable via PARLEY_CONFIG."""
    override = os.environ.get("PARLEY_CONFIG", "").strip()
    if override:
        return Path(override).expanduser()
    return get_data_path() / "config.json"


def get_data_dir() -> Path:
    return get_data_path()


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file, with PARLEY_* environment overrides.

    A missing file yields defaults. An unreadable or invalid file is logged
    and also yields defaults.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return Config(**convert_keys(data))
        except (json.JSONDecodeError, ValidationError, OSError, TypeError) as e:
            logger.warning(f"Failed to load config from {path}: {e}")
            logger.warning("Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> Path:
    """Write configuration as camelCase JSON; returns the path written."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = convert_to_camel(config.model_dump())
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    tmp_path.replace(path)
    return path


def camel_to_snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def snake_to_camel(name: str) -> str:
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


def convert_keys(data: Any, _verbatim: bool = False) -> Any:
    """Convert camelCase keys to snake_case, leaving user-keyed maps intact."""
    if isinstance(data, dict):
        converted: dict[str, Any] = {}
        for key, value in data.items():
            new_key = key if _verbatim else camel_to_snake(key)
            child_verbatim = (not _verbatim) and (key in _VERBATIM_KEY_MAPS or new_key in _VERBATIM_KEY_MAPS)
            if _verbatim:
                converted[new_key] = convert_keys(value)
            else:
                converted[new_key] = convert_keys(value, _verbatim=child_verbatim)
        return converted
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any, _verbatim: bool = False) -> Any:
    """Convert snake_case keys to camelCase, leaving user-keyed maps intact."""
    if isinstance(data, dict):
        converted: dict[str, Any] = {}
        for key, value in data.items():
            new_key = key if _verbatim else snake_to_camel(key)
            if _verbatim:
                converted[new_key] = convert_to_camel(value)
            else:
                converted[new_key] = convert_to_camel(value, _verbatim=key in _VERBATIM_KEY_MAPS)
        return converted
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data
