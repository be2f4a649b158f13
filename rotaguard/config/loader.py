"""Configuration loading utilities."""

import json
import re
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import ValidationError

from rotaguard.config.schema import Config, RotationConfig

PLUGIN_KEY = "core-rotation"


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".rotaguard" / "config.json"


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    first, *rest = name.split("_")
    return first + "".join(word.capitalize() for word in rest)


def convert_keys(data: Any) -> Any:
    """Recursively convert dict keys from camelCase to snake_case."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Recursively convert dict keys from snake_case to camelCase."""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def _read_json(path: Path) -> dict[str, Any] | None:
    try:
        with open(path) as f:
            data = json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to read config from {path}: {e}")
        return None
    return data if isinstance(data, dict) else None


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or return defaults.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()
    data = _read_json(path)
    if data is None:
        return Config()
    try:
        return Config.model_validate(convert_keys(data))
    except ValidationError as e:
        logger.warning(f"Invalid config in {path}, using defaults: {e}")
        return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """Save configuration to file with camelCase keys."""
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = convert_to_camel(config.model_dump(mode="json"))
    with open(path, "w") as f:
        json.dump(data, f, indent=2)


def extract_plugin_section(raw: dict[str, Any]) -> dict[str, Any] | None:
    """Find the rotation plugin block in an openclaw.json-style document."""
    plugins = raw.get("plugins")
    if not isinstance(plugins, dict):
        return None
    entries = plugins.get("entries")
    section = entries.get(PLUGIN_KEY) if isinstance(entries, dict) else None
    if section is None:
        section = plugins.get(PLUGIN_KEY)
    return section if isinstance(section, dict) else None


def load_rotation_config(path: Path) -> RotationConfig:
    """
    Load RotationConfig from either a bare plugin config.json or a host
    openclaw.json containing a ``core-rotation`` plugin block.

    Nested ``cooldown`` and ``circuitBreaker`` blocks are merged over the
    defaults field by field. Missing or invalid files yield defaults.
    """
    raw = _read_json(path)
    if raw is None:
        return RotationConfig()

    section = extract_plugin_section(raw)
    data = convert_keys(section if section is not None else raw)
    if not isinstance(data, dict):
        return RotationConfig()

    defaults = RotationConfig().model_dump()
    merged = {**defaults, **data}
    for nested in ("cooldown", "circuit_breaker"):
        override = data.get(nested)
        merged[nested] = {**defaults[nested], **(override if isinstance(override, dict) else {})}

    try:
        return RotationConfig.model_validate(merged)
    except ValidationError as e:
        logger.warning(f"Invalid rotation config in {path}, using defaults: {e}")
        return RotationConfig()
