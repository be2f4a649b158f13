"""Configuration module for rotaguard."""

from rotaguard.config.loader import get_config_path, load_config, load_rotation_config
from rotaguard.config.schema import Config, RotationConfig

__all__ = ["Config", "RotationConfig", "load_config", "load_rotation_config", "get_config_path"]
