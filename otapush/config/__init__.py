"""Configuration module for otapush."""

from otapush.config.loader import get_config_path, load_config, save_config
from otapush.config.schema import BrokerConfig, Config, UploaderConfig

__all__ = [
    "Config",
    "BrokerConfig",
    "UploaderConfig",
    "load_config",
    "save_config",
    "get_config_path",
]
