"""Configuration loading utilities."""

import json
from pathlib import Path

from loguru import logger
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from otapush.config.schema import Config

CONFIG_NAME = "otapush.json"


def _snake_root_keys(data: dict) -> dict:
    """Map camelCase root keys (``devicesDir``) onto the settings field names.

    Nested sections accept both spellings through their alias generator.
    The root keeps plain field names so ``OTAPUSH_*`` variables stay stable.
    """
    camel = {to_camel(name): name for name in Config.model_fields}
    return {camel.get(key, key): value for key, value in data.items()}


def get_config_path() -> Path:
    """Get the default configuration file path (next to the firmware project)."""
    return Path.cwd() / CONFIG_NAME


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Environment variables (``OTAPUSH_*``, ``TOKEN``) and ``.env`` are
    applied on top of the file; values passed in the file win.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            return Config(**_snake_root_keys(data))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning("Failed to load config from {}: {}", path, e)
            logger.warning("Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """
    Save configuration to file.

    Args:
        config: Configuration to save.
        config_path: Optional path to save to. Uses default if not provided.
    """
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump(by_alias=True, exclude={"token"})
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
