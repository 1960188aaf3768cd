"""
Configuration loading for Docker Kicker.

Reads the connect-config document (container runtime connection plus reverse
proxy trust settings) and the kicker-config document (JSON array of
configuration entries), parses them into models and validates the entry list.
"""

import json
from collections import Counter
from typing import Any, List, Sequence

import structlog
from pydantic import ValidationError

from models import ConfigEntry, ConnectConfig

logger = structlog.get_logger()

MIN_KEY_LENGTH = 50


class ConfigurationError(Exception):
    """Raised when configuration cannot be loaded or is invalid"""


def _read_json(path: str) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file '{path}': {e}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Configuration file '{path}' is not valid JSON: {e}") from e


def parse_connect_config(data: Any) -> ConnectConfig:
    if data is None:
        return ConnectConfig()
    if not isinstance(data, dict):
        raise ConfigurationError("Invalid connect config.")
    try:
        return ConnectConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid connect config: {e}") from e


def parse_config_entries(data: Any) -> List[ConfigEntry]:
    if not isinstance(data, list):
        raise ConfigurationError("Invalid config.")

    entries = []
    for index, raw in enumerate(data):
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config entry #{index} is not an object.")
        try:
            entries.append(ConfigEntry.model_validate(raw))
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid config entry #{index} ('{raw.get('name', '')}'): {e}"
            ) from e
    return entries


def load_connect_config(path: str) -> ConnectConfig:
    """Load the nested {"docker": ..., "proxy": ...} connect config"""
    logger.info("Reading connect config", path=path)
    return parse_connect_config(_read_json(path))


def load_config_entries(path: str) -> List[ConfigEntry]:
    """Load the kicker configuration entries"""
    logger.info("Reading kicker config", path=path)
    return parse_config_entries(_read_json(path))


def validate_config(entries: Sequence[ConfigEntry]) -> None:
    """Validate the loaded entries; raises ConfigurationError on the first problem"""
    for entry in entries:
        if not entry.name:
            raise ConfigurationError("Missing config name.")
        if not entry.key:
            raise ConfigurationError(f"Missing key for config '{entry.name}'")
        if len(entry.key) < MIN_KEY_LENGTH:
            logger.warning(
                "Key for config is shorter than recommended",
                config=entry.name,
                min_length=MIN_KEY_LENGTH,
            )
        if not entry.image:
            raise ConfigurationError(f"Missing image for config '{entry.name}'")

    duplicate_names = [n for n, c in Counter(e.name for e in entries).items() if c > 1]
    if duplicate_names:
        raise ConfigurationError(
            f"Configuration entry names must be unique (duplicated: {', '.join(duplicate_names)})."
        )

    key_counts = Counter(e.key for e in entries)
    for entry in entries:
        if key_counts[entry.key] > 1:
            # Never echo the key itself
            raise ConfigurationError(
                f"Configuration entry keys must be unique (config '{entry.name}' shares its key)."
            )

    logger.info("Configuration appears to be valid", entries=len(entries))
