"""Environment variable validation and management."""

import os
import logging
from pathlib import Path
from typing import Dict

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration environment variables are invalid."""
    pass


def validate_environment() -> None:
    """Apply defaults and validate configuration variables.

    Raises ConfigError if validation fails.
    """
    defaults = {
        "DB_PATH": "data.db",
        "AGGREGATION_FAN_OUT": "false",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars: Dict[str, str] = {
        "TAXONOMY_CODES_PATH": "Path to an alternative taxonomy code catalogue",
    }

    codes_path = os.getenv("TAXONOMY_CODES_PATH")
    if codes_path and not Path(codes_path).is_file():
        raise ConfigError(f"TAXONOMY_CODES_PATH does not point to a file: {codes_path}")

    fan_out = os.getenv("AGGREGATION_FAN_OUT", "")
    if fan_out.strip().lower() not in _TRUE_VALUES | _FALSE_VALUES:
        raise ConfigError(f"Invalid boolean for AGGREGATION_FAN_OUT: {fan_out}")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.debug("Optional environment variable not set: %s (%s)", var, description)


_TRUE_VALUES = {"1", "true", "yes", "on", "enabled"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def get_env_int(name: str, default: int) -> int:
    """Get integer value from environment variable, falling back on bad input."""
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, value)
        return default
