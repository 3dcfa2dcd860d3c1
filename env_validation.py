"""Environment variable validation and management."""

import os
import logging
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "ENGINE_CONFIG_PATH": "Path to an alternative engine_config.json",
        "BATCH_INTERVAL_SECONDS": "Interval of the background recompute loop",
        "BATCH_MAX_WORKERS": "Worker threads per recompute cycle",
    }

    config_path = os.getenv("ENGINE_CONFIG_PATH")
    if config_path and not Path(config_path).is_file():
        raise EnvironmentError(f"ENGINE_CONFIG_PATH does not point to a file: {config_path}")

    interval = get_env_float("BATCH_INTERVAL_SECONDS")
    if interval is not None and interval <= 0:
        raise EnvironmentError("BATCH_INTERVAL_SECONDS must be positive")

    workers = get_env_int("BATCH_MAX_WORKERS")
    if workers is not None and workers < 1:
        raise EnvironmentError("BATCH_MAX_WORKERS must be at least 1")

    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.debug("Optional environment variable not set: %s (%s)", var, description)


def _get_env_number(name: str, cast) -> Optional[float]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    try:
        return cast(value.strip())
    except ValueError as exc:
        raise EnvironmentError(f"Invalid value for {name}: {value}") from exc


def get_env_float(name: str) -> Optional[float]:
    return _get_env_number(name, float)


def get_env_int(name: str) -> Optional[int]:
    return _get_env_number(name, int)


def describe_environment() -> Dict[str, Optional[str]]:
    return {
        name: os.getenv(name)
        for name in ("DB_PATH", "ENGINE_CONFIG_PATH", "BATCH_INTERVAL_SECONDS", "BATCH_MAX_WORKERS")
    }
