"""Environment variable validation and management."""

import os
import logging
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class EnvironmentError(Exception):
    """Raised when environment variables are missing or invalid."""
    pass


_NUMERIC_VARS: Dict[str, type] = {
    "RISK_THRESHOLD": float,
    "LATE_WEIGHT": float,
    "DRIFT_TOLERANCE": float,
    "SIGNAL_HALF_LIFE_DAYS": float,
    "INGESTION_WORKERS": int,
    "RECOMPUTE_DEBOUNCE_SECONDS": float,
}


def validate_environment() -> None:
    """Validate the tracking environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "TRACKING_DB_PATH": os.getenv("TRACKING_DB_PATH") or "tracking.db",
    }

    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    invalid = []
    for var, kind in _NUMERIC_VARS.items():
        value = os.getenv(var)
        if value is None or value.strip() == "":
            continue
        try:
            kind(value)
        except ValueError:
            invalid.append(f"{var}={value!r} (expected {kind.__name__})")
    if invalid:
        raise EnvironmentError(
            f"Invalid numeric environment variables: {', '.join(invalid)}"
        )

    config_path = os.getenv("TRACKING_CONFIG_PATH")
    if config_path and not os.path.exists(config_path):
        raise EnvironmentError(f"TRACKING_CONFIG_PATH points to a missing file: {config_path}")

    if not config_path:
        logger.warning("Optional environment variable not set: TRACKING_CONFIG_PATH (tracking weights file)")


def get_env_float(name: str, default: Optional[float] = None) -> Optional[float]:
    """Get float value from environment variable; raises ValueError when malformed."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number, got {value!r}") from exc


def get_env_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Get integer value from environment variable; raises ValueError when malformed."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}") from exc
