"""Tracking configuration loader.

Weights and thresholds used by the engines live here rather than inside the
engines. A JSON file may override the defaults and a handful of environment
variables may override the file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from env_validation import get_env_float, get_env_int

_LOGGER = logging.getLogger(__name__)

CONFIG_PATH_ENV = "TRACKING_CONFIG_PATH"


class SettingsError(ValueError):
    """Raised when the tracking configuration contains invalid data."""


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class AttendanceSettings(_Section):
    late_weight: float = Field(default=0.8, ge=0.0, le=1.0)


class RiskSettings(_Section):
    stagnation_weight: float = Field(default=0.55, ge=0.0, le=1.0)
    attendance_weight: float = Field(default=0.40, ge=0.0, le=1.0)
    velocity_weight: float = Field(default=0.25, ge=0.0, le=1.0)
    coordination_weight: float = Field(default=0.15, ge=0.0, le=1.0)
    threshold: float = Field(default=70.0, ge=0.0, le=100.0)
    stagnation_horizon_days: float = Field(default=30.0, gt=0.0)
    default_planned_days: float = Field(default=60.0, gt=0.0)
    low_engagement_below: int = Field(default=30, ge=0, le=100)
    inactivity_days_above: int = Field(default=7, ge=0)
    poor_attendance_below: float = Field(default=70.0, ge=0.0, le=100.0)
    frequent_absences_from: int = Field(default=3, ge=1)


class EngagementSettings(_Section):
    recency_points: Dict[int, int] = Field(
        default_factory=lambda: {0: 30, 2: 25, 7: 15, 14: 5},
        description="Points awarded when the last activity is at most N days old.",
    )
    attendance_share: float = Field(default=0.25, ge=0.0, le=1.0)
    completion_share: float = Field(default=0.25, ge=0.0, le=1.0)
    frequency_points: Dict[float, int] = Field(
        default_factory=lambda: {1.0: 20, 0.5: 15, 0.2: 10},
        description="Points awarded when activities per day reach the key.",
    )


class CoordinationSettings(_Section):
    half_life_days: float = Field(default=60.0, gt=0.0)
    max_signal_weight: float = Field(default=0.5, gt=0.0, le=1.0)


class SchedulerSettings(_Section):
    drift_tolerance: float = Field(default=5.0, ge=0.0, le=100.0)
    default_weekly_hours: float = Field(default=35.0, gt=0.0)


class WorkerSettings(_Section):
    ingestion_workers: int = Field(default=4, ge=1)
    recompute_debounce_seconds: float = Field(default=60.0, ge=0.0)
    retry_attempts: int = Field(default=3, ge=1)
    retry_initial_delay: float = Field(default=0.5, ge=0.0)
    retry_max_delay: float = Field(default=8.0, ge=0.0)


class TrackingSettings(_Section):
    attendance: AttendanceSettings = Field(default_factory=AttendanceSettings)
    risk: RiskSettings = Field(default_factory=RiskSettings)
    engagement: EngagementSettings = Field(default_factory=EngagementSettings)
    coordination: CoordinationSettings = Field(default_factory=CoordinationSettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    workers: WorkerSettings = Field(default_factory=WorkerSettings)


# (env var, section, field, getter)
_ENV_OVERRIDES = (
    ("RISK_THRESHOLD", "risk", "threshold", get_env_float),
    ("LATE_WEIGHT", "attendance", "late_weight", get_env_float),
    ("DRIFT_TOLERANCE", "scheduler", "drift_tolerance", get_env_float),
    ("SIGNAL_HALF_LIFE_DAYS", "coordination", "half_life_days", get_env_float),
    ("INGESTION_WORKERS", "workers", "ingestion_workers", get_env_int),
    ("RECOMPUTE_DEBOUNCE_SECONDS", "workers", "recompute_debounce_seconds", get_env_float),
)


def _read_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Tracking configuration file not found: {path}")
    with path.open("r", encoding="utf-8") as fh:
        try:
            raw = json.load(fh)
        except json.JSONDecodeError as exc:
            raise SettingsError(f"Tracking configuration is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise SettingsError("Tracking configuration must contain a JSON object")
    return raw


def load_settings(path: str | Path | None = None) -> TrackingSettings:
    """Load settings from ``path`` (or ``$TRACKING_CONFIG_PATH``) plus env overrides."""

    raw: Dict[str, Any] = {}
    source = path if path is not None else os.getenv(CONFIG_PATH_ENV)
    if source:
        raw = _read_file(Path(source))
        _LOGGER.info("Loaded tracking configuration from %s", source)

    for env_name, section, key, getter in _ENV_OVERRIDES:
        try:
            value = getter(env_name)
        except ValueError as exc:
            raise SettingsError(str(exc)) from exc
        if value is None:
            continue
        raw.setdefault(section, {})
        if not isinstance(raw[section], dict):
            raise SettingsError(f"Section '{section}' must be a JSON object")
        raw[section][key] = value
        _LOGGER.debug("Environment override %s -> %s.%s=%s", env_name, section, key, value)

    try:
        return TrackingSettings.model_validate(raw)
    except ValidationError as exc:
        raise SettingsError(f"Invalid tracking configuration: {exc}") from exc


_DEFAULT: Optional[TrackingSettings] = None


def default_settings() -> TrackingSettings:
    """Return the process-wide settings, loading them on first use."""

    global _DEFAULT
    if _DEFAULT is None:
        _DEFAULT = load_settings()
    return _DEFAULT
