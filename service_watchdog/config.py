"""Configuration management for the service watchdog."""

import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field


class WatchdogConfig(BaseModel):
    """Main configuration for the watchdog process."""

    # Storage
    db_path: str = Field(default="data/watchdog.db", description="SQLite database holding services and status logs")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log renderer: console or json")

    # Health checks
    probe_timeout_seconds: float = Field(default=10.0, description="Timeout for a single health probe")
    retry_delays_seconds: list[float] = Field(
        default_factory=lambda: [30.0, 30.0],
        description="Waits between consecutive probes before a failure is confirmed",
    )
    default_check_interval_ms: int = Field(default=3000, description="Interval used when a service has none")

    # Recovery
    grace_period_seconds: float = Field(default=360.0, description="Cool-down after a triggered redeploy")
    notify_timeout_seconds: float = Field(default=15.0, description="Timeout for chat and redeploy webhooks")

    # History
    snapshot_interval_seconds: int = Field(default=3600, description="Cadence of status snapshots")

    user_agent: str = Field(default="service-watchdog/0.1", description="User-Agent sent on outbound requests")


def _parse_delays(raw: str) -> list[float]:
    return [float(part) for part in raw.split(",") if part.strip()]


# env var -> (field, converter)
ENV_OVERRIDES = {
    "WATCHDOG_DB_PATH": ("db_path", str),
    "LOG_LEVEL": ("log_level", str),
    "WATCHDOG_LOG_FORMAT": ("log_format", str),
    "WATCHDOG_GRACE_PERIOD_SECONDS": ("grace_period_seconds", float),
    "WATCHDOG_SNAPSHOT_INTERVAL_SECONDS": ("snapshot_interval_seconds", int),
    "WATCHDOG_PROBE_TIMEOUT_SECONDS": ("probe_timeout_seconds", float),
    "WATCHDOG_NOTIFY_TIMEOUT_SECONDS": ("notify_timeout_seconds", float),
    "WATCHDOG_RETRY_DELAYS_SECONDS": ("retry_delays_seconds", _parse_delays),
}


def load_config(config_path: Optional[str] = None) -> WatchdogConfig:
    """Read the YAML file (if present), then let environment variables win."""
    if config_path is None:
        config_path = os.getenv("WATCHDOG_CONFIG", "config/watchdog.yaml")

    data = {}
    if os.path.exists(config_path):
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}

    for env_name, (field, convert) in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is not None:
            data[field] = convert(raw)

    return WatchdogConfig(**data)
