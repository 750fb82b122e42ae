"""Config loading and validation for prompt-relay.

Loads prompt-relay.config.json, applies environment overrides, validates
required fields and numeric limits, and expands ~ in paths.
"""

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "prompt-relay.config.json"


class ConfigError(Exception):
    """Raised when configuration is invalid or missing required fields."""


REQUIRED_FIELDS = ["db_path", "automation_url"]

PATH_FIELDS = ["db_path"]

DEFAULTS: dict[str, Any] = {
    "max_project_retries": 3,
    "retry_backoff_seconds": 10,
    "automation_timeout_seconds": 30,
    "max_concurrent_per_user": 1,
    "log_retention_days": 1,
    "retention_interval_seconds": 21600,
    "queue_poll_interval": 0.5,
    "queue_max_deliveries": 5,
    "hub_outbox_size": 64,
    "stream_keepalive_seconds": 15,
    "stream_replay_limit": 100,
    "resume_on_startup": True,
}

# Environment variable -> (config key, type)
ENV_OVERRIDES: dict[str, tuple[str, type]] = {
    "PROMPT_RELAY_DB": ("db_path", str),
    "AUTOMATION_URL": ("automation_url", str),
    "LOG_RETENTION_DAYS": ("log_retention_days", int),
}

POSITIVE_FIELDS = [
    "max_project_retries",
    "automation_timeout_seconds",
    "max_concurrent_per_user",
    "log_retention_days",
    "retention_interval_seconds",
    "queue_poll_interval",
    "queue_max_deliveries",
    "hub_outbox_size",
    "stream_keepalive_seconds",
    "stream_replay_limit",
]

NON_NEGATIVE_FIELDS = ["retry_backoff_seconds"]


def load_config(
    config_path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load and validate prompt-relay.config.json.

    A missing file is not an error as long as the environment supplies
    every required field.

    Args:
        config_path: Path to config file. Defaults to ./prompt-relay.config.json.
        environ: Environment to read overrides from. Defaults to os.environ.

    Returns:
        Validated config dict with defaults applied and paths expanded.

    Raises:
        ConfigError: If the file is unreadable, a field is missing, or a value is out of range.
    """
    if config_path is None:
        config_path = Path.cwd() / CONFIG_FILENAME
    else:
        config_path = Path(config_path)

    config: dict[str, Any] = {}
    if config_path.exists():
        try:
            config = json.loads(config_path.read_text())
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {config_path}: {e}") from e
        if not isinstance(config, dict):
            raise ConfigError(f"Config in {config_path} must be a JSON object")

    _apply_env(config, os.environ if environ is None else environ)
    _validate_required(config, config_path)
    _apply_defaults(config)
    _validate_limits(config)
    _expand_paths(config)

    return config


def _apply_env(config: dict[str, Any], environ: Mapping[str, str]) -> None:
    """Override config values from environment variables."""
    for var, (key, cast) in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        try:
            config[key] = cast(value)
        except ValueError as e:
            raise ConfigError(f"Invalid value for {var}: {value!r}") from e


def _validate_required(config: dict[str, Any], config_path: Path) -> None:
    """Validate required fields are present."""
    for field in REQUIRED_FIELDS:
        if not config.get(field):
            raise ConfigError(
                f"Missing required config field: '{field}'. "
                f"Set it in {config_path} or through the environment."
            )


def _apply_defaults(config: dict[str, Any]) -> None:
    """Apply default values for optional fields."""
    for key, default in DEFAULTS.items():
        if key not in config:
            config[key] = default


def _validate_limits(config: dict[str, Any]) -> None:
    for field in POSITIVE_FIELDS:
        value = config[field]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"Config field '{field}' must be a positive number, got {value!r}")
    for field in NON_NEGATIVE_FIELDS:
        value = config[field]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ConfigError(f"Config field '{field}' must not be negative, got {value!r}")


def _expand_paths(config: dict[str, Any]) -> None:
    """Expand ~ in path fields to the user's home directory."""
    for field in PATH_FIELDS:
        if field in config and isinstance(config[field], str):
            config[field] = str(Path(config[field]).expanduser())
