"""
Ledger configuration.

Defaults live on LedgerSettings. A YAML file at paths.config_file() may
override them, and TASKLEDGER_* environment variables override both.
"""

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from taskledger import paths
from taskledger.errors import ValidationError

logger = logging.getLogger(__name__)

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

# env var -> settings field
ENV_OVERRIDES: dict[str, str] = {
    "TASKLEDGER_MICRO_SESSION_SECS": "micro_session_secs",
    "TASKLEDGER_RESPAWN_ON_CANCEL": "respawn_on_cancel",
    "TASKLEDGER_LOG_LEVEL": "log_level",
    "TASKLEDGER_LOG_JSON": "log_json",
}


class LedgerSettings(BaseModel):
    """Validated runtime settings."""

    micro_session_secs: int = Field(default=30, ge=0)
    """Sessions shorter than this are merged or discarded when closed."""

    respawn_on_cancel: bool = True
    """Cancelled recurring tasks respawn like completed ones."""

    log_level: str = "INFO"

    log_json: bool | None = None
    """JSON log lines. None = auto-detect (JSON when stderr is not a TTY)."""

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level: {value}")
        return level


def _load_yaml(config_path: Path) -> dict:
    if not config_path.exists():
        logger.debug("No config file at %s, using defaults", config_path)
        return {}
    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        logger.error("Failed to load config %s: %s", config_path, exc)
        return {}
    if not isinstance(data, dict):
        logger.error("Config %s is not a mapping, ignoring", config_path)
        return {}
    return data


def _env_overrides() -> dict:
    overrides = {}
    for env_var, field in ENV_OVERRIDES.items():
        raw = os.environ.get(env_var)
        if raw is not None and raw.strip() != "":
            overrides[field] = raw.strip()
    return overrides


def load_settings(config_path: Path | None = None) -> LedgerSettings:
    """
    Load settings: defaults < YAML file < environment.

    Raises:
        ValidationError: if any value fails validation
    """
    if config_path is None:
        config_path = paths.config_file()

    data = _load_yaml(config_path)
    data.update(_env_overrides())

    try:
        return LedgerSettings(**data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid settings: {exc}") from exc
