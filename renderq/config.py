from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import InputValidationError
from .storage import config_get, config_items, config_set


class Settings(BaseModel):
    """Typed view over the config table."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_base: float = Field(default=2.0, gt=0)
    backoff_max_sec: float = Field(default=3600, ge=0)
    stuck_threshold_sec: float = Field(default=7200, gt=0)
    engine_timeout_sec: float = Field(default=30, gt=0)
    poll_interval: float = Field(default=1.0, gt=0)
    max_queue_depth: int = Field(default=100, ge=0)
    success_window: int = Field(default=20, ge=1)
    registry_path: Optional[str] = None
    adapters_path: Optional[str] = None


# operational flags that live in the same table
FLAGS = {"shutdown"}


def normalize_key(key: str) -> str:
    """`max-attempts` and `max_attempts` name the same setting."""
    return key.strip().replace("-", "_")


def load_settings() -> Settings:
    stored = config_items()
    values = {k: v for k, v in stored.items() if k in Settings.model_fields and v != ""}
    return Settings.model_validate(values)


def get_config(key: str) -> Optional[str]:
    return config_get(normalize_key(key))


def set_config(key: str, value: str) -> None:
    """Validate against Settings before writing, so a bad value never lands in the table."""
    key = normalize_key(key)
    if key in FLAGS:
        config_set(key, value)
        return
    if key not in Settings.model_fields:
        raise InputValidationError(f"unknown config key: {key}")
    current = load_settings().model_dump()
    current[key] = value or None
    try:
        Settings.model_validate(current)
    except ValidationError as e:
        raise InputValidationError(f"invalid value for {key}: {e.errors()[0]['msg']}") from e
    config_set(key, value)
