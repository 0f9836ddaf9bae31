"""Configuration for binding and discovery timing.

Settings come from ``PEERBIND_*`` environment variables, an optional JSON
file, and process-wide overrides applied before any bind call.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BINDING_TIMEOUT_MS = 4000
DEFAULT_RETRY_INTERVAL_MS = 50


class IpcSettings(BaseSettings):
    """Timing and fault-reporting settings consumed by binding and exposure."""
    binding_timeout_ms: int = Field(default=DEFAULT_BINDING_TIMEOUT_MS, gt=0)  # total discovery wait
    retry_interval_ms: int = Field(default=DEFAULT_RETRY_INTERVAL_MS, gt=0)  # re-check period while discovering
    sanitize_faults: bool = True  # redact secrets from fault messages sent to peers

    model_config = SettingsConfigDict(env_prefix="PEERBIND_")

    @property
    def binding_timeout_seconds(self) -> float:
        return self.binding_timeout_ms / 1000.0

    @property
    def retry_interval_seconds(self) -> float:
        return self.retry_interval_ms / 1000.0


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    return data


def load_settings(config_path: Path | None = None) -> IpcSettings:
    """
    Load settings from a JSON file, falling back to environment and defaults.

    Args:
        config_path: Optional path to a JSON file with camelCase or snake_case keys.

    Returns:
        Loaded settings object.
    """
    if config_path is not None and Path(config_path).exists():
        try:
            with open(config_path) as f:
                data = json.load(f)
            return IpcSettings(**convert_keys(data))
        except (json.JSONDecodeError, ValueError, TypeError) as e:
            raise ValueError(f"Failed to load peerbind settings from {config_path}: {e}") from e
    return IpcSettings()


_lock = threading.RLock()
_settings: IpcSettings | None = None


def get_settings() -> IpcSettings:
    """Process-wide settings, loaded on first use."""
    global _settings
    with _lock:
        if _settings is None:
            _settings = load_settings()
        return _settings


def configure(settings: IpcSettings) -> None:
    """Replace the process-wide settings."""
    global _settings
    with _lock:
        _settings = settings


def set_binding_timeout(millis: int) -> None:
    """Set how long bind calls wait for the other side to expose an API."""
    configure(get_settings().model_copy(update={"binding_timeout_ms": _positive_ms(millis)}))


def set_retry_interval(millis: int) -> None:
    """Set how often a pending bind re-checks for a registration."""
    configure(get_settings().model_copy(update={"retry_interval_ms": _positive_ms(millis)}))


def reset_settings() -> None:
    """Drop the process-wide settings so the next access reloads them."""
    global _settings
    with _lock:
        _settings = None


def _positive_ms(millis: int) -> int:
    value = int(millis)
    if value <= 0:
        raise ValueError(f"milliseconds must be positive, got {millis}")
    return value
