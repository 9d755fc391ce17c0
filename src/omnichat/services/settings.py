"""Settings dataclass and override helpers."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping

from ..ai.client import DEFAULT_ENDPOINT, DEFAULT_MODEL, ClientSettings

__all__ = [
    "Settings",
    "load_settings",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)

_ENV_OVERRIDES: Mapping[str, str] = {
    "OMNICHAT_API_KEY": "api_key",
    "OMNICHAT_ENDPOINT": "endpoint",
    "OMNICHAT_MODEL": "model",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "OMNICHAT_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "OMNICHAT_REQUEST_TIMEOUT": "request_timeout",
    "OMNICHAT_EMISSION_INTERVAL": "emission_interval",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "OMNICHAT_MAX_RETRIES": "max_retries",
    "OMNICHAT_MAX_ITERATIONS": "max_iterations",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}


@dataclass(slots=True)
class Settings:
    """User-configurable settings for the chat engine."""

    endpoint: str = DEFAULT_ENDPOINT
    api_key: str = ""
    model: str = DEFAULT_MODEL
    request_timeout: float = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_iterations: int = 1000
    emission_interval: float = 1.0 / 60.0
    default_headers: dict[str, str] = field(default_factory=dict)
    debug_logging: bool = False

    def client_settings(self) -> ClientSettings:
        return ClientSettings(
            endpoint=self.endpoint,
            api_key=self.api_key,
            model=self.model,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
            retry_min_seconds=self.retry_min_seconds,
            retry_max_seconds=self.retry_max_seconds,
            default_headers=dict(self.default_headers) or None,
            debug_logging=self.debug_logging,
        )

    def describe(self) -> Dict[str, Any]:
        """Settings as a dict with the API key redacted, for logging."""

        data = {item.name: getattr(self, item.name) for item in fields(self)}
        data["api_key"] = redact_secret(self.api_key)
        return data


def load_settings(
    overrides: Mapping[str, Any] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build settings from defaults, caller overrides, then ``OMNICHAT_*`` variables."""

    settings = Settings()
    if overrides:
        settings = _apply_overrides(settings, overrides, source="CLI")
    settings = _apply_env_overrides(settings, os.environ if environ is None else environ)
    return settings


def _apply_overrides(settings: Settings, overrides: Mapping[str, Any], *, source: str = "runtime") -> Settings:
    allowed = {item.name for item in fields(Settings)}
    filtered: Dict[str, Any] = {}
    for key, value in overrides.items():
        if key not in allowed or value is None:
            continue
        filtered[key] = value
    headers_override = filtered.get("default_headers")
    if isinstance(headers_override, Mapping):
        merged_headers = dict(settings.default_headers or {})
        merged_headers.update(headers_override)
        filtered["default_headers"] = merged_headers
    if filtered:
        LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
        settings = replace(settings, **filtered)
    return settings


def _apply_env_overrides(settings: Settings, environ: Mapping[str, str]) -> Settings:
    overrides: Dict[str, Any] = {}
    for env_name, field_name in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None:
            overrides[field_name] = value
    for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None:
            overrides[field_name] = value.strip().lower() in _TRUE_VALUES
    for env_name, field_name in _INT_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = int(value, 10)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
    for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None:
            continue
        try:
            overrides[field_name] = float(value)
        except ValueError:
            LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
    if overrides:
        settings = _apply_overrides(settings, overrides, source="environment")
    return settings


def redact_secret(value: str) -> str:
    stripped = (value or "").strip()
    if not stripped:
        return ""
    if len(stripped) <= 4:
        return "*" * len(stripped)
    return f"{stripped[:2]}{'*' * (len(stripped) - 4)}{stripped[-2:]}"
