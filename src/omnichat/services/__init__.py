"""Service layer helpers (settings)."""

from .settings import Settings, load_settings, redact_secret

__all__ = ["Settings", "load_settings", "redact_secret"]
