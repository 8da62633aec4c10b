"""taskmail core module.

Shared components used by the worker and producers:
- Configuration management
- Settings accessor
"""

from taskmail.core.config import (
    ConfigValidationError,
    DatabaseSettings,
    DeliveryBackend,
    DeliverySettings,
    Environment,
    HealthSettings,
    Settings,
    SMTPSettings,
    WorkerSettings,
)
from taskmail.core.settings import clear_settings_cache, get_settings

__all__ = [
    "ConfigValidationError",
    "DatabaseSettings",
    "DeliveryBackend",
    "DeliverySettings",
    "Environment",
    "HealthSettings",
    "SMTPSettings",
    "Settings",
    "WorkerSettings",
    "clear_settings_cache",
    "get_settings",
]
