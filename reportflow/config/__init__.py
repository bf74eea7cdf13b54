"""Settings loading (YAML file, environment, .env)."""

from .settings import (
    BusSettings,
    CacheSettings,
    LoggingSettings,
    MetricsSettings,
    ProviderSettings,
    RequesterSettings,
    Settings,
    StoreSettings,
    WorkerSettings,
    load_settings,
)

__all__ = [
    "BusSettings",
    "CacheSettings",
    "LoggingSettings",
    "MetricsSettings",
    "ProviderSettings",
    "RequesterSettings",
    "Settings",
    "StoreSettings",
    "WorkerSettings",
    "load_settings",
]
