"""Configuration module for coverkeep."""

from .settings import (
    DatabaseSettings,
    IGDBSettings,
    ObservabilitySettings,
    ReconciliationSettings,
    Settings,
    StorageSettings,
    WorkerSettings,
    get_settings,
)

__all__ = [
    "DatabaseSettings",
    "IGDBSettings",
    "ObservabilitySettings",
    "ReconciliationSettings",
    "Settings",
    "StorageSettings",
    "WorkerSettings",
    "get_settings",
]
