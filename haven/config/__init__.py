"""
Configuration package for Haven.

- settings.py: HAVEN_* environment variables resolved into Settings
"""

from haven.config.settings import (
    DeviceStorageBackend,
    MatchPolicy,
    Settings,
    SignOutPolicy,
    get_settings,
    reset_settings,
)

__all__ = [
    "DeviceStorageBackend",
    "MatchPolicy",
    "Settings",
    "SignOutPolicy",
    "get_settings",
    "reset_settings",
]
