"""
Configuration management for the doorbell bridge.
"""

from .settings import Settings, get_settings, reload_settings, save_env_value

__all__ = [
    "Settings",
    "get_settings",
    "reload_settings",
    "save_env_value"
]
