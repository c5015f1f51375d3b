"""Project-wide configuration helpers."""

from .device import DeviceSettings, load_device_settings, save_device_settings
from .env import env_bool, ensure_env_loaded

__all__ = ["env_bool", "ensure_env_loaded", "DeviceSettings", "load_device_settings", "save_device_settings"]
