"""
App Config Module

JSON-file configuration for the image cache service.
"""

from .models import AppConfig, Mode
from .config_store import ConfigStore, ConfigIOError, dump_config

__all__ = [
    "AppConfig",
    "Mode",
    "ConfigStore",
    "ConfigIOError",
    "dump_config",
]
