"""
Config Store

JSON-file persistence for AppConfig:
- Defaults are written on first run
- Invalid fields fall back to defaults (with a warning each)
- The normalised config is written back on every load
"""

import json
import logging
import os
from pathlib import Path
from threading import Lock
from typing import Optional, Union

from .models import AppConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = os.getenv("IMGCACHE_CONFIG", "config.json")


class ConfigIOError(Exception):
    """Config file could not be read, parsed or written."""


class ConfigStore:
    """
    Reads and writes the JSON config file.

    Usage:
        store = ConfigStore("config.json")
        config = store.load()
    """

    def __init__(self, path: Union[str, Path] = DEFAULT_CONFIG_FILE):
        self.path = Path(path)
        self._lock = Lock()

    def load(self) -> AppConfig:
        """
        Read, validate and write back the config.

        Raises:
            ConfigIOError: the file exists but cannot be read or parsed,
                or the normalised config cannot be written.
        """
        with self._lock:
            if self.path.exists():
                logger.info(f"[Config] Config file found, reading {self.path}")
                config = AppConfig.from_raw(self._read_raw())
            else:
                logger.info(f"[Config] No config file found, creating {self.path}")
                config = AppConfig()
            self._write(config)
            return config

    def reload(self) -> AppConfig:
        config = self.load()
        logger.info(f"[Config] Reloaded config:\n{dump_config(config)}")
        return config

    def save(self, config: AppConfig) -> None:
        """Persist a config snapshot."""
        with self._lock:
            self._write(config)

    def _read_raw(self) -> dict:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigIOError(f"Failed to read config {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigIOError(f"Config {self.path} must contain a JSON object")
        return raw

    def _write(self, config: AppConfig) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(dump_config(config))
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise ConfigIOError(f"Failed to write config {self.path}: {e}") from e


def dump_config(config: Optional[AppConfig]) -> str:
    """Pretty JSON for files and logs."""
    if config is None:
        return "{}"
    return json.dumps(config.to_json_dict(), indent="\t")
