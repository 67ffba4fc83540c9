"""
Config Models

Pydantic model for the JSON config file. Field aliases keep the
file format compatible with existing `config.json` files.
"""

import logging
from enum import Enum
from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    """Cache population mode"""
    LOCAL = "local"      # never fetch remotely
    REMOTE = "remote"    # fetch when the cache is stale


DEFAULT_LISTEN_PORT = 8080
DEFAULT_CACHE_FOLDER = "cache"
DEFAULT_CACHE_TMP_FOLDER = "tmp"
DEFAULT_UPDATE_INTERVAL = 3
DEFAULT_MAX_CACHE_SIZE = 0  # 0 = unlimited
DEFAULT_IMAGE_QUALITY = 60
DEFAULT_FETCH_TIMEOUT = 30.0
DEFAULT_REMOTES = [
    "https://api.nyan.xyz/httpapi/sexphoto",
    "https://loliapi.com/acg",
]


class AppConfig(BaseModel):
    """Immutable per-process config snapshot."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    listen_port: int = Field(DEFAULT_LISTEN_PORT, alias="ListenPort")
    log_file_name: str = Field("", alias="LogFileName")
    mode: Mode = Field(Mode.REMOTE, alias="Mode")
    cache_folder: str = Field(DEFAULT_CACHE_FOLDER, alias="CacheFolder")
    cache_tmp_folder: str = Field(DEFAULT_CACHE_TMP_FOLDER, alias="CacheTmpFolder")
    update_interval: int = Field(DEFAULT_UPDATE_INTERVAL, alias="UpdateInterval")
    max_cache_size: int = Field(DEFAULT_MAX_CACHE_SIZE, alias="MaxCacheSize")
    image_quality: int = Field(DEFAULT_IMAGE_QUALITY, alias="ImageQuality")
    remotes: List[str] = Field(default_factory=lambda: list(DEFAULT_REMOTES), alias="Remotes")
    fetch_timeout: float = Field(DEFAULT_FETCH_TIMEOUT, alias="FetchTimeout")

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "AppConfig":
        """
        Build a config from a raw JSON dict.

        Out-of-range or wrongly typed values are replaced by their
        defaults, with one warning per field. Never raises on field values.
        """
        values: Dict[str, Any] = {}

        def take(key: str, check, default: Any, convert=None) -> None:
            value = raw.get(key)
            try:
                if value is not None and check(value):
                    values[key] = convert(value) if convert else value
                    return
            except (TypeError, ValueError):
                pass
            logger.warning(f"[Config] {key} invalid, using default value {default}")

        take("ListenPort", lambda v: _is_int(v) and 1024 <= v <= 65535, DEFAULT_LISTEN_PORT)
        if isinstance(raw.get("LogFileName"), str) and raw["LogFileName"]:
            values["LogFileName"] = raw["LogFileName"]
        else:
            logger.warning("[Config] LogFileName is empty, disabling log file")
        take("Mode", lambda v: v in (Mode.LOCAL.value, Mode.REMOTE.value), Mode.REMOTE.value, Mode)
        take("CacheFolder", _is_folder_name, DEFAULT_CACHE_FOLDER)
        take("CacheTmpFolder", _is_folder_name, DEFAULT_CACHE_TMP_FOLDER)
        take("UpdateInterval", lambda v: _is_int(v) and v > 0, DEFAULT_UPDATE_INTERVAL)
        take("MaxCacheSize", lambda v: _is_int(v) and v >= 0, DEFAULT_MAX_CACHE_SIZE)
        take("ImageQuality", lambda v: _is_int(v) and 1 <= v <= 100, DEFAULT_IMAGE_QUALITY)
        take(
            "Remotes",
            lambda v: isinstance(v, list) and len(v) > 0 and all(isinstance(r, str) and r for r in v),
            DEFAULT_REMOTES,
            list,
        )
        take(
            "FetchTimeout",
            lambda v: isinstance(v, (int, float)) and not isinstance(v, bool) and v > 0,
            DEFAULT_FETCH_TIMEOUT,
            float,
        )

        return cls(**values)

    def to_json_dict(self) -> Dict[str, Any]:
        """Dump using the file's key names."""
        return self.model_dump(by_alias=True, mode="json")

    def with_mode(self, mode: Mode) -> "AppConfig":
        return self.model_copy(update={"mode": mode})


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_folder_name(value: Any) -> bool:
    # Must stay a single URL path segment
    return (
        isinstance(value, str)
        and value.strip() != ""
        and "/" not in value
        and "\\" not in value
        and value not in (".", "..")
    )
