"""Settings storage for znx configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "ZNX_SETTINGS_PATH",
        Path.home() / ".config" / "znx" / "settings.json",
    )
)

PACKAGED_ASSETS_DIR = Path(__file__).resolve().parent.parent / "assets"

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_BOOT_PARTITION_SIZE_MIB = 132
DEFAULT_UNMOUNT_ATTEMPTS = 5
DEFAULT_UNMOUNT_RETRY_DELAY = 1.0
DEFAULT_DOWNLOAD_CHUNK_SIZE = 1024 * 1024

DEFAULT_SETTINGS: dict[str, Any] = {
    "assets_dir": os.environ.get("ZNX_ASSETS_DIR", str(PACKAGED_ASSETS_DIR)),
    "boot_partition_size_mib": DEFAULT_BOOT_PARTITION_SIZE_MIB,
    "data_filesystem": "btrfs",
    "unmount_attempts": DEFAULT_UNMOUNT_ATTEMPTS,
    "unmount_retry_delay": DEFAULT_UNMOUNT_RETRY_DELAY,
    "partition_wait_seconds": 5.0,
    "zsync_command": "zsync",
    "download_chunk_size": DEFAULT_DOWNLOAD_CHUNK_SIZE,
    "progress_log_interval": 5.0,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    try:
        return float(get_setting(key, default))
    except (TypeError, ValueError):
        return default


def get_assets_dir() -> Path:
    return Path(get_setting("assets_dir") or PACKAGED_ASSETS_DIR)


load_settings()
