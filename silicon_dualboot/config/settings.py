"""Settings storage for installer configuration."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "SILICON_DUALBOOT_SETTINGS_PATH",
        Path.home() / ".config" / "silicon-dualboot" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_WORK_ROOT = Path(tempfile.gettempdir()) / "silicon-dualboot"
DEFAULT_MIN_PARTITION_GB = 30
DEFAULT_PARTITION_GB = 40
DEFAULT_MIN_FREE_SPACE_GB = 30
DEFAULT_REFIND_VERSION = "0.14.0"
DEFAULT_REFIND_URL = (
    "https://sourceforge.net/projects/refind/files/{version}/"
    "refind-bin-{version}.zip/download"
)

DEFAULT_SETTINGS: dict[str, Any] = {
    "default_profile": "kali",
    "work_dir": str(DEFAULT_WORK_ROOT / "work"),
    "min_partition_gb": DEFAULT_MIN_PARTITION_GB,
    "default_partition_gb": DEFAULT_PARTITION_GB,
    "min_free_space_gb": DEFAULT_MIN_FREE_SPACE_GB,
    "min_macos_version": "12.3",
    "required_tools": ["diskutil", "dd"],
    "optional_tools": ["csrutil", "pv"],
    "download_retries": 5,
    "download_backoff_seconds": 1.0,
    "download_backoff_max_seconds": 30.0,
    "network_timeout_seconds": 30,
    "network_check_host": "cdimage.kali.org",
    "partition_filesystem": "FAT32",
    "refind_version": DEFAULT_REFIND_VERSION,
    "refind_url": DEFAULT_REFIND_URL,
    "profiles": {},
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


def save_settings() -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(
        json.dumps(settings_store.values, indent=2, sort_keys=True),
        encoding="utf-8",
    )


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def set_setting(key: str, value: Any) -> None:
    settings_store.values[key] = value
    save_settings()


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    value = get_setting(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def get_float(key: str, default: float = 0.0) -> float:
    value = get_setting(key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


load_settings()
