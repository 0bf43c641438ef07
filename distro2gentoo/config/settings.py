"""Settings storage for migration defaults."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "DISTRO2GENTOO_SETTINGS_PATH",
        "/etc/distro2gentoo/settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_FALLBACK_MIRROR = "https://gentoo.osuosl.org/"
DEFAULT_KEYSERVER = "hkps://keys.gentoo.org"
DEFAULT_RELEASE_KEY = "13EBBDBEDE7A12775DFDB1BABB572E0E2D182910"
DEFAULT_ROOT_PASSWORD = "distro2gentoo"

DEFAULT_SETTINGS: dict[str, Any] = {
    "mirror": None,
    "fallback_mirror": DEFAULT_FALLBACK_MIRROR,
    "stage3_flavour": "openrc",
    "keyserver": DEFAULT_KEYSERVER,
    "release_key": DEFAULT_RELEASE_KEY,
    "bootloader_id": "Gentoo",
    "kernel_package": "sys-kernel/gentoo-kernel-bin",
    "extra_packages": [],
    "default_root_password": DEFAULT_ROOT_PASSWORD,
    "download_dir": "/",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_SETTINGS))


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


def override_settings(**overrides: Any) -> None:
    """Apply per-run overrides (CLI flags) without persisting them."""
    for key, value in overrides.items():
        if value is not None:
            settings_store.values[key] = value


def get_list(key: str) -> list[str]:
    value = get_setting(key, [])
    if isinstance(value, str):
        return value.split()
    return list(value or [])
