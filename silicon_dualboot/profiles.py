"""Installable OS profiles.

Kali Linux ships built in. Additional profiles (or overrides of the built-in
one) come from the "profiles" key of the settings file, e.g.::

    "profiles": {
        "kali-rolling": {
            "display_name": "Kali Linux (weekly)",
            "image_url": "https://.../kali-linux-weekly-installer-arm64.iso",
            "manifest_urls": ["https://.../SHA256SUMS"],
            "volume_label": "KALI",
            "boot_entry": {"title": "Kali Linux Weekly"}
        }
    }
"""

from __future__ import annotations

from typing import Any

from silicon_dualboot.config import settings
from silicon_dualboot.domain import BootEntry, OSProfile
from silicon_dualboot.storage.exceptions import InstallerError

KALI_VERSION = "2025.1c"

KALI_PROFILE = OSProfile(
    key="kali",
    display_name=f"Kali Linux {KALI_VERSION} (arm64 installer)",
    image_url=(
        f"https://cdimage.kali.org/kali-{KALI_VERSION}/"
        f"kali-linux-{KALI_VERSION}-installer-arm64.iso"
    ),
    manifest_urls=(
        f"https://cdimage.kali.org/kali-{KALI_VERSION}/SHA256SUMS",
        f"https://kali.download/base-images/kali-{KALI_VERSION}/SHA256SUMS",
    ),
    volume_label="KALI",
    boot_entry=BootEntry(
        title="Kali Linux",
        volume="KALI",
        icon="/EFI/refind/icons/os_linux.png",
        loader="/boot/vmlinuz",
        initrd="/boot/initrd.img",
        options="root=/dev/{partition} ro quiet splash",
        recovery_options="single",
    ),
)

BUILTIN_PROFILES: dict[str, OSProfile] = {KALI_PROFILE.key: KALI_PROFILE}


class UnknownProfileError(InstallerError):
    """Raised when a profile name is neither built in nor configured."""


def profile_from_dict(key: str, data: dict[str, Any]) -> OSProfile:
    """Build a profile from a settings entry.

    Raises:
        KeyError: If image_url or manifest_urls are missing
    """
    label = str(data.get("volume_label", key.upper()))[:11]
    entry_data = dict(data.get("boot_entry") or {})
    entry_data.setdefault("title", data.get("display_name", key))
    entry_data.setdefault("volume", label)
    manifest_urls = data["manifest_urls"]
    if isinstance(manifest_urls, str):
        manifest_urls = [manifest_urls]
    return OSProfile(
        key=key,
        display_name=data.get("display_name", key),
        image_url=data["image_url"],
        manifest_urls=tuple(manifest_urls),
        volume_label=label,
        boot_entry=BootEntry(**entry_data),
        min_partition_gb=data.get("min_partition_gb"),
        default_partition_gb=data.get("default_partition_gb"),
    )


def available_profiles() -> dict[str, OSProfile]:
    profiles = dict(BUILTIN_PROFILES)
    configured = settings.get_setting("profiles") or {}
    for key, data in configured.items():
        profiles[key] = profile_from_dict(key, data)
    return profiles


def get_profile(name: str | None = None) -> OSProfile:
    name = name or settings.get_setting("default_profile", KALI_PROFILE.key)
    profiles = available_profiles()
    if name not in profiles:
        known = ", ".join(sorted(profiles))
        raise UnknownProfileError(f"Unknown profile '{name}'. Known profiles: {known}")
    return profiles[name]
