"""Tests for profiles.py - built-in and configured OS profiles."""

import pytest

from silicon_dualboot import profiles
from silicon_dualboot.config import settings
from silicon_dualboot.profiles import KALI_PROFILE, UnknownProfileError, get_profile, profile_from_dict

CONFIGURED = {
    "display_name": "Kali Linux (weekly)",
    "image_url": "https://example.invalid/kali-linux-weekly-installer-arm64.iso",
    "manifest_urls": "https://example.invalid/SHA256SUMS",
    "boot_entry": {"title": "Kali Weekly"},
    "min_partition_gb": 35,
}


class TestGetProfile:
    """Tests for get_profile()."""

    def test_default_is_kali(self):
        profile = get_profile()

        assert profile is KALI_PROFILE
        assert profile.image_filename.endswith("-installer-arm64.iso")
        assert len(profile.manifest_urls) == 2
        assert profile.boot_entry.recovery_options == "single"

    def test_unknown_profile(self):
        with pytest.raises(UnknownProfileError, match="Known profiles: kali"):
            get_profile("gentoo")

    def test_configured_profile(self):
        settings.settings_store.values["profiles"] = {"kali-weekly": CONFIGURED}

        profile = get_profile("kali-weekly")

        assert profile.display_name == "Kali Linux (weekly)"
        assert profile.min_partition_gb == 35
        assert set(profiles.available_profiles()) == {"kali", "kali-weekly"}

    def test_default_profile_setting(self):
        settings.settings_store.values["profiles"] = {"kali-weekly": CONFIGURED}
        settings.settings_store.values["default_profile"] = "kali-weekly"

        assert get_profile().key == "kali-weekly"


class TestProfileFromDict:
    """Tests for profile_from_dict()."""

    def test_fills_defaults(self):
        profile = profile_from_dict("kali-weekly", CONFIGURED)

        assert profile.manifest_urls == ("https://example.invalid/SHA256SUMS",)
        assert profile.volume_label == "KALI-WEEKLY"
        assert profile.boot_entry.title == "Kali Weekly"
        assert profile.boot_entry.volume == profile.volume_label
        assert profile.default_partition_gb is None

    def test_label_is_truncated(self):
        data = dict(CONFIGURED, volume_label="AVERYLONGVOLUMELABEL")

        assert profile_from_dict("x", data).volume_label == "AVERYLONGVO"

    def test_missing_image_url(self):
        with pytest.raises(KeyError):
            profile_from_dict("broken", {"manifest_urls": []})
