"""
Pytest configuration and shared fixtures for silicon-dualboot tests.

The disk fixtures describe a typical Apple Silicon layout as diskutil
reports it:

    disk0 (internal, 500 GB)
        disk0s1  EFI
        disk0s2  Apple_APFS store backing disk3 (macOS)
        disk0s3  Apple_APFS_Recovery
        disk0s4  Microsoft Basic Data "KALI" (40 GB, spare)
    disk3 (synthesized APFS container)
        disk3s1  Macintosh HD, sealed snapshot mounted at /
        disk3s5  Data, mounted at /System/Volumes/Data
    disk4 (external USB stick, 16 GB)
        disk4s1  Microsoft Basic Data "USB" mounted at /Volumes/USB
"""

import copy
from pathlib import Path
from typing import Any, Dict, List
from unittest.mock import Mock

import pytest

from silicon_dualboot.config import settings
from silicon_dualboot.domain import BootEntry, InstallMode, InstallPlan, OSProfile
from silicon_dualboot.domain.models import GB
from silicon_dualboot.storage.devices import DiskInventory, parent_disk
from silicon_dualboot.storage.mount import MountRegistry


# ==============================================================================
# Fake diskutil
# ==============================================================================


class FakeDiskUtil:
    """In-memory stand-in for storage.diskutil.DiskUtil.

    Keeps a mutable listing and per-identifier info so mount, erase and
    addPartition actions change what later queries report.
    """

    def __init__(self, listing: Dict[str, Any], infos: Dict[str, Dict[str, Any]], limits=None):
        self.listing = listing
        self.infos = infos
        self.limits = limits or {}
        self.actions: List[tuple] = []
        self.fail_actions: Dict[str, str] = {}

    def list(self) -> Dict[str, Any]:
        return copy.deepcopy(self.listing)

    def info(self, identifier: str) -> Dict[str, Any]:
        return dict(self.infos.get(identifier, {}))

    def resize_limits(self, store: str) -> Dict[str, Any]:
        return dict(self.limits)

    def action(self, *args) -> str:
        self.actions.append(args)
        verb = args[0]
        if verb in self.fail_actions:
            raise RuntimeError(self.fail_actions[verb])
        if verb == "mount":
            identifier = args[-1]
            mount_point = args[2] if args[1:2] == ("-mountPoint",) else f"/Volumes/{identifier}"
            self.infos.setdefault(identifier, {})["MountPoint"] = mount_point
        elif verb == "unmount":
            self.infos.setdefault(args[-1], {})["MountPoint"] = ""
        elif verb == "eraseVolume":
            _, _filesystem, label, identifier = args
            self.infos.setdefault(identifier, {})["MountPoint"] = f"/Volumes/{label}"
            self._partition(identifier)["VolumeName"] = label
        elif verb == "addPartition":
            _, anchor, _filesystem, label, size = args
            self._add_partition(anchor, label, int(float(size.rstrip("g")) * GB))
        elif verb == "apfs":
            _, _, store, _pool, _filesystem, label, size = args
            self._add_partition(store, label, int(float(size.rstrip("g")) * GB))
        return ""

    def mount_point(self, identifier: str) -> str:
        return self.infos.get(identifier, {}).get("MountPoint", "")

    def _disk_row(self, disk_identifier: str) -> Dict[str, Any]:
        for row in self.listing["AllDisksAndPartitions"]:
            if row["DeviceIdentifier"] == disk_identifier:
                return row
        raise KeyError(disk_identifier)

    def _partition(self, identifier: str) -> Dict[str, Any]:
        for row in self.listing["AllDisksAndPartitions"]:
            for part in row.get("Partitions", []):
                if part["DeviceIdentifier"] == identifier:
                    return part
        raise KeyError(identifier)

    def _add_partition(self, anchor: str, label: str, size: int) -> None:
        disk_id = parent_disk(anchor)
        row = self._disk_row(disk_id)
        number = len(row["Partitions"]) + 1
        row["Partitions"].append(
            {
                "DeviceIdentifier": f"{disk_id}s{number}",
                "Size": size,
                "Content": "Microsoft Basic Data",
                "VolumeName": label,
            }
        )


def build_listing() -> Dict[str, Any]:
    return {
        "AllDisksAndPartitions": [
            {
                "DeviceIdentifier": "disk0",
                "Size": 500 * GB,
                "Content": "GUID_partition_scheme",
                "Partitions": [
                    {
                        "DeviceIdentifier": "disk0s1",
                        "Size": 524288000,
                        "Content": "EFI",
                        "VolumeName": "EFI",
                    },
                    {
                        "DeviceIdentifier": "disk0s2",
                        "Size": 400 * GB,
                        "Content": "Apple_APFS",
                    },
                    {
                        "DeviceIdentifier": "disk0s3",
                        "Size": 5 * GB,
                        "Content": "Apple_APFS_Recovery",
                    },
                    {
                        "DeviceIdentifier": "disk0s4",
                        "Size": 40 * GB,
                        "Content": "Microsoft Basic Data",
                        "VolumeName": "KALI",
                    },
                ],
            },
            {
                "DeviceIdentifier": "disk3",
                "Size": 400 * GB,
                "Content": "",
                "APFSPhysicalStores": [{"DeviceIdentifier": "disk0s2"}],
                "APFSVolumes": [
                    {
                        "DeviceIdentifier": "disk3s1",
                        "Size": 12 * GB,
                        "VolumeName": "Macintosh HD",
                        "MountedSnapshots": [{"SnapshotMountPoint": "/"}],
                    },
                    {
                        "DeviceIdentifier": "disk3s5",
                        "Size": 200 * GB,
                        "VolumeName": "Data",
                        "MountPoint": "/System/Volumes/Data",
                    },
                ],
            },
            {
                "DeviceIdentifier": "disk4",
                "Size": 16 * GB,
                "Content": "FDisk_partition_scheme",
                "Partitions": [
                    {
                        "DeviceIdentifier": "disk4s1",
                        "Size": 16 * GB - 1048576,
                        "Content": "Microsoft Basic Data",
                        "VolumeName": "USB",
                        "MountPoint": "/Volumes/USB",
                    },
                ],
            },
        ]
    }


def build_infos() -> Dict[str, Dict[str, Any]]:
    return {
        "disk0": {"Internal": True, "VirtualOrPhysical": "Physical"},
        "disk3": {"Internal": True, "VirtualOrPhysical": "Virtual"},
        "disk4": {"Internal": False, "VirtualOrPhysical": "Physical"},
        "disk0s1": {"MountPoint": ""},
        "disk0s4": {"MountPoint": ""},
        "disk4s1": {"MountPoint": "/Volumes/USB"},
    }


# ==============================================================================
# Disk Fixtures
# ==============================================================================


@pytest.fixture
def disk_listing() -> Dict[str, Any]:
    """diskutil list -plist output for the reference layout."""
    return build_listing()


@pytest.fixture
def fake_diskutil() -> FakeDiskUtil:
    """Fake diskutil where shrinking macOS frees less than the unallocated space."""
    return FakeDiskUtil(
        build_listing(),
        build_infos(),
        limits={"CurrentSize": 400 * GB, "MinimumSizePreferred": 380 * GB},
    )


@pytest.fixture
def inventory(fake_diskutil) -> DiskInventory:
    return DiskInventory(fake_diskutil)


@pytest.fixture
def registry(fake_diskutil, mocker) -> MountRegistry:
    mocker.patch("silicon_dualboot.storage.mount.time.sleep")
    return MountRegistry(fake_diskutil)


# ==============================================================================
# Prompt Fixtures
# ==============================================================================


class ScriptedPrompter:
    """Prompter that answers from queues and records every question."""

    def __init__(self, yesno=(), text=(), choice=(), sizes=()):
        self.yesno_answers = list(yesno)
        self.text_answers = list(text)
        self.choice_answers = list(choice)
        self.size_answers = list(sizes)
        self.questions: List[str] = []

    def yesno(self, prompt, default=False):
        self.questions.append(prompt)
        return self.yesno_answers.pop(0) if self.yesno_answers else default

    def choice(self, prompt, options, default=None):
        self.questions.append(prompt)
        return self.choice_answers.pop(0)

    def text(self, prompt):
        self.questions.append(prompt)
        return self.text_answers.pop(0) if self.text_answers else ""

    def get_size_gb(self, prompt, default=None, minimum=None, maximum=None):
        self.questions.append(prompt)
        return self.size_answers.pop(0)


@pytest.fixture
def scripted_prompter():
    """Factory for ScriptedPrompter instances."""
    return ScriptedPrompter


# ==============================================================================
# Profile and Plan Fixtures
# ==============================================================================


@pytest.fixture
def test_profile() -> OSProfile:
    return OSProfile(
        key="testos",
        display_name="Test OS",
        image_url="https://example.invalid/images/testos-arm64.iso",
        manifest_urls=(
            "https://example.invalid/images/SHA256SUMS",
            "https://mirror.example.invalid/images/SHA256SUMS",
        ),
        volume_label="TESTOS",
        boot_entry=BootEntry(title="Test OS", volume="TESTOS"),
    )


@pytest.fixture
def confirmed_plan() -> InstallPlan:
    return InstallPlan(
        mode=InstallMode.USE_EXISTING,
        target_partition="disk0s4",
        image_source="https://example.invalid/images/testos-arm64.iso",
        volume_label="TESTOS",
        profile="testos",
        confirmed=True,
    )


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def temp_settings_file(tmp_path) -> Path:
    """Path for a temporary settings file (not created)."""
    settings_dir = tmp_path / "config"
    settings_dir.mkdir()
    return settings_dir / "settings.json"


@pytest.fixture(autouse=True)
def reset_settings(tmp_path, monkeypatch):
    """Every test starts from default settings stored under tmp_path."""
    monkeypatch.setattr(settings, "SETTINGS_PATH", tmp_path / "settings" / "settings.json")
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


# ==============================================================================
# Subprocess Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_run(mocker) -> Mock:
    """Mock subprocess.run returning success with empty output."""
    mock = mocker.patch("subprocess.run")
    mock.return_value = Mock(returncode=0, stdout="", stderr="")
    return mock
