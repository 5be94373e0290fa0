"""Tests for services/bootloader.py - rEFInd installation and menu entries."""

import zipfile
from unittest.mock import AsyncMock, Mock

import pytest

from silicon_dualboot.config import settings
from silicon_dualboot.domain import BootEntry
from silicon_dualboot.services import bootloader
from silicon_dualboot.services.bootloader import (
    BASE_CONFIG,
    REFIND_BINARY,
    BootloaderConfigurator,
    extract_refind,
    merge_entry,
    render_entry,
    write_config,
)
from silicon_dualboot.storage.exceptions import BootloaderError

ENTRY = BootEntry(title="Test OS", volume="TESTOS")

EXISTING_CONFIG = """\
timeout 5

menuentry "macOS" {
    volume "MacOS"
    loader /System/Library/CoreServices/boot.efi
}

menuentry "Test OS" {
    volume "OLD"
    loader /boot/old
}

menuentry "Windows" {
    loader /EFI/Microsoft/Boot/bootmgfw.efi
}
"""


@pytest.fixture
def efi_root(tmp_path):
    path = tmp_path / "efi"
    path.mkdir()
    return path


def _refind_zip(path, names):
    with zipfile.ZipFile(path, "w") as bundle:
        for name in names:
            bundle.writestr(name, f"contents of {name}")
    return path


class TestRenderEntry:
    """Tests for render_entry()."""

    def test_default_entry(self):
        block = render_entry(ENTRY, "disk0s5")

        assert block.splitlines() == [
            'menuentry "Test OS" {',
            "    icon /EFI/refind/icons/os_linux.png",
            '    volume "TESTOS"',
            "    loader /boot/vmlinuz",
            "    initrd /boot/initrd.img",
            '    options "root=LABEL=TESTOS ro quiet splash"',
            "}",
        ]

    def test_without_initrd(self):
        entry = BootEntry(title="Test OS", volume="TESTOS", initrd=None, options="root=/dev/{partition}")

        block = render_entry(entry, "disk0s5")

        assert "initrd" not in block
        assert 'options "root=/dev/disk0s5"' in block

    def test_recovery_submenu(self):
        entry = BootEntry(title="Test OS", volume="TESTOS", recovery_options="single")

        block = render_entry(entry, "disk0s5")

        assert block.splitlines()[-4:] == [
            '    submenuentry "Recovery Mode" {',
            '        add_options "single"',
            "    }",
            "}",
        ]


class TestMergeEntry:
    """Tests for merge_entry()."""

    def test_appends_new_entry(self):
        block = render_entry(ENTRY, "disk0s5")

        merged = merge_entry(BASE_CONFIG, block, ENTRY.title)

        assert merged.startswith(BASE_CONFIG.rstrip("\n"))
        assert merged.endswith(block)

    def test_replaces_entry_in_place(self):
        block = render_entry(ENTRY, "disk0s5")

        merged = merge_entry(EXISTING_CONFIG, block, ENTRY.title)

        assert merged.count('menuentry "Test OS"') == 1
        assert 'volume "OLD"' not in merged
        assert merged.index('"macOS"') < merged.index('"Test OS"') < merged.index('"Windows"')
        assert "timeout 5" in merged

    def test_is_idempotent(self):
        block = render_entry(ENTRY, "disk0s5")

        once = merge_entry(EXISTING_CONFIG, block, ENTRY.title)
        twice = merge_entry(once, block, ENTRY.title)

        assert once == twice

    def test_empty_config(self):
        block = render_entry(ENTRY, "disk0s5")

        assert merge_entry("", block, ENTRY.title) == block

    def test_replaces_entry_with_submenu(self):
        entry = BootEntry(title="Test OS", volume="TESTOS", recovery_options="single")
        with_submenu = merge_entry(EXISTING_CONFIG, render_entry(entry, "disk0s5"), entry.title)

        merged = merge_entry(with_submenu, render_entry(ENTRY, "disk0s5"), ENTRY.title)

        assert "submenuentry" not in merged
        assert merged == merge_entry(EXISTING_CONFIG, render_entry(ENTRY, "disk0s5"), ENTRY.title)
        assert 'menuentry "Windows"' in merged


class TestWriteConfig:
    """Tests for write_config()."""

    def test_creates_basic_config(self, efi_root):
        assert write_config(efi_root, ENTRY, "disk0s5") is True

        text = (efi_root / "EFI" / "refind" / "refind.conf").read_text()
        assert 'menuentry "macOS"' in text
        assert 'menuentry "Test OS"' in text

    def test_second_write_changes_nothing(self, efi_root):
        write_config(efi_root, ENTRY, "disk0s5")
        conf = efi_root / "EFI" / "refind" / "refind.conf"
        before = conf.read_text()

        assert write_config(efi_root, ENTRY, "disk0s5") is False
        assert conf.read_text() == before

    def test_preserves_other_entries(self, efi_root):
        conf = efi_root / "EFI" / "refind" / "refind.conf"
        conf.parent.mkdir(parents=True)
        conf.write_text(EXISTING_CONFIG)

        write_config(efi_root, ENTRY, "disk0s5")

        text = conf.read_text()
        assert 'menuentry "Windows"' in text
        assert 'volume "TESTOS"' in text
        assert not conf.with_name("refind.conf.tmp").exists()


class TestExtractRefind:
    """Tests for extract_refind()."""

    def test_copies_arm64_files_only(self, tmp_path, efi_root):
        archive = _refind_zip(
            tmp_path / "refind.zip",
            [
                "refind-bin-0.14.2/refind/refind_aa64.efi",
                "refind-bin-0.14.2/refind/refind_x64.efi",
                "refind-bin-0.14.2/refind/drivers_aa64/ext4_aa64.efi",
                "refind-bin-0.14.2/refind/drivers_x64/ext4_x64.efi",
                "refind-bin-0.14.2/refind/icons/os_linux.png",
                "refind-bin-0.14.2/refind/refind.conf-sample",
                "refind-bin-0.14.2/docs/README.txt",
            ],
        )

        count = extract_refind(archive, efi_root)

        target = efi_root / "EFI" / "refind"
        assert count == 3
        assert (target / REFIND_BINARY).exists()
        assert (target / "drivers_aa64" / "ext4_aa64.efi").exists()
        assert (target / "icons" / "os_linux.png").exists()
        assert not (target / "refind_x64.efi").exists()
        assert not (target / "refind.conf-sample").exists()

    def test_archive_without_arm64_binary(self, tmp_path, efi_root):
        archive = _refind_zip(tmp_path / "refind.zip", ["refind-bin/refind/refind_x64.efi"])

        with pytest.raises(BootloaderError, match=REFIND_BINARY):
            extract_refind(archive, efi_root)


class TestBootloaderConfigurator:
    """Tests for BootloaderConfigurator.configure()."""

    @pytest.fixture
    def configurator(self, inventory, registry, tmp_path):
        return BootloaderConfigurator(inventory, registry, tmp_path / "work")

    def _mount_efi_at(self, fake_diskutil, efi_root):
        original = fake_diskutil.action

        def action(*args):
            result = original(*args)
            if args[0] == "mount":
                fake_diskutil.infos["disk0s1"]["MountPoint"] = str(efi_root)
            return result

        fake_diskutil.action = action

    def test_mounts_configures_and_unmounts(self, configurator, fake_diskutil, efi_root):
        (efi_root / "EFI" / "refind").mkdir(parents=True)
        (efi_root / "EFI" / "refind" / REFIND_BINARY).write_bytes(b"efi")
        self._mount_efi_at(fake_diskutil, efi_root)

        assert configurator.configure(ENTRY, "disk0s5") is True

        assert fake_diskutil.actions == [("mount", "disk0s1"), ("unmount", "disk0s1")]
        assert 'menuentry "Test OS"' in (efi_root / "EFI" / "refind" / "refind.conf").read_text()

    def test_installs_refind_when_missing(self, configurator, fake_diskutil, efi_root, tmp_path):
        fake_diskutil.infos["disk0s1"]["MountPoint"] = str(efi_root)
        work_dir = tmp_path / "work"
        work_dir.mkdir()

        def fake_download(url, dest):
            _refind_zip(dest, ["refind-bin/refind/refind_aa64.efi"])
            return dest

        configurator.downloader = Mock()
        configurator.downloader.download = AsyncMock(side_effect=fake_download)

        configurator.configure(ENTRY, "disk0s5")

        configurator.downloader.download.assert_awaited_once()
        assert bootloader.refind_installed(efi_root)
        assert fake_diskutil.actions == []

    def test_corrupt_archive_is_removed(self, configurator, fake_diskutil, efi_root, tmp_path):
        fake_diskutil.infos["disk0s1"]["MountPoint"] = str(efi_root)
        work_dir = tmp_path / "work"
        work_dir.mkdir()
        archive = work_dir / f"refind-bin-{settings.get_setting('refind_version')}.zip"
        archive.write_bytes(b"not a zip")

        with pytest.raises(BootloaderError, match="corrupt"):
            configurator.configure(ENTRY, "disk0s5")

        assert not archive.exists()

    def test_mount_failure_becomes_bootloader_error(self, configurator, fake_diskutil):
        fake_diskutil.fail_actions["mount"] = "Volume EFI on disk0s1 failed to mount"

        with pytest.raises(BootloaderError, match="failed to mount"):
            configurator.configure(ENTRY, "disk0s5")
