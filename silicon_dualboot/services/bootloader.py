"""rEFInd boot manager installation and menu configuration.

The menu entry for the installed OS is merged into ``EFI/refind/refind.conf``
on the EFI system partition: an entry with the same title is replaced in
place, everything else in the file is left untouched, and applying the same
entry twice yields an identical file.
"""

from __future__ import annotations

import asyncio
import re
import shutil
import zipfile
from pathlib import Path, PurePosixPath

from silicon_dualboot.config import settings
from silicon_dualboot.domain import BootEntry, Partition
from silicon_dualboot.logging import LoggerFactory
from silicon_dualboot.storage import devices
from silicon_dualboot.storage.devices import DiskInventory
from silicon_dualboot.storage.exceptions import (
    BootloaderError,
    DiskInventoryError,
    MountError,
    TransientNetworkError,
)
from silicon_dualboot.storage.mount import MountRegistry
from silicon_dualboot.ui import console

from .download import Downloader

log = LoggerFactory.for_install()

REFIND_DIR = PurePosixPath("EFI") / "refind"
REFIND_CONF = REFIND_DIR / "refind.conf"
REFIND_BINARY = "refind_aa64.efi"

BASE_CONFIG = """\
timeout 20
resolution 1920 1080
use_graphics_for osx,linux
hideui singleuser
scanfor manual,external,optical

menuentry "macOS" {
    icon /EFI/refind/icons/os_mac.icns
    volume "MacOS"
    loader /System/Library/CoreServices/boot.efi
}
"""

# Architectures whose rEFInd files are not needed on Apple Silicon.
_FOREIGN_ARCH = re.compile(r"(x64|ia32)")


def render_entry(entry: BootEntry, partition_identifier: str) -> str:
    """Render a menuentry block for the installed OS."""
    options = entry.options.format(partition=partition_identifier, volume=entry.volume)
    lines = [
        f'menuentry "{entry.title}" {{',
        f"    icon {entry.icon}",
        f'    volume "{entry.volume}"',
        f"    loader {entry.loader}",
    ]
    if entry.initrd:
        lines.append(f"    initrd {entry.initrd}")
    lines.append(f'    options "{options}"')
    if entry.recovery_options:
        lines.append('    submenuentry "Recovery Mode" {')
        lines.append(f'        add_options "{entry.recovery_options}"')
        lines.append("    }")
    lines.append("}")
    return "\n".join(lines) + "\n"


def _entry_span(lines: list[str], title: str) -> tuple[int, int] | None:
    """Line range [start, end) of the menuentry block with this title."""
    start_re = re.compile(r'^\s*menuentry\s+"?' + re.escape(title) + r'"?\s*\{')
    for start, line in enumerate(lines):
        if not start_re.match(line):
            continue
        depth = 0
        for end in range(start, len(lines)):
            depth += lines[end].count("{") - lines[end].count("}")
            if depth <= 0:
                return start, end + 1
        return start, len(lines)
    return None


def merge_entry(config_text: str, block: str, title: str) -> str:
    """Insert or replace the menuentry called title."""
    lines = config_text.splitlines()
    block_lines = block.rstrip("\n").splitlines()
    span = _entry_span(lines, title)
    if span is None:
        body = config_text.rstrip("\n")
        if body:
            return body + "\n\n" + "\n".join(block_lines) + "\n"
        return "\n".join(block_lines) + "\n"
    start, end = span
    merged = lines[:start] + block_lines + lines[end:]
    return "\n".join(merged) + "\n"


def write_config(efi_root: Path, entry: BootEntry, partition_identifier: str) -> bool:
    """Create or update refind.conf. Returns True when the file changed."""
    conf = Path(efi_root) / REFIND_CONF
    if conf.exists():
        current = conf.read_text(encoding="utf-8")
    else:
        console.p_warning("rEFInd configuration not found, creating a basic one.")
        conf.parent.mkdir(parents=True, exist_ok=True)
        current = ""
    base = current or BASE_CONFIG
    updated = merge_entry(base, render_entry(entry, partition_identifier), entry.title)
    if updated == current:
        log.info(f"{conf} already contains the '{entry.title}' entry")
        return False
    tmp = conf.with_name(conf.name + ".tmp")
    tmp.write_text(updated, encoding="utf-8")
    tmp.replace(conf)
    log.info(f"Wrote '{entry.title}' entry to {conf}")
    return True


def refind_installed(efi_root: Path) -> bool:
    return (Path(efi_root) / REFIND_DIR / REFIND_BINARY).exists()


def extract_refind(archive: Path, efi_root: Path) -> int:
    """Copy the arm64 rEFInd files from a release zip into EFI/refind.

    Returns:
        Number of files extracted
    """
    target = Path(efi_root) / REFIND_DIR
    count = 0
    with zipfile.ZipFile(archive) as bundle:
        for member in bundle.infolist():
            parts = PurePosixPath(member.filename).parts
            if member.is_dir() or "refind" not in parts[:-1]:
                continue
            relative = PurePosixPath(*parts[parts.index("refind") + 1 :])
            if ".." in relative.parts or _FOREIGN_ARCH.search(str(relative)):
                continue
            if relative.name.startswith("refind.conf"):
                continue
            dest = target / relative
            dest.parent.mkdir(parents=True, exist_ok=True)
            with bundle.open(member) as src, open(dest, "wb") as out:
                shutil.copyfileobj(src, out)
            count += 1
    if not (target / REFIND_BINARY).exists():
        raise BootloaderError(f"{archive.name} does not contain {REFIND_BINARY}")
    return count


class BootloaderConfigurator:
    """Mounts the EFI partition, installs rEFInd if needed and adds the entry."""

    def __init__(
        self,
        inventory: DiskInventory,
        registry: MountRegistry,
        work_dir: Path,
        downloader: Downloader | None = None,
    ):
        self.inventory = inventory
        self.registry = registry
        self.work_dir = Path(work_dir)
        self.downloader = downloader

    def refind_url(self) -> str:
        version = settings.get_setting("refind_version")
        return settings.get_setting("refind_url").format(version=version)

    def install_refind(self, efi_root: Path) -> None:
        url = self.refind_url()
        archive = self.work_dir / f"refind-bin-{settings.get_setting('refind_version')}.zip"
        if not archive.exists():
            console.p_info("Downloading rEFInd boot manager...")
            downloader = self.downloader or Downloader()
            asyncio.run(downloader.download(url, archive))
        try:
            count = extract_refind(archive, efi_root)
        except zipfile.BadZipFile as error:
            archive.unlink()
            raise BootloaderError(f"rEFInd archive is corrupt: {error}") from error
        console.p_success(f"Installed rEFInd ({count} files)")

    def configure(self, entry: BootEntry, target: Partition | str) -> bool:
        """
        Returns:
            True if refind.conf changed

        Raises:
            BootloaderError: If any part of the configuration fails
        """
        target_id = target.identifier if isinstance(target, Partition) else target
        try:
            efi = devices.find_efi_partition(self.inventory.refresh())
            with self.registry.mounted_volume(efi.identifier) as mount_point:
                efi_root = Path(mount_point)
                if not refind_installed(efi_root):
                    self.install_refind(efi_root)
                changed = write_config(efi_root, entry, target_id)
        except (DiskInventoryError, MountError, TransientNetworkError, OSError) as error:
            raise BootloaderError(f"Configuring the boot manager failed: {error}") from error
        return changed
