"""Disk inventory built from diskutil plists.

Lists whole disks and their partitions and marks the ones macOS needs to
boot so they can never be offered as install targets.
"""

from __future__ import annotations

import re
from typing import Any, Iterable

from silicon_dualboot.domain import Disk, Partition
from silicon_dualboot.logging import LoggerFactory

from .diskutil import DiskUtil
from .exceptions import DeviceNotFoundError, DiskInventoryError

log = LoggerFactory.for_disk()

IDENTIFIER_RE = re.compile(r"^disk\d+(s\d+)*$")

# Partition types macOS or the firmware cannot boot without.
CRITICAL_CONTENT = frozenset(
    {
        "EFI",
        "Apple_APFS_ISC",
        "Apple_APFS_Recovery",
        "Apple_Boot",
    }
)

SYSTEM_MOUNT_ROOT = "/"
SYSTEM_MOUNT_PREFIX = "/System/Volumes/"

# GPT overhead: protective MBR + header + 32 entry sectors at the start,
# backup table at the end.
GPT_START_BYTES = 40 * 512
GPT_END_BYTES = 34 * 512
ALIGNMENT = 4096


def align_down(value: int, align: int) -> int:
    return value - (value % align)


def is_valid_identifier(value: Any) -> bool:
    return isinstance(value, str) and bool(IDENTIFIER_RE.match(value))


def parent_disk(identifier: str) -> str:
    """disk0s5 -> disk0"""
    match = re.match(r"^(disk\d+)", identifier)
    return match.group(1) if match else identifier


def _volume_mount_points(volume: dict) -> list[str]:
    points = []
    if volume.get("MountPoint"):
        points.append(volume["MountPoint"])
    for snapshot in volume.get("MountedSnapshots") or []:
        if isinstance(snapshot, dict) and snapshot.get("SnapshotMountPoint"):
            points.append(snapshot["SnapshotMountPoint"])
    return points


def _is_system_mount(mount_point: str) -> bool:
    return mount_point == SYSTEM_MOUNT_ROOT or mount_point.startswith(SYSTEM_MOUNT_PREFIX)


def _size(row: dict) -> int | None:
    value = row.get("Size")
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


class DiskInventory:
    """Queries diskutil and builds immutable Disk snapshots."""

    def __init__(self, diskutil: DiskUtil | None = None):
        self.diskutil = diskutil or DiskUtil()
        self._disks: list[Disk] | None = None

    @property
    def disks(self) -> list[Disk]:
        if self._disks is None:
            self._disks = self.list_disks()
        return self._disks

    def refresh(self) -> list[Disk]:
        """Re-query diskutil. Required after any external disk mutation."""
        self._disks = self.list_disks()
        return self._disks

    def list_disks(self) -> list[Disk]:
        """Return every disk with its partitions, system partitions flagged.

        Raises:
            DiskInventoryError: If the diskutil output has an unexpected shape
                or no disks are found at all
        """
        listing = self.diskutil.list()
        rows = listing.get("AllDisksAndPartitions")
        if not isinstance(rows, list):
            raise DiskInventoryError(
                "diskutil list output has no AllDisksAndPartitions array"
            )

        valid_rows = []
        for row in rows:
            if not isinstance(row, dict) or not is_valid_identifier(row.get("DeviceIdentifier")):
                ident = row.get("DeviceIdentifier") if isinstance(row, dict) else row
                log.warning(f"Skipping disk row without a valid identifier: {ident!r}")
                continue
            if _size(row) is None:
                log.warning(f"Skipping disk {row['DeviceIdentifier']}: missing or invalid size")
                continue
            valid_rows.append(row)

        if not valid_rows:
            raise DiskInventoryError("No disks found")

        critical_stores, running_os_stores = self._system_stores(valid_rows)

        disks = []
        for row in valid_rows:
            identifier = row["DeviceIdentifier"]
            info = self.diskutil.info(identifier)
            stores = tuple(
                store["DeviceIdentifier"]
                for store in row.get("APFSPhysicalStores") or []
                if isinstance(store, dict) and is_valid_identifier(store.get("DeviceIdentifier"))
            )
            virtual = info.get("VirtualOrPhysical") == "Virtual" or bool(stores)
            if virtual:
                partitions = self._apfs_volumes(identifier, row)
            else:
                partitions = self._partitions(
                    identifier, row, critical_stores, running_os_stores
                )
            disk = Disk(
                identifier=identifier,
                size_bytes=_size(row),
                internal=bool(info.get("Internal", False)),
                virtual=virtual,
                content=row.get("Content") or "",
                partitions=tuple(partitions),
                physical_stores=stores,
            )
            log.debug(
                f"Disk {disk.identifier}: {disk.size_gb:.1f}GB "
                f"internal={disk.internal} virtual={disk.virtual} "
                f"partitions={[p.identifier for p in disk.partitions]}"
            )
            disks.append(disk)
        return disks

    def _system_stores(self, rows: Iterable[dict]) -> tuple[set[str], set[str]]:
        """Physical stores behind containers that hold macOS system volumes."""
        critical: set[str] = set()
        running_os: set[str] = set()
        for row in rows:
            stores = [
                store.get("DeviceIdentifier")
                for store in row.get("APFSPhysicalStores") or []
                if isinstance(store, dict)
            ]
            if not stores:
                continue
            mount_points = []
            for volume in row.get("APFSVolumes") or []:
                if isinstance(volume, dict):
                    mount_points.extend(_volume_mount_points(volume))
            if any(_is_system_mount(point) for point in mount_points):
                critical.update(stores)
            if SYSTEM_MOUNT_ROOT in mount_points:
                running_os.update(stores)
        return critical, running_os

    def _partitions(
        self,
        disk_identifier: str,
        row: dict,
        critical_stores: set[str],
        running_os_stores: set[str],
    ) -> list[Partition]:
        partitions = []
        for part in row.get("Partitions") or []:
            if not isinstance(part, dict) or not is_valid_identifier(part.get("DeviceIdentifier")):
                ident = part.get("DeviceIdentifier") if isinstance(part, dict) else part
                log.warning(f"Skipping partition row without a valid identifier: {ident!r}")
                continue
            size = _size(part)
            if size is None:
                log.warning(f"Skipping partition {part['DeviceIdentifier']}: missing or invalid size")
                continue
            identifier = part["DeviceIdentifier"]
            content = part.get("Content") or ""
            mount_point = part.get("MountPoint") or None
            backs_running_os = identifier in running_os_stores or mount_point == SYSTEM_MOUNT_ROOT
            system_critical = (
                content in CRITICAL_CONTENT
                or identifier in critical_stores
                or backs_running_os
                or (mount_point is not None and _is_system_mount(mount_point))
            )
            partitions.append(
                Partition(
                    identifier=identifier,
                    disk_identifier=disk_identifier,
                    size_bytes=size,
                    content=content,
                    volume_name=part.get("VolumeName") or None,
                    mount_point=mount_point,
                    system_critical=system_critical,
                    backs_running_os=backs_running_os,
                )
            )
        return partitions

    def _apfs_volumes(self, disk_identifier: str, row: dict) -> list[Partition]:
        """APFS volumes of a synthesized container. Never selectable targets."""
        volumes = []
        for volume in row.get("APFSVolumes") or []:
            if not isinstance(volume, dict) or not is_valid_identifier(volume.get("DeviceIdentifier")):
                log.warning(f"Skipping APFS volume row without a valid identifier in {disk_identifier}")
                continue
            mount_points = _volume_mount_points(volume)
            volumes.append(
                Partition(
                    identifier=volume["DeviceIdentifier"],
                    disk_identifier=disk_identifier,
                    size_bytes=_size(volume) or 0,
                    content="Apple_APFS_Volume",
                    volume_name=volume.get("VolumeName") or None,
                    mount_point=mount_points[0] if mount_points else None,
                    apfs_container=disk_identifier,
                    system_critical=any(_is_system_mount(point) for point in mount_points),
                    backs_running_os=SYSTEM_MOUNT_ROOT in mount_points,
                )
            )
        return volumes


# ==============================================================================
# Queries over a disk snapshot
# ==============================================================================


def all_partitions(disks: Iterable[Disk]) -> list[Partition]:
    return [part for disk in disks for part in disk.partitions]


def selectable_partitions(disks: Iterable[Disk]) -> list[Partition]:
    """Partitions that may be offered as install targets."""
    return [
        part
        for disk in disks
        if not disk.virtual
        for part in disk.partitions
        if not part.system_critical and not part.backs_running_os
    ]


def find_disk(disks: Iterable[Disk], identifier: str) -> Disk:
    for disk in disks:
        if disk.identifier == identifier:
            return disk
    raise DeviceNotFoundError(identifier)


def find_partition(disks: Iterable[Disk], identifier: str) -> Partition:
    identifier = identifier.removeprefix("/dev/")
    for part in all_partitions(disks):
        if part.identifier == identifier:
            return part
    raise DeviceNotFoundError(identifier)


def find_efi_partition(disks: Iterable[Disk]) -> Partition:
    """EFI system partition on the internal boot disk.

    Raises:
        DeviceNotFoundError: If no EFI partition exists
    """
    candidates = [
        part
        for disk in sorted(disks, key=lambda d: (not d.internal, d.identifier))
        if not disk.virtual
        for part in disk.partitions
        if part.content == "EFI"
    ]
    if not candidates:
        raise DeviceNotFoundError("EFI")
    return candidates[0]


def running_os_store(disks: Iterable[Disk]) -> Partition | None:
    """APFS physical store of the container the running macOS boots from."""
    for part in all_partitions(disks):
        if part.backs_running_os and not part.apfs_container:
            return part
    return None


def get_disk_usable_range(disk: Disk) -> tuple[int, int]:
    # GPT overhead aligned to 4K
    start = GPT_START_BYTES
    end = align_down(disk.size_bytes - GPT_END_BYTES, ALIGNMENT)
    return start, end


def free_space_on_disk(disk: Disk) -> int:
    """Unallocated bytes on a physical disk, ignoring fragmentation."""
    start, end = get_disk_usable_range(disk)
    used = sum(part.size_bytes for part in disk.partitions)
    return max(0, end - start - used)
