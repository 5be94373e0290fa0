"""Partition formatting."""

from __future__ import annotations

from silicon_dualboot.domain import Partition
from silicon_dualboot.logging import LoggerFactory

from .diskutil import DiskUtil
from .exceptions import (
    DiskInventoryError,
    FormatFailedError,
    MountError,
    SystemPartitionProtectedError,
)
from .mount import MountRegistry

log = LoggerFactory.for_disk()

FAT_LABEL_MAX = 11


def volume_label_for(filesystem: str, label: str) -> str:
    """FAT volume labels are upper case and at most 11 characters."""
    if filesystem.upper().startswith(("FAT", "MS-DOS")):
        return label.upper()[:FAT_LABEL_MAX]
    return label


def format_partition(
    partition: Partition,
    label: str,
    filesystem: str,
    diskutil: DiskUtil,
    registry: MountRegistry,
) -> str:
    """Erase a partition as a fresh volume and leave it unmounted.

    Returns:
        The volume label that was applied

    Raises:
        SystemPartitionProtectedError: If the partition is needed by macOS
        FormatFailedError: If unmounting or erasing fails
    """
    if partition.system_critical or partition.backs_running_os:
        raise SystemPartitionProtectedError(partition.identifier, "refusing to format")

    label = volume_label_for(filesystem, label)
    try:
        registry.unmount(partition.identifier)
    except (MountError, DiskInventoryError) as error:
        raise FormatFailedError(
            f"Could not unmount {partition.identifier} before formatting: {error}",
            device=partition.identifier,
        ) from error

    log.info(f"Formatting {partition.identifier} as {filesystem} '{label}'")
    try:
        diskutil.action("eraseVolume", filesystem, label, partition.identifier)
    except RuntimeError as error:
        raise FormatFailedError(
            f"Formatting {partition.identifier} failed: {error}", device=partition.identifier
        ) from error

    # eraseVolume mounts the fresh volume; the target must not stay mounted.
    registry.track(partition.identifier)
    try:
        registry.unmount(partition.identifier)
    except (MountError, DiskInventoryError) as error:
        raise FormatFailedError(
            f"Could not unmount {partition.identifier} after formatting: {error}",
            device=partition.identifier,
        ) from error
    return label
