"""Decide which partition the install targets.

Either an existing partition is chosen, or a new one is carved out of
unallocated space or out of the macOS APFS container. Both paths pass the
confirmation gate before anything is modified, and the resulting plan is the
only thing the executor accepts.
"""

from __future__ import annotations

import math

from silicon_dualboot.config import settings
from silicon_dualboot.domain import Disk, InstallMode, InstallPlan, OSProfile, Partition
from silicon_dualboot.domain.models import GB
from silicon_dualboot.logging import LoggerFactory, operation_context
from silicon_dualboot.storage import devices
from silicon_dualboot.storage.devices import DiskInventory
from silicon_dualboot.storage.diskutil import DiskUtil
from silicon_dualboot.storage.erase import volume_label_for
from silicon_dualboot.storage.exceptions import (
    DiskInventoryError,
    InsufficientSpaceError,
    InvalidPartitionSizeError,
    ResizeFailedError,
    SystemPartitionProtectedError,
)
from silicon_dualboot.storage.progress import human_size
from silicon_dualboot.ui import console
from silicon_dualboot.ui.prompts import ConfirmationGate

log = LoggerFactory.for_disk()


class SpaceSource:
    """Where a new partition's space comes from."""

    FREE = "free"
    RESIZE = "resize"

    def __init__(self, kind: str, disk: Disk, anchor: Partition, available_bytes: int, current_bytes: int = 0):
        self.kind = kind
        self.disk = disk
        self.anchor = anchor  # partition to add after, or the APFS store to shrink
        self.available_bytes = available_bytes
        self.current_bytes = current_bytes

    def __repr__(self) -> str:
        return (
            f"SpaceSource({self.kind}, {self.anchor.identifier}, "
            f"available={self.available_bytes})"
        )


class PartitionPlanner:
    def __init__(
        self,
        inventory: DiskInventory,
        gate: ConfirmationGate,
        profile: OSProfile,
        diskutil: DiskUtil | None = None,
        filesystem: str | None = None,
    ):
        self.inventory = inventory
        self.gate = gate
        self.profile = profile
        self.diskutil = diskutil or inventory.diskutil
        self.filesystem = filesystem or settings.get_setting("partition_filesystem", "FAT32")

    @property
    def volume_label(self) -> str:
        return volume_label_for(self.filesystem, self.profile.volume_label)

    @property
    def minimum_gb(self) -> float:
        if self.profile.min_partition_gb is not None:
            return float(self.profile.min_partition_gb)
        return settings.get_float("min_partition_gb", 30)

    @property
    def default_gb(self) -> float:
        if self.profile.default_partition_gb is not None:
            return float(self.profile.default_partition_gb)
        return settings.get_float("default_partition_gb", 40)

    # ------------------------------------------------------------------
    # Existing partition
    # ------------------------------------------------------------------

    def validate_existing(self, identifier: str) -> Partition:
        """
        Raises:
            DeviceNotFoundError: If no such partition exists
            SystemPartitionProtectedError: If macOS needs the partition
            DiskInventoryError: If the identifier names an APFS volume
        """
        partition = devices.find_partition(self.inventory.disks, identifier)
        if partition.backs_running_os:
            raise SystemPartitionProtectedError(partition.identifier, "backs the running macOS")
        if partition.system_critical:
            reason = partition.content or "macOS system partition"
            raise SystemPartitionProtectedError(partition.identifier, reason)
        if partition.apfs_container:
            raise DiskInventoryError(
                f"{partition.identifier} is an APFS volume inside {partition.apfs_container}, "
                "not a partition"
            )
        return partition

    def plan_existing(self, identifier: str, image_source: str) -> InstallPlan:
        """Validate and confirm an existing partition as the target.

        Raises:
            DeviceNotFoundError, SystemPartitionProtectedError: Invalid target
            UserDeclinedError: If the user does not confirm twice
        """
        partition = self.validate_existing(identifier)
        if partition.size_gb < self.minimum_gb:
            console.p_warning(
                f"{partition.identifier} is {partition.size_gb:.1f} GB, below the recommended "
                f"{self.minimum_gb:g} GB."
            )
        details = [partition.format_label()]
        if partition.is_mounted:
            details.append(f"It is mounted at {partition.mount_point} and will be unmounted.")
        self.gate.confirm_destructive(
            f"Install {self.profile.display_name} onto {partition.identifier}",
            partition.identifier,
            details,
        )
        plan = InstallPlan(
            mode=InstallMode.USE_EXISTING,
            target_partition=partition.identifier,
            image_source=image_source,
            volume_label=self.volume_label,
            profile=self.profile.key,
            confirmed=True,
        )
        log.info(f"Planned install onto existing partition {partition.identifier}")
        return plan

    # ------------------------------------------------------------------
    # New partition
    # ------------------------------------------------------------------

    def find_space(self) -> SpaceSource:
        """Locate space for a new partition on the internal boot disk.

        Unallocated space is preferred; otherwise the APFS container that
        holds macOS is shrunk.
        """
        disks = self.inventory.disks
        store = devices.running_os_store(disks)
        if store is None:
            raise DiskInventoryError("Could not find the APFS container of the running macOS")
        disk = devices.find_disk(disks, store.disk_identifier)

        free = devices.free_space_on_disk(disk)
        limits = self.diskutil.resize_limits(store.identifier)
        current = int(limits.get("CurrentSize", store.size_bytes))
        minimum = int(limits.get("MinimumSizePreferred", current))
        shrinkable = max(0, current - minimum)
        log.debug(
            f"Space on {disk.identifier}: free={free} store={store.identifier} "
            f"current={current} min_preferred={minimum}"
        )

        if free >= self.minimum_gb * GB and free >= shrinkable:
            last = disk.partitions[-1] if disk.partitions else store
            return SpaceSource(SpaceSource.FREE, disk, last, free)
        return SpaceSource(SpaceSource.RESIZE, disk, store, shrinkable, current)

    def validate_size(self, size_gb: float, source: SpaceSource) -> None:
        available_gb = source.available_bytes / GB
        if size_gb < self.minimum_gb:
            raise InvalidPartitionSizeError(size_gb, self.minimum_gb, round(available_gb, 1))
        if size_gb * GB > source.available_bytes:
            raise InsufficientSpaceError(int(size_gb * GB), source.available_bytes, source.disk.identifier)

    def plan_new(self, size_gb: float, image_source: str, source: SpaceSource | None = None) -> InstallPlan:
        """Create a new partition of size_gb and plan the install onto it.

        Raises:
            InvalidPartitionSizeError: Size below the minimum
            InsufficientSpaceError: Size above the available space
            UserDeclinedError: If the user does not confirm twice
            ResizeFailedError: If diskutil fails; never retried
        """
        source = source or self.find_space()
        self.validate_size(size_gb, source)
        size_bytes = int(size_gb * GB)
        label = self.volume_label

        if source.kind == SpaceSource.RESIZE:
            new_pool = source.current_bytes - size_bytes
            action = (
                f"Shrink the macOS container {source.anchor.identifier} from "
                f"{human_size(source.current_bytes)} to {human_size(new_pool)} and create "
                f"a {size_gb:g} GB {self.filesystem} partition '{label}'"
            )
            args = [
                "apfs",
                "resizeContainer",
                source.anchor.identifier,
                f"{new_pool}B",
                self.filesystem,
                label,
                f"{size_gb:g}g",
            ]
        else:
            action = (
                f"Create a {size_gb:g} GB {self.filesystem} partition '{label}' "
                f"after {source.anchor.identifier}"
            )
            args = ["addPartition", source.anchor.identifier, self.filesystem, label, f"{size_gb:g}g"]

        self.gate.confirm_destructive(
            action,
            source.anchor.identifier,
            ["Back up your Mac before continuing."],
        )

        before = {part.identifier for part in source.disk.partitions}
        with operation_context("partition", disk=source.disk.identifier, size_gb=size_gb):
            try:
                self.diskutil.action(*args)
            except RuntimeError as error:
                raise ResizeFailedError(
                    f"Creating the new partition failed: {error}", device=source.anchor.identifier
                ) from error

        partition = self._find_new_partition(source.disk.identifier, label, before)
        console.p_success(f"Created {partition.identifier} ({partition.size_gb:.1f} GB)")
        return InstallPlan(
            mode=InstallMode.CREATE_NEW,
            target_partition=partition.identifier,
            image_source=image_source,
            volume_label=label,
            profile=self.profile.key,
            partition_size_gb=size_gb,
            confirmed=True,
        )

    def _find_new_partition(self, disk_identifier: str, label: str, before: set[str]) -> Partition:
        disks = self.inventory.refresh()
        disk = devices.find_disk(disks, disk_identifier)
        new_parts = [part for part in disk.partitions if part.identifier not in before]
        for part in new_parts:
            if part.volume_name == label:
                return part
        if len(new_parts) == 1:
            return new_parts[0]
        raise DiskInventoryError(
            f"The new partition '{label}' was not found on {disk_identifier} after creating it"
        )


# ==============================================================================
# Interactive selection
# ==============================================================================


def choose_partition(prompter, disks) -> str:
    """Let the user pick one of the selectable partitions."""
    candidates = devices.selectable_partitions(disks)
    if not candidates:
        raise DiskInventoryError("No partitions are available as install targets")
    console.p_question("Choose the partition to install onto:")
    index = prompter.choice("Partition", [part.format_label() for part in candidates])
    return candidates[index].identifier


def choose_size(prompter, planner: PartitionPlanner, source: SpaceSource) -> float:
    """Ask for a partition size until a valid answer is given."""
    # Round down so the advertised maximum always fits.
    maximum = math.floor(source.available_bytes / GB * 10) / 10
    if maximum < planner.minimum_gb:
        raise InsufficientSpaceError(
            int(planner.minimum_gb * GB), source.available_bytes, source.disk.identifier
        )
    console.p_info(
        f"Up to {maximum:g} GB is available on {source.disk.identifier}. "
        f"Minimum is {planner.minimum_gb:g} GB."
    )
    default = min(planner.default_gb, maximum)
    while True:
        size = prompter.get_size_gb(
            "New partition size in GB (or 'min', 'max', '50%')",
            default=default,
            minimum=planner.minimum_gb,
            maximum=maximum,
        )
        if size is None:
            console.p_error("Invalid size.")
            continue
        try:
            planner.validate_size(size, source)
        except (InvalidPartitionSizeError, InsufficientSpaceError) as error:
            console.p_error(str(error))
            continue
        return size
