"""Domain model for the dual-boot installer.

Typed records for disks, plans and persisted session state so the components
pass explicit values around instead of raw plist dictionaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


GB = 1000**3


# ==============================================================================
# Disk Domain
# ==============================================================================


@dataclass(frozen=True)
class Partition:
    """A partition (slice) on a disk, as reported by diskutil.

    Snapshot only: re-query the inventory after any external mutation.
    """

    identifier: str  # e.g., "disk0s5"
    disk_identifier: str  # e.g., "disk0"
    size_bytes: int
    content: str = ""  # partition type, e.g. "Apple_APFS", "EFI", "Microsoft Basic Data"
    volume_name: str | None = None
    mount_point: str | None = None
    filesystem: str | None = None
    apfs_container: str | None = None  # synthesized disk backed by this store
    system_critical: bool = False
    backs_running_os: bool = False

    @property
    def device_path(self) -> str:
        """Block device node (e.g., /dev/disk0s5)."""
        return f"/dev/{self.identifier}"

    @property
    def raw_device_path(self) -> str:
        """Character device node used for fast writes (e.g., /dev/rdisk0s5)."""
        return f"/dev/r{self.identifier}"

    @property
    def is_mounted(self) -> bool:
        return bool(self.mount_point)

    @property
    def size_gb(self) -> float:
        return self.size_bytes / GB

    def format_label(self) -> str:
        """Format a human-readable label for menus.

        Returns: e.g., "disk0s5 KALI (40.0GB, Microsoft Basic Data)"
        """
        name = self.volume_name or "untitled"
        details = [f"{self.size_gb:.1f}GB"]
        if self.content:
            details.append(self.content)
        if self.mount_point:
            details.append(f"mounted at {self.mount_point}")
        return f"{self.identifier} {name} ({', '.join(details)})"


@dataclass(frozen=True)
class Disk:
    """A whole disk, physical or a synthesized APFS container."""

    identifier: str  # e.g., "disk0"
    size_bytes: int
    internal: bool = True
    virtual: bool = False
    content: str = ""  # partition scheme, e.g. "GUID_partition_scheme"
    partitions: tuple[Partition, ...] = ()
    physical_stores: tuple[str, ...] = ()  # for synthesized APFS containers

    @property
    def device_path(self) -> str:
        return f"/dev/{self.identifier}"

    @property
    def size_gb(self) -> float:
        return self.size_bytes / GB


# ==============================================================================
# Plan Domain
# ==============================================================================


class InstallMode(Enum):
    """How the target partition is obtained."""

    USE_EXISTING = "use-existing"
    CREATE_NEW = "create-new"
    CONFIGURE_ONLY = "configure-only"


@dataclass(frozen=True)
class BootEntry:
    """Fields of a boot manager menu entry."""

    title: str
    volume: str
    icon: str = "/EFI/refind/icons/os_linux.png"
    loader: str = "/boot/vmlinuz"
    initrd: str | None = "/boot/initrd.img"
    options: str = "root=LABEL={volume} ro quiet splash"
    # Extra kernel options for a "Recovery Mode" submenu; None leaves it out.
    recovery_options: str | None = None


@dataclass(frozen=True)
class OSProfile:
    """An installable operating system image and how to boot it."""

    key: str
    display_name: str
    image_url: str
    manifest_urls: tuple[str, ...]
    volume_label: str
    boot_entry: BootEntry
    min_partition_gb: int | None = None
    default_partition_gb: int | None = None

    @property
    def image_filename(self) -> str:
        return self.image_url.rstrip("/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class InstallPlan:
    """The decided target and source for one run.

    Only the confirmation gate produces a plan with confirmed=True.
    """

    mode: InstallMode
    target_partition: str
    image_source: str
    volume_label: str
    profile: str
    partition_size_gb: float | None = None
    confirmed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "target_partition": self.target_partition,
            "image_source": self.image_source,
            "volume_label": self.volume_label,
            "profile": self.profile,
            "partition_size_gb": self.partition_size_gb,
            "confirmed": self.confirmed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InstallPlan:
        """Rebuild a plan from persisted JSON.

        Confirmation is per run, so a reloaded plan is always unconfirmed.

        Raises:
            KeyError: If required keys are missing
            ValueError: If mode is not a known InstallMode
        """
        return cls(
            mode=InstallMode(data["mode"]),
            target_partition=data["target_partition"],
            image_source=data["image_source"],
            volume_label=data["volume_label"],
            profile=data.get("profile", ""),
            partition_size_gb=data.get("partition_size_gb"),
            confirmed=False,
        )


# ==============================================================================
# Verification Domain
# ==============================================================================


class VerifyResult(Enum):
    MATCH = "match"
    MISMATCH = "mismatch"
    MANIFEST_UNAVAILABLE = "manifest_unavailable"


@dataclass(frozen=True)
class VerificationReport:
    """Outcome of comparing a local image against a checksum manifest."""

    result: VerifyResult
    actual: str | None = None
    expected: str | None = None
    manifest_url: str | None = None


# ==============================================================================
# Preflight Domain
# ==============================================================================


@dataclass(frozen=True)
class CheckResult:
    name: str
    passed: bool
    hard: bool
    detail: str = ""


# ==============================================================================
# Session Domain
# ==============================================================================


class InstallStep(Enum):
    """Executor states. Order is the position in the happy path."""

    PLANNED = "planned"
    FORMATTED = "formatted"
    IMAGE_WRITTEN = "image_written"
    BOOTLOADER_CONFIGURED = "bootloader_configured"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def order(self) -> int:
        return _STEP_ORDER[self]

    @property
    def is_terminal(self) -> bool:
        return self in (InstallStep.COMPLETE, InstallStep.FAILED)


_STEP_ORDER = {
    InstallStep.PLANNED: 0,
    InstallStep.FORMATTED: 1,
    InstallStep.IMAGE_WRITTEN: 2,
    InstallStep.BOOTLOADER_CONFIGURED: 3,
    InstallStep.COMPLETE: 4,
    InstallStep.FAILED: -1,
}


class PartitionState(Enum):
    """What is known about the contents of the target partition."""

    UNKNOWN = "unknown"
    FORMATTED = "formatted"
    IMAGE_WRITTEN = "image_written"
    CORRUPT = "corrupt"


@dataclass
class SessionState:
    """Progress of one install, persisted after every transition."""

    step: InstallStep
    plan: InstallPlan | None = None
    image_path: str | None = None
    manifest_path: str | None = None
    log_path: str | None = None
    partition_state: PartitionState = PartitionState.UNKNOWN
    failed_step: InstallStep | None = None
    error: str | None = None
    updated_at: str | None = None
    history: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step.value,
            "plan": self.plan.to_dict() if self.plan else None,
            "image_path": self.image_path,
            "manifest_path": self.manifest_path,
            "log_path": self.log_path,
            "partition_state": self.partition_state.value,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "error": self.error,
            "updated_at": self.updated_at,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionState:
        """Rebuild state from persisted JSON.

        Raises:
            KeyError: If required keys are missing
            ValueError: If an enum value is unknown
        """
        plan_data = data.get("plan")
        failed_step = data.get("failed_step")
        return cls(
            step=InstallStep(data["step"]),
            plan=InstallPlan.from_dict(plan_data) if plan_data else None,
            image_path=data.get("image_path"),
            manifest_path=data.get("manifest_path"),
            log_path=data.get("log_path"),
            partition_state=PartitionState(data.get("partition_state", "unknown")),
            failed_step=InstallStep(failed_step) if failed_step else None,
            error=data.get("error"),
            updated_at=data.get("updated_at"),
            history=list(data.get("history", [])),
        )
