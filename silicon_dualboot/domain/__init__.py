"""Domain models for the dual-boot installer."""

from __future__ import annotations

from .models import (
    BootEntry,
    CheckResult,
    Disk,
    InstallMode,
    InstallPlan,
    InstallStep,
    OSProfile,
    Partition,
    PartitionState,
    SessionState,
    VerificationReport,
    VerifyResult,
)


__all__ = [
    "BootEntry",
    "CheckResult",
    "Disk",
    "InstallMode",
    "InstallPlan",
    "InstallStep",
    "OSProfile",
    "Partition",
    "PartitionState",
    "SessionState",
    "VerificationReport",
    "VerifyResult",
]
