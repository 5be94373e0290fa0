"""Custom exceptions for installer operations.

This module defines a hierarchy of exceptions so each failure carries a
category that decides how the run ends: a clean abort, a fatal environment
error, or a destructive failure recorded in the session state.

Exception Hierarchy:
    InstallerError (base)
        ├── EnvironmentCheckError
        │   └── PrivilegeError
        ├── UserDeclinedError
        ├── VerificationFailure
        ├── ImageSourceError
        ├── TransientNetworkError
        ├── DiskInventoryError
        │   ├── DeviceNotFoundError
        │   ├── SystemPartitionProtectedError
        │   ├── InvalidPartitionSizeError
        │   └── InsufficientSpaceError
        ├── MountError
        │   └── UnmountFailedError
        ├── DestructiveOpFailure
        │   ├── FormatFailedError
        │   ├── ImageWriteError
        │   ├── ResizeFailedError
        │   └── BootloaderError
        ├── SessionStateError
        └── ResumeNotPossibleError

Usage:
    from silicon_dualboot.storage.exceptions import SystemPartitionProtectedError

    if partition.system_critical:
        raise SystemPartitionProtectedError(partition.identifier, "EFI system partition")
"""

from __future__ import annotations


class InstallerError(Exception):
    """Base exception for all installer operations."""

    exit_code = 1


class EnvironmentCheckError(InstallerError):
    """A hard preflight requirement is not met."""

    def __init__(self, check: str, detail: str):
        self.check = check
        self.detail = detail
        super().__init__(f"Environment check '{check}' failed: {detail}")


class PrivilegeError(EnvironmentCheckError):
    """The process lacks the privileges needed for disk operations."""

    def __init__(self, rerun_command: str):
        self.rerun_command = rerun_command
        super().__init__(
            "privileges",
            f"administrator privileges are required. Re-run with: {rerun_command}",
        )


class UserDeclinedError(InstallerError):
    """The user answered No at a confirmation point."""

    exit_code = 0

    def __init__(self, prompt: str = ""):
        self.prompt = prompt
        msg = "Aborted by user"
        if prompt:
            msg += f" at: {prompt}"
        super().__init__(msg)


class VerificationFailure(InstallerError):
    """The image could not be verified and no override was given."""

    def __init__(
        self,
        path: str,
        reason: str,
        expected: str | None = None,
        actual: str | None = None,
    ):
        self.path = path
        self.reason = reason
        self.expected = expected
        self.actual = actual
        super().__init__(f"Verification failed for {path}: {reason}")


class ImageSourceError(InstallerError):
    """The requested image cannot be used as an install source."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Cannot use image {source}: {reason}")


class TransientNetworkError(InstallerError):
    """A network operation kept failing after all retries."""

    def __init__(self, url: str, attempts: int, reason: str = ""):
        self.url = url
        self.attempts = attempts
        self.reason = reason
        msg = f"Network operation on {url} failed after {attempts} attempt(s)"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class DiskInventoryError(InstallerError):
    """Disk inventory could not be read or is unusable."""


class DeviceNotFoundError(DiskInventoryError):
    """Disk or partition was not found."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Device not found: {identifier}")


class SystemPartitionProtectedError(DiskInventoryError):
    """The chosen partition is required by macOS and must not be touched."""

    def __init__(self, identifier: str, reason: str = ""):
        self.identifier = identifier
        self.reason = reason
        msg = f"Refusing to use protected system partition {identifier}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class InvalidPartitionSizeError(DiskInventoryError):
    """Requested partition size is outside the allowed range."""

    def __init__(self, size_gb: float, minimum_gb: float, maximum_gb: float | None = None):
        self.size_gb = size_gb
        self.minimum_gb = minimum_gb
        self.maximum_gb = maximum_gb
        if maximum_gb is None:
            bounds = f"at least {minimum_gb:g} GB"
        else:
            bounds = f"between {minimum_gb:g} GB and {maximum_gb:g} GB"
        super().__init__(f"Invalid partition size {size_gb:g} GB: must be {bounds}")


class InsufficientSpaceError(DiskInventoryError):
    """Not enough space is available for the new partition."""

    def __init__(self, required_bytes: int, available_bytes: int, where: str = ""):
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        self.where = where
        location = f" on {where}" if where else ""
        super().__init__(
            f"Insufficient space{location}: need {required_bytes} bytes, "
            f"have {available_bytes} bytes"
        )


class MountError(InstallerError):
    """Base exception for mount-related errors."""


class UnmountFailedError(MountError):
    """Failed to unmount a volume."""

    def __init__(self, identifier: str, reason: str = ""):
        self.identifier = identifier
        self.reason = reason
        msg = f"Failed to unmount {identifier}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class DestructiveOpFailure(InstallerError):
    """A step that modifies disks failed. Never retried automatically."""

    step = "unknown"

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class FormatFailedError(DestructiveOpFailure):
    """Erasing the target partition failed."""

    step = "formatted"


class ImageWriteError(DestructiveOpFailure):
    """Writing the image onto the target partition failed."""

    step = "image_written"


class ResizeFailedError(DestructiveOpFailure):
    """Resizing the container or creating the new partition failed."""

    step = "planned"


class BootloaderError(DestructiveOpFailure):
    """Installing or configuring the boot manager failed."""

    step = "bootloader_configured"


class SessionStateError(InstallerError):
    """Persisted session state is unreadable or inconsistent."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Session state at {path} is unusable: {reason}")


class ResumeNotPossibleError(InstallerError):
    """The persisted session cannot be resumed at the requested step."""

    def __init__(self, reason: str, instruction: str = ""):
        self.reason = reason
        self.instruction = instruction
        msg = reason
        if instruction:
            msg += f". {instruction}"
        super().__init__(msg)
