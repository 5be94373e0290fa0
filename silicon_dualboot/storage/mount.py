"""Mount and unmount volumes through diskutil.

Every mount the installer makes is recorded in a registry so an interrupted
run can unmount exactly what it mounted.
"""

from __future__ import annotations

import time
from contextlib import contextmanager

from silicon_dualboot.logging import LoggerFactory

from .diskutil import DiskUtil
from .exceptions import DiskInventoryError, MountError, UnmountFailedError

log = LoggerFactory.for_disk()

UNMOUNT_ATTEMPTS = 3
UNMOUNT_RETRY_DELAY = 1.0


class MountRegistry:
    """Tracks volumes mounted by this process."""

    def __init__(self, diskutil: DiskUtil | None = None):
        self.diskutil = diskutil or DiskUtil()
        self.mounted: list[str] = []

    def mount_point(self, identifier: str) -> str | None:
        info = self.diskutil.info(identifier)
        return info.get("MountPoint") or None

    def mount(self, identifier: str, mount_point: str | None = None) -> str:
        """Mount a volume and return where it is mounted.

        Already-mounted volumes are returned as-is and not recorded.

        Raises:
            MountError: If diskutil fails or reports no mount point afterwards
        """
        existing = self.mount_point(identifier)
        if existing:
            log.debug(f"{identifier} already mounted at {existing}")
            return existing

        args = ["mount"]
        if mount_point:
            args.extend(["-mountPoint", mount_point])
        args.append(identifier)
        try:
            self.diskutil.action(*args)
        except RuntimeError as error:
            raise MountError(f"Failed to mount {identifier}: {error}") from error

        mounted_at = self.mount_point(identifier)
        if not mounted_at:
            raise MountError(f"{identifier} reported no mount point after mounting")
        self.mounted.append(identifier)
        log.info(f"Mounted {identifier} at {mounted_at}")
        return mounted_at

    def unmount(self, identifier: str) -> None:
        """Unmount a volume, retrying and finally forcing.

        Raises:
            UnmountFailedError: If the volume stays mounted
        """
        if not self.mount_point(identifier):
            log.debug(f"{identifier} is not mounted")
            self._forget(identifier)
            return

        last_error = ""
        for attempt in range(1, UNMOUNT_ATTEMPTS + 1):
            log.debug(f"Unmount attempt {attempt}/{UNMOUNT_ATTEMPTS} for {identifier}")
            try:
                self.diskutil.action("unmount", identifier)
            except RuntimeError as error:
                last_error = str(error)
                log.debug(f"Unmount attempt {attempt} failed: {error}")
                time.sleep(UNMOUNT_RETRY_DELAY)
                continue
            self._forget(identifier)
            return

        log.warning(f"Normal unmount of {identifier} failed, forcing")
        try:
            self.diskutil.action("unmount", "force", identifier)
        except RuntimeError as error:
            raise UnmountFailedError(identifier, str(error) or last_error) from error
        self._forget(identifier)

    def track(self, identifier: str) -> None:
        """Record a volume that a diskutil action mounted on our behalf."""
        if identifier not in self.mounted:
            self.mounted.append(identifier)

    def unmount_all(self) -> list[str]:
        """Unmount everything this process mounted, newest first.

        Returns the identifiers that could not be unmounted.
        """
        failed = []
        for identifier in reversed(list(self.mounted)):
            try:
                self.unmount(identifier)
            except (MountError, DiskInventoryError) as error:
                log.error(f"Could not unmount {identifier}: {error}")
                failed.append(identifier)
        return failed

    @contextmanager
    def mounted_volume(self, identifier: str, mount_point: str | None = None):
        """Mount for the duration of the block, unmounting only if we mounted it."""
        was_mounted = bool(self.mount_point(identifier))
        path = self.mount(identifier, mount_point)
        try:
            yield path
        finally:
            if not was_mounted:
                self.unmount(identifier)

    def _forget(self, identifier: str) -> None:
        if identifier in self.mounted:
            self.mounted.remove(identifier)


mount_registry = MountRegistry()
