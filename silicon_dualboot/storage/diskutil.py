"""Thin wrapper around macOS diskutil.

Queries always use ``-plist`` and are parsed with plistlib so callers work
with typed dictionaries rather than scraped text.
"""

from __future__ import annotations

import plistlib
import subprocess
from xml.parsers.expat import ExpatError

from silicon_dualboot.logging import LoggerFactory

from .command_runners import run_checked_command
from .exceptions import DiskInventoryError

log = LoggerFactory.for_disk()

DISKUTIL = "diskutil"


class DiskUtil:
    """Runs diskutil queries and actions."""

    def get(self, *args) -> dict:
        """Run a diskutil query that produces a plist and parse it.

        Raises:
            DiskInventoryError: If diskutil fails or the output is not a plist dict
        """
        command = [DISKUTIL, *args]
        log.debug(f"get: {' '.join(command)}")
        try:
            result = subprocess.run(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=True)
        except (OSError, subprocess.CalledProcessError) as error:
            stderr = getattr(error, "stderr", b"") or b""
            detail = stderr.decode("utf-8", "replace").strip() or str(error)
            raise DiskInventoryError(f"diskutil {' '.join(args)} failed: {detail}") from error
        try:
            data = plistlib.loads(result.stdout)
        except (plistlib.InvalidFileException, ExpatError, ValueError) as error:
            raise DiskInventoryError(
                f"diskutil {' '.join(args)} returned unparseable output: {error}"
            ) from error
        if not isinstance(data, dict):
            raise DiskInventoryError(
                f"diskutil {' '.join(args)} returned {type(data).__name__}, expected a dictionary"
            )
        return data

    def action(self, *args) -> str:
        """Run a diskutil action.

        Raises:
            RuntimeError: If diskutil exits non-zero
        """
        log.info(f"run: {DISKUTIL} {' '.join(args)}")
        output = run_checked_command([DISKUTIL, *args])
        if output:
            log.debug(f"diskutil output: {output.strip()}")
        return output

    def list(self) -> dict:
        return self.get("list", "-plist")

    def info(self, identifier: str) -> dict:
        return self.get("info", "-plist", identifier)

    def resize_limits(self, store: str) -> dict:
        return self.get("apfs", "resizeContainer", store, "limits", "-plist")
