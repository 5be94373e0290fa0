"""Host checks that run before anything touches a disk.

Hard checks abort the run on failure. Soft checks ask whether to continue,
defaulting to No. Nothing here has side effects.
"""

from __future__ import annotations

import os
import platform
import re
import shlex
import shutil
import socket
import subprocess
import sys
from pathlib import Path
from typing import Callable, Iterator, Sequence

import psutil

from silicon_dualboot.config import settings
from silicon_dualboot.domain import CheckResult
from silicon_dualboot.logging import LoggerFactory
from silicon_dualboot.storage.exceptions import (
    EnvironmentCheckError,
    PrivilegeError,
    UserDeclinedError,
)
from silicon_dualboot.ui import console

log = LoggerFactory.for_system()

GB = 1000**3


def split_ver(version: str) -> tuple[int, ...]:
    parts = []
    for piece in re.split(r"[-,. ]", version):
        if not piece.isdigit():
            break
        parts.append(int(piece))
    return tuple(parts)


def rerun_command(argv: Sequence[str] | None = None) -> str:
    argv = list(sys.argv if argv is None else argv)
    return "sudo " + shlex.join(argv)


def reexec_with_sudo(argv: Sequence[str]) -> None:
    """Replace this process with the same command under sudo."""
    command = ["sudo", sys.executable, "-m", "silicon_dualboot.main", *argv]
    log.info(f"Re-executing with sudo: {shlex.join(command)}")
    os.execvp("sudo", command)


# ==============================================================================
# Individual checks
# ==============================================================================


def check_privileges() -> CheckResult:
    is_root = os.geteuid() == 0
    return CheckResult("privileges", is_root, hard=True, detail="" if is_root else "not running as root")


def check_operating_system() -> CheckResult:
    system = platform.system()
    return CheckResult("operating system", system == "Darwin", hard=True, detail=f"detected {system}")


def check_architecture() -> CheckResult:
    machine = platform.machine()
    return CheckResult(
        "Apple Silicon", machine == "arm64", hard=True, detail=f"detected {machine or 'unknown'}"
    )


def check_macos_version(minimum: str) -> CheckResult:
    version = platform.mac_ver()[0]
    passed = bool(version) and split_ver(version) >= split_ver(minimum)
    return CheckResult(
        "macOS version",
        passed,
        hard=True,
        detail=f"detected {version or 'unknown'}, need {minimum} or newer",
    )


def check_tools(tools: Sequence[str], hard: bool) -> CheckResult:
    missing = [tool for tool in tools if shutil.which(tool) is None]
    name = "required tools" if hard else "optional tools"
    detail = f"missing: {', '.join(missing)}" if missing else "all present"
    return CheckResult(name, not missing, hard=hard, detail=detail)


def _existing_parent(path: Path) -> Path:
    path = Path(path)
    while not path.exists() and path != path.parent:
        path = path.parent
    return path


def check_free_space(path: Path, minimum_gb: float) -> CheckResult:
    free = psutil.disk_usage(str(_existing_parent(path))).free
    return CheckResult(
        "free space",
        free >= minimum_gb * GB,
        hard=False,
        detail=f"{free / GB:.1f} GB free for downloads, {minimum_gb:g} GB recommended",
    )


def check_network(host: str, timeout: float, port: int = 443) -> CheckResult:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
    except OSError as error:
        return CheckResult("network", False, hard=False, detail=f"cannot reach {host}: {error}")
    return CheckResult("network", True, hard=False, detail=f"{host} reachable")


def check_sip() -> CheckResult:
    """System Integrity Protection status. Informational: enabled SIP is a soft failure."""
    try:
        result = subprocess.run(["csrutil", "status"], capture_output=True, text=True)
    except OSError as error:
        return CheckResult("SIP status", False, hard=False, detail=f"csrutil unavailable: {error}")
    output = result.stdout.strip()
    enabled = "enabled" in output.lower() and "disabled" not in output.lower()
    detail = (
        "System Integrity Protection is enabled; boot manager installation may need it disabled"
        if enabled
        else output or "unknown"
    )
    return CheckResult("SIP status", not enabled, hard=False, detail=detail)


# ==============================================================================
# Orchestration
# ==============================================================================


def iter_checks(work_dir: Path, network_host: str | None = None) -> Iterator[CheckResult]:
    """Yield check results lazily so a hard failure stops later checks."""
    yield check_privileges()
    yield check_operating_system()
    yield check_architecture()
    yield check_macos_version(settings.get_setting("min_macos_version", "12.3"))
    yield check_tools(settings.get_setting("required_tools", ["diskutil", "dd"]), hard=True)
    yield check_tools(settings.get_setting("optional_tools", []), hard=False)
    yield check_free_space(work_dir, settings.get_float("min_free_space_gb", 30))
    if network_host:
        yield check_network(network_host, settings.get_float("network_timeout_seconds", 30))
    yield check_sip()


def enforce(
    results,
    ask: Callable[[str, bool], bool],
    argv: Sequence[str] | None = None,
) -> list[CheckResult]:
    """Act on check results in order.

    Args:
        results: Iterable of CheckResult (consumed lazily)
        ask: yes/no callback used for soft failures
        argv: Command line to suggest when privileges are missing

    Raises:
        PrivilegeError: If not running as root
        EnvironmentCheckError: On any other hard failure
        UserDeclinedError: If the user declines to continue past a soft failure
    """
    seen = []
    for result in results:
        seen.append(result)
        log.debug(f"Check {result.name}: passed={result.passed} {result.detail}")
        if result.passed:
            console.p_success(f"  ✓ {result.name}")
            continue
        if result.hard:
            console.p_error(f"  ✗ {result.name}: {result.detail}")
            if result.name == "privileges":
                raise PrivilegeError(rerun_command(argv))
            raise EnvironmentCheckError(result.name, result.detail)
        console.p_warning(f"  ! {result.name}: {result.detail}")
        question = f"{result.name} check failed. Continue anyway?"
        if not ask(question, False):
            raise UserDeclinedError(question)
    return seen


def run_preflight(
    work_dir: Path,
    ask: Callable[[str, bool], bool],
    network_host: str | None = None,
    skip_checks: bool = False,
    argv: Sequence[str] | None = None,
) -> list[CheckResult]:
    console.p_info("Checking system requirements...")
    if skip_checks:
        console.p_warning("Skipping system checks as requested. Only privileges are verified.")
        log.warning("Preflight checks skipped by --skip-checks")
        return enforce([check_privileges()], ask, argv)
    return enforce(iter_checks(work_dir, network_host), ask, argv)
