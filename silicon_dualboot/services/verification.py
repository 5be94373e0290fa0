"""SHA-256 manifests and image digests."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path

from silicon_dualboot.domain import VerificationReport, VerifyResult
from silicon_dualboot.logging import ThrottledLogger, get_logger
from silicon_dualboot.storage.progress import format_progress_line

log = get_logger(source="verify", tags=["verify"])

CHUNK_SIZE = 4 * 1024 * 1024

# "<hex>  name" or "<hex> *name" (GNU coreutils)
_GNU_LINE = re.compile(r"^(?P<digest>[0-9a-fA-F]{64})\s+\*?(?P<name>\S.*)$")
# "SHA256 (name) = <hex>" (BSD shasum --tag)
_BSD_LINE = re.compile(r"^SHA256\s*\((?P<name>.+)\)\s*=\s*(?P<digest>[0-9a-fA-F]{64})$")


def parse_manifest(text: str) -> dict[str, str]:
    """Map file names to lower-case hex digests. Unrecognised lines are ignored."""
    digests: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        match = _GNU_LINE.match(line) or _BSD_LINE.match(line)
        if not match:
            log.trace(f"Ignoring manifest line: {line!r}")
            continue
        name = match.group("name").strip()
        digests[Path(name).name] = match.group("digest").lower()
    return digests


def expected_digest(text: str, filename: str) -> str | None:
    return parse_manifest(text).get(Path(filename).name)


def sha256_file(path: Path, progress_callback=None, chunk_size: int = CHUNK_SIZE) -> str:
    """Hash a file in chunks. progress_callback receives (line, ratio)."""
    path = Path(path)
    total = path.stat().st_size
    digest = hashlib.sha256()
    done = 0
    throttled = ThrottledLogger(log.bind(tags=["verify", "progress"]))
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            digest.update(chunk)
            done += len(chunk)
            if progress_callback:
                progress_callback(
                    format_progress_line("Verifying", done, total),
                    done / total if total else None,
                )
            throttled.debug(str(path), f"Hashed {done}/{total} bytes of {path.name}")
    return digest.hexdigest()


def compare(actual: str, expected: str | None) -> VerifyResult:
    """MATCH only on case-insensitive equality of the hex digests."""
    if expected is None:
        return VerifyResult.MANIFEST_UNAVAILABLE
    if actual.strip().lower() == expected.strip().lower():
        return VerifyResult.MATCH
    return VerifyResult.MISMATCH


def verify_file(
    path: Path,
    manifest_text: str | None,
    manifest_url: str | None = None,
    progress_callback=None,
) -> VerificationReport:
    """Compare a local file against a manifest.

    A missing manifest, or one that does not list the file, gives
    MANIFEST_UNAVAILABLE. The file is still hashed so the digest can be shown.
    """
    path = Path(path)
    expected = expected_digest(manifest_text, path.name) if manifest_text else None
    if manifest_text and expected is None:
        log.warning(f"{path.name} is not listed in the manifest from {manifest_url}")
    actual = sha256_file(path, progress_callback=progress_callback)
    result = compare(actual, expected)
    log.info(f"Verification of {path.name}: {result.value} (actual {actual}, expected {expected})")
    return VerificationReport(
        result=result, actual=actual, expected=expected, manifest_url=manifest_url
    )
