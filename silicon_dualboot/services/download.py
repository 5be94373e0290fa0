"""Image and checksum manifest downloads.

Downloads resume from a ``.part`` file with an HTTP Range request, and
transient failures are retried with capped exponential backoff. Disk
operations are never retried; only network transfers are.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable, Sequence
from urllib.parse import urlparse

import aiohttp

from silicon_dualboot.config import settings
from silicon_dualboot.domain import VerificationReport, VerifyResult
from silicon_dualboot.logging import LoggerFactory, ThrottledLogger
from silicon_dualboot.storage.exceptions import (
    ImageSourceError,
    TransientNetworkError,
    VerificationFailure,
)
from silicon_dualboot.storage.progress import TerminalProgress, format_eta, format_progress_line
from silicon_dualboot.ui import console

from . import verification

log = LoggerFactory.for_download()

CHUNK_SIZE = 1024 * 1024
PART_SUFFIX = ".part"
MANIFEST_FILENAME = "SHA256SUMS"

# Statuses worth retrying; anything else in 4xx is permanent.
RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


class PermanentHTTPError(Exception):
    """HTTP error that retrying will not fix."""

    def __init__(self, url: str, status: int):
        self.url = url
        self.status = status
        super().__init__(f"HTTP {status} for {url}")


def is_url(source: str) -> bool:
    return urlparse(source).scheme in ("http", "https")


def part_path(dest: Path) -> Path:
    return dest.with_name(dest.name + PART_SUFFIX)


class Downloader:
    """HTTP client for images and manifests."""

    def __init__(
        self,
        retries: int | None = None,
        backoff_seconds: float | None = None,
        backoff_max_seconds: float | None = None,
        timeout_seconds: float | None = None,
        progress_callback: Callable[[str, float | None], None] | None = None,
    ):
        """Initialize downloader.

        Args:
            retries: Attempts per transfer before giving up
            backoff_seconds: First retry delay, doubled after each failure
            backoff_max_seconds: Upper bound for the retry delay
            timeout_seconds: Connect and read timeout (no total limit)
            progress_callback: Optional callback(line, ratio); defaults to the terminal
        """
        self.retries = max(1, retries if retries is not None else settings.get_int("download_retries", 5))
        self.backoff = (
            backoff_seconds
            if backoff_seconds is not None
            else settings.get_float("download_backoff_seconds", 1.0)
        )
        self.backoff_max = (
            backoff_max_seconds
            if backoff_max_seconds is not None
            else settings.get_float("download_backoff_max_seconds", 30.0)
        )
        timeout = (
            timeout_seconds
            if timeout_seconds is not None
            else settings.get_float("network_timeout_seconds", 30)
        )
        self.timeout = aiohttp.ClientTimeout(total=None, sock_connect=timeout, sock_read=timeout)
        self.progress_callback = progress_callback

    def backoff_delay(self, attempt: int) -> float:
        return min(self.backoff * (2 ** (attempt - 1)), self.backoff_max)

    async def download(self, url: str, dest: Path) -> Path:
        """Download url to dest, resuming a previous partial download.

        Raises:
            TransientNetworkError: After all attempts fail or on a permanent HTTP error
            ImageSourceError: If the download cannot be written locally
        """
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        last_error = ""
        for attempt in range(1, self.retries + 1):
            try:
                await self._download_once(url, dest)
                return dest
            except PermanentHTTPError as error:
                raise TransientNetworkError(url, attempt, str(error)) from error
            except (aiohttp.ClientError, asyncio.TimeoutError) as error:
                last_error = str(error) or type(error).__name__
                log.warning(f"Download attempt {attempt}/{self.retries} of {url} failed: {last_error}")
                if attempt < self.retries:
                    delay = self.backoff_delay(attempt)
                    console.p_warning(f"Download interrupted ({last_error}), retrying in {delay:g}s...")
                    await asyncio.sleep(delay)
            except OSError as error:
                # Local disk errors (full disk, permissions) are not worth retrying.
                raise ImageSourceError(str(dest), f"could not save the download: {error}") from error
        raise TransientNetworkError(url, self.retries, last_error)

    async def _download_once(self, url: str, dest: Path) -> None:
        partial = part_path(dest)
        offset = partial.stat().st_size if partial.exists() else 0
        headers = {"Range": f"bytes={offset}-"} if offset else {}

        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url, headers=headers) as resp:
                if resp.status == 416 and offset:
                    # Nothing left to fetch: the partial file is complete.
                    log.info(f"Server reports {partial.name} is already complete")
                    partial.replace(dest)
                    return
                if resp.status in RETRYABLE_STATUSES:
                    raise aiohttp.ClientResponseError(
                        resp.request_info, resp.history, status=resp.status, message=resp.reason or ""
                    )
                if resp.status not in (200, 206):
                    raise PermanentHTTPError(url, resp.status)

                if resp.status == 200:
                    if offset:
                        log.info("Server ignored the Range request, restarting download")
                    offset = 0
                    mode = "wb"
                else:
                    log.info(f"Resuming {dest.name} at byte {offset}")
                    mode = "ab"

                length = resp.content_length
                total = offset + length if length is not None else None
                await self._stream(resp, partial, mode, offset, total, dest.name)

        if total is not None and partial.stat().st_size < total:
            raise aiohttp.ClientPayloadError(
                f"Incomplete download: {partial.stat().st_size} of {total} bytes"
            )
        partial.replace(dest)
        log.info(f"Downloaded {url} to {dest}")

    async def _stream(self, resp, partial: Path, mode: str, offset: int, total, name: str) -> None:
        terminal = None if self.progress_callback else TerminalProgress()
        throttled = ThrottledLogger(log.bind(tags=["download", "progress"]))
        loop = asyncio.get_running_loop()
        started = loop.time()
        done = offset
        try:
            with open(partial, mode) as handle:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    handle.write(chunk)
                    done += len(chunk)
                    elapsed = loop.time() - started
                    rate = (done - offset) / elapsed if elapsed > 0 else None
                    eta = format_eta((total - done) / rate) if rate and total else None
                    line = format_progress_line(f"Downloading {name}", done, total, rate=rate, eta=eta)
                    ratio = done / total if total else None
                    if self.progress_callback:
                        self.progress_callback(line, ratio)
                    else:
                        terminal.update(line, ratio)
                    throttled.debug(name, line)
        finally:
            if terminal:
                terminal.finish()

    async def fetch_text(self, url: str) -> str:
        """Fetch a small text resource in a single attempt."""
        async with aiohttp.ClientSession(timeout=self.timeout) as session:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise PermanentHTTPError(url, resp.status)
                return await resp.text()

    async def fetch_manifest(self, urls: Sequence[str]) -> tuple[str | None, str | None]:
        """Try the primary manifest source, then fall back once to the next.

        Returns:
            (manifest text, url it came from), or (None, None) if every source failed
        """
        for url in list(urls)[:2]:
            try:
                text = await self.fetch_text(url)
            except (aiohttp.ClientError, asyncio.TimeoutError, PermanentHTTPError) as error:
                log.warning(f"Manifest source {url} unavailable: {error}")
                continue
            log.info(f"Fetched checksum manifest from {url}")
            return text, url
        return None, None


# ==============================================================================
# Synchronous entry points
# ==============================================================================


def fetch_image(
    source: str,
    dest_dir: Path,
    ask: Callable[[str, bool], bool],
    downloader: Downloader | None = None,
) -> Path:
    """Resolve an image source to a local file, downloading if needed.

    Args:
        source: URL or local path
        dest_dir: Directory for downloads
        ask: yes/no callback used to offer reusing an earlier download

    Raises:
        ImageSourceError: If a local path does not exist
        TransientNetworkError: If the download keeps failing
    """
    if not is_url(source):
        path = Path(source).expanduser()
        if not path.is_file():
            raise ImageSourceError(source, "file does not exist")
        console.p_info(f"Using local image {path}")
        return path

    downloader = downloader or Downloader()
    filename = Path(urlparse(source).path).name or "image.iso"
    dest = Path(dest_dir) / filename
    if dest.exists():
        if ask(f"{dest.name} was already downloaded. Reuse it?", True):
            log.info(f"Reusing existing download {dest}")
            return dest
        dest.unlink()
    elif part_path(dest).exists():
        console.p_info(f"Resuming partial download of {dest.name}")

    console.p_info(f"Downloading {source}")
    return asyncio.run(downloader.download(source, dest))


def fetch_manifest(
    urls: Sequence[str], dest_dir: Path, downloader: Downloader | None = None
) -> tuple[Path | None, str | None]:
    """Download the checksum manifest into dest_dir.

    Returns:
        (path of the saved manifest, source url), or (None, None)
    """
    downloader = downloader or Downloader()
    text, url = asyncio.run(downloader.fetch_manifest(urls))
    if text is None:
        return None, None
    path = Path(dest_dir) / MANIFEST_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path, url


def verify(
    image_path: Path,
    manifest_urls: Sequence[str],
    dest_dir: Path,
    downloader: Downloader | None = None,
) -> tuple[VerificationReport, Path | None]:
    """Verify a local image against the first reachable manifest."""
    manifest_path, url = fetch_manifest(manifest_urls, dest_dir, downloader)
    text = manifest_path.read_text(encoding="utf-8") if manifest_path else None
    console.p_info(f"Computing SHA-256 of {Path(image_path).name}...")
    terminal = TerminalProgress()
    try:
        report = verification.verify_file(
            image_path, text, manifest_url=url, progress_callback=terminal.update
        )
    finally:
        terminal.finish()
    return report, manifest_path


def require_verified(report: VerificationReport, image_path: Path, confirm_override) -> None:
    """Block on anything but a match unless the user explicitly overrides.

    Args:
        confirm_override: Callback(question) -> bool, defaulting to No

    Raises:
        VerificationFailure: If the image is unverified and not overridden
    """
    name = Path(image_path).name
    if report.result is VerifyResult.MATCH:
        console.p_success(f"Checksum verified for {name}")
        return

    if report.result is VerifyResult.MISMATCH:
        console.p_error(f"Checksum MISMATCH for {name}")
        console.p_error(f"  expected: {report.expected}")
        console.p_error(f"  actual:   {report.actual}")
        question = "The image does not match its published checksum. Write it anyway?"
        reason = "checksum mismatch"
    else:
        console.p_warning(f"No published checksum could be obtained for {name}.")
        console.p_warning(f"  actual:   {report.actual}")
        question = "The image cannot be verified. Write it anyway?"
        reason = "checksum manifest unavailable"

    if not confirm_override(question):
        raise VerificationFailure(str(image_path), reason, report.expected, report.actual)
    log.warning(f"Verification overridden by user for {name}: {reason}")
