"""Progress formatting for long-running disk and network operations."""

from __future__ import annotations

import sys


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def format_eta(seconds):
    """Format ETA in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_progress_line(
    title,
    bytes_done,
    total_bytes,
    percent=None,
    rate=None,
    eta=None,
    spinner=None,
):
    """Format progress information into a single terminal line.

    e.g. "Writing image | 1.2GB of 3.4GB  35.3% | 45.0MB/s ETA 00:48"
    """
    head = title or ""
    if spinner:
        head = f"{head} {spinner}"
    parts = [head]
    if bytes_done is not None:
        amount = human_size(bytes_done)
        if total_bytes:
            amount = f"{amount} of {human_size(total_bytes)}"
            percent = (bytes_done / total_bytes) * 100
        if percent is not None:
            amount = f"{amount} {min(percent, 100.0):5.1f}%"
        parts.append(amount)
    elif percent is not None:
        parts.append(f"{percent:5.1f}%")
    else:
        parts.append("Working...")
    if rate:
        rate_part = f"{human_size(rate)}/s"
        if eta:
            rate_part = f"{rate_part} ETA {eta}"
        parts.append(rate_part)
    return " | ".join(parts)


class TerminalProgress:
    """Renders a progress line in place on an interactive terminal."""

    def __init__(self, stream=None):
        self.stream = stream or sys.stdout
        self._width = 0

    def update(self, line, ratio=None):
        padding = " " * max(0, self._width - len(line))
        self._width = len(line)
        self.stream.write(f"\r{line}{padding}")
        self.stream.flush()

    def finish(self, line=None):
        if line is not None:
            self.update(line)
        self.stream.write("\n")
        self.stream.flush()
        self._width = 0
