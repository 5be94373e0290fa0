"""Command execution utilities with progress tracking."""

from __future__ import annotations

import re
import select
import subprocess
import time

from silicon_dualboot.logging import ThrottledLogger, get_logger

from .progress import TerminalProgress, format_eta, format_progress_line

log = get_logger(source="command", tags=["command"])


def run_command(command, check=True, log_output=True):
    """Run a command, logging the command line and its output."""
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(command, check=check, text=True, capture_output=True)
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    log.debug(f"Command completed with return code {result.returncode}")
    return result


def run_checked_command(command, input_text=None):
    """Run a command and raise RuntimeError if it fails."""
    log.debug(f"Running command: {' '.join(command)}")
    result = subprocess.run(
        command,
        input=input_text,
        text=True,
        capture_output=True,
    )
    if result.returncode != 0:
        stderr = result.stderr.strip()
        stdout = result.stdout.strip()
        message = stderr or stdout or "Command failed"
        raise RuntimeError(f"Command failed ({' '.join(command)}): {message}")
    return result.stdout


_BYTES_RE = re.compile(r"(\d+)\s+bytes")
_PERCENT_RE = re.compile(r"(\d+(?:\.\d+)?)%")
_RATE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(MiB|MB)/s")


def parse_rate(line):
    """Return bytes per second from a 'MB/s' or 'MiB/s' token, or None."""
    match = _RATE_RE.search(line)
    if not match:
        return None
    multiplier = 1024 * 1024 if match.group(2) == "MiB" else 1000 * 1000
    return float(match.group(1)) * multiplier


def run_checked_with_streaming_progress(
    command,
    total_bytes=None,
    title="WORKING",
    progress_callback=None,
):
    """Run a command with streaming progress monitoring and callback support.

    Progress is parsed from stderr lines such as dd's status=progress output.
    The callback receives (line, ratio); without one, the line is rendered
    in place on the terminal. KeyboardInterrupt terminates the child and is
    re-raised.
    """
    terminal = None if progress_callback else TerminalProgress()
    progress_log = ThrottledLogger(log.bind(tags=["command", "progress"]), 5.0)

    def emit_progress(line, ratio=None):
        if progress_callback:
            progress_callback(line, ratio)
        else:
            terminal.update(line, ratio)

    def clamp_ratio(value):
        if value is None:
            return None
        return max(0.0, min(1.0, float(value)))

    def compute_ratio(bytes_copied, percent_value):
        if bytes_copied is not None and total_bytes:
            return clamp_ratio(bytes_copied / total_bytes)
        if percent_value is not None:
            return clamp_ratio(percent_value / 100.0)
        return None

    emit_progress(
        format_progress_line(title, 0 if total_bytes else None, total_bytes),
        ratio=compute_ratio(0 if total_bytes else None, None),
    )
    log.debug(f"Running command: {' '.join(command)}")
    process = subprocess.Popen(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    stderr_lines = []
    last_update = time.time()
    last_bytes = None
    last_time = None
    last_rate = None
    last_eta = None
    last_percent = None
    spinner_frames = ["|", "/", "-", "\\"]
    spinner_index = 0
    refresh_interval = 1.0
    try:
        while True:
            ready, _, _ = select.select([process.stderr], [], [], refresh_interval)
            now = time.time()
            line = None
            if ready:
                line = process.stderr.readline()
            if line:
                stderr_lines.append(line)
                progress_log.debug(title, f"stderr: {line.strip()}")
                bytes_match = _BYTES_RE.search(line)
                percent_match = _PERCENT_RE.search(line)
                bytes_copied = None
                rate = last_rate
                eta = last_eta
                if bytes_match:
                    bytes_copied = int(bytes_match.group(1))
                    rate = parse_rate(line)
                    if rate is None and last_bytes is not None and last_time is not None:
                        delta_bytes = bytes_copied - last_bytes
                        delta_time = now - last_time
                        if delta_bytes >= 0 and delta_time > 0:
                            rate = delta_bytes / delta_time
                    if rate and total_bytes and bytes_copied <= total_bytes:
                        eta = format_eta((total_bytes - bytes_copied) / rate)
                    last_bytes = bytes_copied
                    last_time = now
                    last_rate = rate or last_rate
                    last_eta = eta or last_eta
                if percent_match:
                    last_percent = float(percent_match.group(1))
                emit_progress(
                    format_progress_line(
                        title,
                        bytes_copied if bytes_copied is not None else last_bytes,
                        total_bytes,
                        last_percent,
                        rate if rate is not None else last_rate,
                        eta if eta is not None else last_eta,
                        spinner_frames[spinner_index],
                    ),
                    ratio=compute_ratio(
                        bytes_copied if bytes_copied is not None else last_bytes,
                        last_percent,
                    ),
                )
                last_update = now
            if now - last_update >= refresh_interval:
                spinner_index = (spinner_index + 1) % len(spinner_frames)
                emit_progress(
                    format_progress_line(
                        title,
                        last_bytes,
                        total_bytes,
                        last_percent,
                        last_rate,
                        last_eta,
                        spinner_frames[spinner_index],
                    ),
                    ratio=compute_ratio(last_bytes, last_percent),
                )
                last_update = now
            if process.poll() is not None and not line:
                break
    except KeyboardInterrupt:
        log.warning(f"Interrupted, terminating: {' '.join(command)}")
        process.terminate()
        try:
            process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
        if terminal:
            terminal.finish()
        raise
    remaining_stderr = process.stderr.read() if process.stderr else ""
    if remaining_stderr:
        stderr_lines.append(remaining_stderr)
    stdout_data = ""
    if process.stdout:
        stdout_data = process.stdout.read()
    process.wait()
    stderr_output = "".join(stderr_lines)
    if process.returncode != 0:
        if terminal:
            terminal.finish()
        stderr = stderr_output.strip()
        stdout = stdout_data.strip()
        message = stderr or stdout or "Command failed"
        raise RuntimeError(f"Command failed ({' '.join(command)}): {message}")
    emit_progress(f"{title} | Complete", ratio=1.0)
    if terminal:
        terminal.finish()
    return subprocess.CompletedProcess(
        command, process.returncode, stdout=stdout_data, stderr=stderr_output
    )


__all__ = [
    "parse_rate",
    "run_checked_command",
    "run_checked_with_streaming_progress",
    "run_command",
]
