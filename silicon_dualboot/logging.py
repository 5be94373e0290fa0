from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(os.environ.get("SILICON_DUALBOOT_LOG_DIR", Path.home()))

LOG_FILE_PREFIX = "silicon_dualboot"

# Records tagged "console" were already printed to the terminal by ui.console.
CONSOLE_TAG = "console"


def _should_log_console_echo(record) -> bool:
    """Keep messages that were already shown to the user off stderr."""
    tags = record["extra"].get("tags", [])
    return CONSOLE_TAG not in tags


def _should_log_progress(record) -> bool:
    """Progress ticks only reach stderr in TRACE mode."""
    tags = record["extra"].get("tags", [])
    if "progress" in tags:
        return record["level"].no <= logger.level("TRACE").no
    return True


def _combined_filter(record) -> bool:
    """Combined filter for the stderr sink."""
    return _should_log_console_echo(record) and _should_log_progress(record)


def log_file_name(now: datetime | None = None) -> str:
    """Name of the per-run log file, e.g. silicon_dualboot_20250101_120000.log."""
    now = now or datetime.now()
    return f"{LOG_FILE_PREFIX}_{now:%Y%m%d_%H%M%S}.log"


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Path:
    """
    Setup logging for one installer run.

    Sinks:
    - stderr: diagnostics not already printed by the console helpers
      (WARNING+, DEBUG+ with --debug, TRACE+ with --trace)
    - <log_dir>/silicon_dualboot_<timestamp>.log: everything at DEBUG+,
      including every message shown to the user and every prompt answer
    - <log_dir>/silicon_dualboot.jsonl: structured records when debugging

    Args:
        debug: Enable DEBUG level output on stderr
        trace: Enable TRACE level output (very verbose)
        log_dir: Directory for log files (defaults to $HOME)

    Returns:
        Path of the per-run log file
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "WARNING"

    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_combined_filter,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <12}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / log_file_name()

    logger.add(
        log_path,
        level="TRACE" if trace else "DEBUG",
        backtrace=True,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <12} | "
            "{extra[job_id]: <20} | "
            "{message}"
        ),
    )

    if debug or trace:
        logger.add(
            log_dir / f"{LOG_FILE_PREFIX}.jsonl",
            level="DEBUG",
            rotation="10 MB",
            retention=5,
            serialize=True,
            format="{message}",
        )

    return log_path


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["disk", "install"])
        source: Source component (e.g., "planner", "download")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking long-running operations with automatic timing.

    Logs operation start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "format", "write", "bootloader")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("write", image="kali.iso", target="disk0s5") as log:
            log.debug("Unmounting target")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source, tags, and context for the domain.
    """

    @staticmethod
    def for_disk() -> Logger:
        """Logger for disk inventory, partitioning and mounts."""
        return logger.bind(source="disk", tags=["disk", "storage"])

    @staticmethod
    def for_download(url: str | None = None) -> Logger:
        """Logger for image and checksum downloads."""
        return logger.bind(source="download", tags=["download", "network"], url=url or "-")

    @staticmethod
    def for_install(job_id: str | None = None) -> Logger:
        """Logger for the install executor."""
        if job_id is None:
            job_id = f"install-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="install", tags=["install"])

    @staticmethod
    def for_session() -> Logger:
        """Logger for session state persistence."""
        return logger.bind(source="session", tags=["session"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, preflight, config)."""
        return logger.bind(source="system", tags=["system"])


class ThrottledLogger:
    """
    Logger wrapper that throttles high-frequency log events.

    Used for download and dd progress so the log file gets a line every
    few seconds instead of one per chunk.
    """

    def __init__(self, log: Logger, interval_seconds: float = 5.0):
        self.log = log
        self.interval = interval_seconds
        self.last_log_time: dict[str, float] = {}

    def debug(self, key: str, message: str, **kwargs) -> None:
        """Log at DEBUG level, throttled by key."""
        self._throttled_log("DEBUG", key, message, **kwargs)

    def info(self, key: str, message: str, **kwargs) -> None:
        """Log at INFO level, throttled by key."""
        self._throttled_log("INFO", key, message, **kwargs)

    def _throttled_log(self, level: str, key: str, message: str, **kwargs) -> None:
        now = time.time()
        last_time = self.last_log_time.get(key, 0)

        if now - last_time >= self.interval:
            log_method = getattr(self.log, level.lower())
            log_method(message, **kwargs)
            self.last_log_time[key] = now
