"""Raw image writes onto a partition with dd."""

from __future__ import annotations

from pathlib import Path

from silicon_dualboot.domain import Partition
from silicon_dualboot.logging import LoggerFactory

from .command_runners import run_checked_with_streaming_progress, run_command
from .exceptions import (
    DiskInventoryError,
    ImageWriteError,
    MountError,
    SystemPartitionProtectedError,
)
from .mount import MountRegistry

log = LoggerFactory.for_disk()

DD_BLOCK_SIZE = "4m"


def build_dd_command(image_path: Path, partition: Partition) -> list[str]:
    return [
        "dd",
        f"if={image_path}",
        f"of={partition.raw_device_path}",
        f"bs={DD_BLOCK_SIZE}",
        "status=progress",
    ]


def write_image(
    image_path: Path,
    partition: Partition,
    registry: MountRegistry,
    progress_callback=None,
) -> int:
    """Stream an image onto the raw device node of a partition.

    KeyboardInterrupt is propagated after dd has been terminated.

    Returns:
        Number of bytes in the image

    Raises:
        SystemPartitionProtectedError: If the partition is needed by macOS
        ImageWriteError: If the image is missing, too large, or dd fails
    """
    if partition.system_critical or partition.backs_running_os:
        raise SystemPartitionProtectedError(partition.identifier, "refusing to write")

    image_path = Path(image_path)
    try:
        image_size = image_path.stat().st_size
    except OSError as error:
        raise ImageWriteError(f"Cannot read image {image_path}: {error}") from error
    if partition.size_bytes and image_size > partition.size_bytes:
        raise ImageWriteError(
            f"Image {image_path.name} ({image_size} bytes) does not fit on "
            f"{partition.identifier} ({partition.size_bytes} bytes)",
            device=partition.identifier,
        )

    try:
        registry.unmount(partition.identifier)
    except (MountError, DiskInventoryError) as error:
        raise ImageWriteError(
            f"Could not unmount {partition.identifier} before writing: {error}",
            device=partition.identifier,
        ) from error

    command = build_dd_command(image_path, partition)
    log.info(f"Writing {image_path} to {partition.raw_device_path}")
    try:
        run_checked_with_streaming_progress(
            command,
            total_bytes=image_size,
            title="Writing image",
            progress_callback=progress_callback,
        )
    except (RuntimeError, OSError) as error:
        raise ImageWriteError(
            f"Writing image to {partition.identifier} failed: {error}",
            device=partition.identifier,
        ) from error
    run_command(["sync"], check=False)

    # macOS may auto-mount the freshly written filesystem.
    registry.track(partition.identifier)
    try:
        registry.unmount(partition.identifier)
    except (MountError, DiskInventoryError) as error:
        log.warning(f"Could not unmount {partition.identifier} after writing: {error}")
    return image_size
