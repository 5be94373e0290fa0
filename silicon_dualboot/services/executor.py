"""Install state machine.

    Planned -> Formatted -> ImageWritten -> BootloaderConfigured -> Complete
                 \\             \\                  \\
                  +-------------+------------------+--> Failed

The session is saved after every transition, and a step only advances once
its side effects have succeeded. Destructive steps are never retried.
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Callable

from silicon_dualboot.config import settings
from silicon_dualboot.domain import (
    InstallPlan,
    InstallStep,
    OSProfile,
    PartitionState,
    SessionState,
)
from silicon_dualboot.logging import LoggerFactory, operation_context
from silicon_dualboot.storage import devices
from silicon_dualboot.storage.devices import DiskInventory
from silicon_dualboot.storage.erase import format_partition
from silicon_dualboot.storage.exceptions import (
    ImageSourceError,
    ResumeNotPossibleError,
    UserDeclinedError,
)
from silicon_dualboot.storage.image_writer import write_image
from silicon_dualboot.storage.mount import MountRegistry
from silicon_dualboot.ui import console
from silicon_dualboot.ui.prompts import ConfirmationGate

from . import download
from .bootloader import BootloaderConfigurator
from .session import SessionStore

log = LoggerFactory.for_install()

REWRITE_INSTRUCTION = (
    "Run the installer again without --configure-only to rewrite the image "
    "onto the partition"
)


class InstallExecutor:
    def __init__(
        self,
        store: SessionStore,
        inventory: DiskInventory,
        registry: MountRegistry,
        bootloader: BootloaderConfigurator,
        profile: OSProfile,
        gate: ConfirmationGate,
        downloader: download.Downloader | None = None,
        filesystem: str | None = None,
        progress_callback: Callable[[str, float | None], None] | None = None,
    ):
        self.store = store
        self.inventory = inventory
        self.registry = registry
        self.bootloader = bootloader
        self.profile = profile
        self.gate = gate
        self.downloader = downloader
        self.filesystem = filesystem or settings.get_setting("partition_filesystem", "FAT32")
        self.progress_callback = progress_callback

    @property
    def work_dir(self) -> Path:
        return self.store.work_dir

    def start(
        self,
        plan: InstallPlan,
        log_path: Path | None = None,
        image_path: Path | None = None,
        manifest_path: Path | None = None,
    ) -> SessionState:
        state = SessionState(
            step=InstallStep.PLANNED,
            plan=plan,
            image_path=str(image_path) if image_path else None,
            manifest_path=str(manifest_path) if manifest_path else None,
            log_path=str(log_path) if log_path else None,
            history=[InstallStep.PLANNED.value],
        )
        self.store.save(state)
        return state

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _run_step(self, state: SessionState, step: InstallStep, action, on_failure: PartitionState | None):
        """Run action(); on any failure record FAILED at step and re-raise."""
        try:
            return action()
        except (Exception, KeyboardInterrupt) as error:
            reason = "interrupted by user" if isinstance(error, KeyboardInterrupt) else error
            self.store.fail(state, step, reason, partition_state=on_failure)
            raise

    def obtain_image(self, image_source: str) -> tuple[Path, Path | None]:
        """Download (if needed) and verify the image.

        Raises:
            VerificationFailure: If the digest is not confirmed and the user
                refuses to continue
        """
        console.p_step(1, "Obtaining and verifying the image")
        image = download.fetch_image(image_source, self.work_dir, self.gate.ask, self.downloader)
        report, manifest = download.verify(
            image, self.profile.manifest_urls, self.work_dir, self.downloader
        )
        download.require_verified(report, image, self.gate.confirm_override)
        return image, manifest

    def prepare_image(self, state: SessionState) -> SessionState:
        """Make sure a verified image is on disk before any disk is touched."""
        if state.image_path and Path(state.image_path).exists():
            return state
        image, manifest = self.obtain_image(state.plan.image_source)
        state = replace(
            state,
            image_path=str(image),
            manifest_path=str(manifest) if manifest else None,
        )
        self.store.save(state)
        return state

    def format(self, state: SessionState) -> SessionState:
        """Planned -> Formatted. Refuses an unconfirmed plan without touching the disk."""
        plan = state.plan
        if plan is None or not plan.confirmed:
            raise UserDeclinedError("install plan was not confirmed")

        console.p_step(2, f"Formatting {plan.target_partition}")

        def action():
            partition = devices.find_partition(self.inventory.refresh(), plan.target_partition)
            with operation_context("format", target=partition.identifier):
                format_partition(partition, plan.volume_label, self.filesystem, self.inventory.diskutil, self.registry)

        self._run_step(state, InstallStep.FORMATTED, action, PartitionState.UNKNOWN)
        console.p_success(f"Formatted {plan.target_partition}")
        return self.store.advance(state, InstallStep.FORMATTED, partition_state=PartitionState.FORMATTED)

    def write(self, state: SessionState) -> SessionState:
        """Formatted -> ImageWritten. Failure or interrupt leaves the partition corrupt."""
        plan = state.plan
        if not state.image_path:
            raise ImageSourceError(plan.image_source, "image has not been prepared")
        console.p_step(3, f"Writing image to {plan.target_partition}")

        def action():
            partition = devices.find_partition(self.inventory.refresh(), plan.target_partition)
            with operation_context("write", image=state.image_path, target=partition.identifier):
                write_image(Path(state.image_path), partition, self.registry, self.progress_callback)

        self._run_step(state, InstallStep.IMAGE_WRITTEN, action, PartitionState.CORRUPT)
        console.p_success("Image written")
        return self.store.advance(
            state, InstallStep.IMAGE_WRITTEN, partition_state=PartitionState.IMAGE_WRITTEN
        )

    def configure_bootloader(self, state: SessionState) -> SessionState:
        """ImageWritten -> BootloaderConfigured."""
        plan = state.plan
        entry = replace(self.profile.boot_entry, volume=plan.volume_label)
        console.p_step(4, "Configuring the rEFInd boot manager")

        def action():
            with operation_context("bootloader", target=plan.target_partition):
                return self.bootloader.configure(entry, plan.target_partition)

        changed = self._run_step(state, InstallStep.BOOTLOADER_CONFIGURED, action, None)
        if changed:
            console.p_success(f"Added '{entry.title}' to the boot menu")
        else:
            console.p_info(f"Boot menu already contains '{entry.title}'")
        return self.store.advance(state, InstallStep.BOOTLOADER_CONFIGURED)

    def cleanup(self, state: SessionState) -> SessionState:
        """BootloaderConfigured -> Complete. Failing to delete files is only a warning."""
        console.p_step(5, "Cleaning up")
        for path in self._temporary_files(state):
            try:
                path.unlink()
                log.info(f"Removed {path}")
            except FileNotFoundError:
                continue
            except OSError as error:
                console.p_warning(f"Could not remove {path}: {error}")
        return self.store.advance(state, InstallStep.COMPLETE)

    def _temporary_files(self, state: SessionState) -> list[Path]:
        """Files this tool downloaded. A user-supplied local image is never removed."""
        paths = []
        if state.image_path:
            image = Path(state.image_path)
            if image.parent == self.work_dir:
                paths.append(image)
        if state.manifest_path:
            paths.append(Path(state.manifest_path))
        if self.work_dir.exists():
            paths.extend(sorted(self.work_dir.glob(f"*{download.PART_SUFFIX}")))
        return paths

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------

    def run(self, state: SessionState) -> SessionState:
        """Execute every remaining step from state.step to Complete."""
        if state.step is InstallStep.PLANNED:
            state = self.prepare_image(state)
            state = self.format(state)
        if state.step is InstallStep.FORMATTED:
            state = self.prepare_image(state)
            state = self.write(state)
        if state.step is InstallStep.IMAGE_WRITTEN:
            state = self.configure_bootloader(state)
        if state.step is InstallStep.BOOTLOADER_CONFIGURED:
            state = self.cleanup(state)
        return state

    def resume(self, state: SessionState) -> SessionState:
        """Continue a saved session.

        A failure before the image was completely written restarts at
        formatting. Any step that still has to touch the disk is confirmed
        again, since confirmation never carries over between runs.
        """
        if state.plan is None:
            raise ResumeNotPossibleError("The saved session has no install plan", "Start a new install")
        if state.step is InstallStep.COMPLETE:
            return state
        if state.step is InstallStep.FAILED:
            if state.failed_step is InstallStep.BOOTLOADER_CONFIGURED:
                return self.configure_only(state)
            log.warning(f"Restarting at formatting after failure in {state.failed_step}")
            state = replace(state, step=InstallStep.PLANNED, failed_step=None, error=None)
        if state.step.order < InstallStep.IMAGE_WRITTEN.order:
            target = state.plan.target_partition
            self.gate.confirm_destructive(
                f"Resume installing {self.profile.display_name}",
                target,
                [f"All data on {target} will be overwritten."],
            )
            state = replace(state, plan=replace(state.plan, confirmed=True))
        self.store.save(state)
        return self.run(state)

    def configure_only(self, state: SessionState | None) -> SessionState:
        """Re-enter at ImageWritten -> BootloaderConfigured from a saved session.

        Raises:
            ResumeNotPossibleError: If there is no session, or the image was
                never completely written to the partition
        """
        check_configure_only(state)
        entry_state = replace(state, step=InstallStep.IMAGE_WRITTEN, failed_step=None, error=None)
        self.store.save(entry_state)
        state = self.configure_bootloader(entry_state)
        return self.cleanup(state)


def check_configure_only(state: SessionState | None) -> None:
    """
    Raises:
        ResumeNotPossibleError: If configure-only cannot continue from state
    """
    if state is None or state.plan is None:
        raise ResumeNotPossibleError(
            "No saved install session was found",
            "Run the full installer first",
        )
    if state.partition_state is PartitionState.CORRUPT or (
        state.step is InstallStep.FAILED
        and state.failed_step in (InstallStep.FORMATTED, InstallStep.IMAGE_WRITTEN)
    ):
        raise ResumeNotPossibleError(
            f"Writing the image to {state.plan.target_partition} did not complete",
            REWRITE_INSTRUCTION,
        )
    if state.partition_state is not PartitionState.IMAGE_WRITTEN:
        raise ResumeNotPossibleError(
            f"The image has not been written to {state.plan.target_partition} yet",
            REWRITE_INSTRUCTION,
        )
