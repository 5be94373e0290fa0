from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from silicon_dualboot.domain import OSProfile
from silicon_dualboot.services.bootloader import BootloaderConfigurator
from silicon_dualboot.services.download import Downloader
from silicon_dualboot.services.executor import InstallExecutor
from silicon_dualboot.services.planner import PartitionPlanner
from silicon_dualboot.services.session import SessionStore
from silicon_dualboot.storage.devices import DiskInventory
from silicon_dualboot.storage.diskutil import DiskUtil
from silicon_dualboot.storage.mount import MountRegistry, mount_registry
from silicon_dualboot.ui.prompts import ConfirmationGate, ConsolePrompter


@dataclass
class AppContext:
    """Everything one installer run shares between its components."""

    profile: OSProfile
    work_dir: Path
    log_path: Optional[Path] = None
    prompter: ConsolePrompter = field(default_factory=ConsolePrompter)
    diskutil: DiskUtil = field(default_factory=DiskUtil)
    registry: MountRegistry = field(default_factory=lambda: mount_registry)
    downloader: Optional[Downloader] = None

    def __post_init__(self) -> None:
        self.work_dir = Path(self.work_dir)
        self.gate = ConfirmationGate(self.prompter)
        self.inventory = DiskInventory(self.diskutil)
        self.store = SessionStore(self.work_dir)
        self.planner = PartitionPlanner(self.inventory, self.gate, self.profile, self.diskutil)
        self.bootloader = BootloaderConfigurator(
            self.inventory, self.registry, self.work_dir, self.downloader
        )
        self.executor = InstallExecutor(
            self.store,
            self.inventory,
            self.registry,
            self.bootloader,
            self.profile,
            self.gate,
            downloader=self.downloader,
        )
