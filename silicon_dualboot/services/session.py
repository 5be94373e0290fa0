"""Persisted install progress.

Layout under the work directory:

    session.json        full SessionState, rewritten atomically after every step
    target_partition    single line with the chosen partition identifier
    <image>.iso         downloaded image (removed on completion)
    SHA256SUMS          checksum manifest (removed on completion)
"""

from __future__ import annotations

import json
import os
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

from silicon_dualboot.domain import InstallStep, PartitionState, SessionState
from silicon_dualboot.logging import LoggerFactory
from silicon_dualboot.storage.exceptions import SessionStateError

log = LoggerFactory.for_session()

STATE_FILENAME = "session.json"
TARGET_FILENAME = "target_partition"

# Allowed forward moves. FAILED is reachable from any non-terminal step.
TRANSITIONS = {
    InstallStep.PLANNED: {InstallStep.FORMATTED},
    InstallStep.FORMATTED: {InstallStep.IMAGE_WRITTEN},
    InstallStep.IMAGE_WRITTEN: {InstallStep.BOOTLOADER_CONFIGURED},
    InstallStep.BOOTLOADER_CONFIGURED: {InstallStep.COMPLETE},
    InstallStep.COMPLETE: set(),
    InstallStep.FAILED: set(),
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class SessionStore:
    """Reads and writes SessionState inside the work directory."""

    def __init__(self, work_dir: Path):
        self.work_dir = Path(work_dir)

    @property
    def state_path(self) -> Path:
        return self.work_dir / STATE_FILENAME

    @property
    def target_path(self) -> Path:
        return self.work_dir / TARGET_FILENAME

    def load(self) -> SessionState | None:
        """Return the persisted state, or None when no session exists.

        Raises:
            SessionStateError: If the file exists but cannot be understood
        """
        if not self.state_path.exists():
            return None
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise SessionStateError(str(self.state_path), str(error)) from error
        if not isinstance(data, dict):
            raise SessionStateError(str(self.state_path), "expected a JSON object")
        try:
            state = SessionState.from_dict(data)
        except (KeyError, TypeError, ValueError) as error:
            raise SessionStateError(str(self.state_path), f"invalid field: {error}") from error
        log.debug(f"Loaded session at step {state.step.value} from {self.state_path}")
        return state

    def load_target(self) -> str | None:
        if not self.target_path.exists():
            return None
        value = self.target_path.read_text(encoding="utf-8").strip()
        return value or None

    def save(self, state: SessionState) -> None:
        """Write state atomically: temp file, fsync, rename."""
        self.work_dir.mkdir(parents=True, exist_ok=True)
        if state.updated_at is None:
            state.updated_at = _now()
        payload = json.dumps(state.to_dict(), indent=2, sort_keys=True)
        tmp = self.state_path.with_name(self.state_path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, self.state_path)
        if state.plan is not None:
            self.target_path.write_text(state.plan.target_partition + "\n", encoding="utf-8")
        log.debug(f"Saved session at step {state.step.value}")

    def advance(self, state: SessionState, step: InstallStep, **changes) -> SessionState:
        """Move to the next step after its side effects succeeded, then persist.

        Raises:
            SessionStateError: If the transition is not allowed
        """
        if step not in TRANSITIONS[state.step]:
            raise SessionStateError(
                str(self.state_path),
                f"illegal transition {state.step.value} -> {step.value}",
            )
        new_state = replace(
            state,
            step=step,
            updated_at=_now(),
            history=[*state.history, step.value],
            **changes,
        )
        self.save(new_state)
        log.info(f"Session advanced to {step.value}")
        return new_state

    def fail(
        self,
        state: SessionState,
        failed_step: InstallStep,
        error: BaseException | str,
        partition_state: PartitionState | None = None,
    ) -> SessionState:
        """Record a failure at failed_step and persist."""
        changes = {}
        if partition_state is not None:
            changes["partition_state"] = partition_state
        new_state = replace(
            state,
            step=InstallStep.FAILED,
            failed_step=failed_step,
            error=str(error) or type(error).__name__,
            updated_at=_now(),
            history=[*state.history, InstallStep.FAILED.value],
            **changes,
        )
        self.save(new_state)
        log.error(f"Session failed at {failed_step.value}: {new_state.error}")
        return new_state

    def clear(self) -> None:
        """Forget the session (used when starting a fresh install)."""
        for path in (self.state_path, self.target_path):
            if path.exists():
                path.unlink()
