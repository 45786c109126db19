"""
Startup Recovery
================

Run once when the engine starts, before it accepts new work.

Recovery process:
1. Detect whether the previous process died without a clean shutdown
2. Reconstruct the current state of every transfer from its event log
3. Collect transfers that were still in flight, with the byte offset each
   unfinished path reached, so the engine can resume them
4. Surface integrity anomalies (regressed byte counters)

Recovery only reads. Deciding whether to resume, cancel, or fail an
interrupted transfer is the engine's call, recorded as ordinary events.
"""

import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .state import Stage, TransferState, PathState
from .storage import TransferStorage, create_storage


logger = logging.getLogger(__name__)


@dataclass
class ResumablePath:
    """A path of an interrupted transfer that has not reached a terminal state"""
    path_id: str
    state: Optional[Stage]
    offset: int
    total_bytes: int


@dataclass
class InterruptedTransfer:
    """A transfer that was still in flight when the process stopped"""
    transfer_id: str
    direction: str
    state: Optional[Stage]
    paths: list = field(default_factory=list)


@dataclass
class RecoveryResult:
    """Results from recovery process"""
    crash_detected: bool = False
    transfers_found: int = 0
    transfers_finished: int = 0
    interrupted: list = field(default_factory=list)
    anomalies: list = field(default_factory=list)

    @property
    def transfers_interrupted(self) -> int:
        return len(self.interrupted)


class RecoveryManager:
    """
    Inspects the store on startup.

    A PID file in the state directory marks a running process; finding one
    whose process is gone means the last run ended in a crash.
    """

    def __init__(self, storage: TransferStorage, state_dir: str | Path):
        self.storage = storage
        self.state_dir = Path(state_dir)
        self.pid_file = self.state_dir / "transferstore.pid"
        self._owns_pid_file = False

    def recover(self) -> RecoveryResult:
        """Main recovery entry point"""
        result = RecoveryResult()

        crash_detected, owned_elsewhere = self._inspect_pid_file()
        result.crash_detected = crash_detected
        if crash_detected:
            logger.warning("Previous shutdown was unclean, reconstructing transfer states")

        for transfer_state, path_states in self.storage.current_states():
            result.transfers_found += 1
            for path_state in path_states:
                result.anomalies.extend(path_state.anomalies)

            if self._is_finished(transfer_state, path_states):
                result.transfers_finished += 1
                continue

            result.interrupted.append(self._interrupted(transfer_state, path_states))

        logger.info(
            f"Recovery complete: {result.transfers_found} transfers, "
            f"{result.transfers_interrupted} interrupted, "
            f"{len(result.anomalies)} anomalies"
        )

        if owned_elsewhere:
            logger.info(f"PID file {self.pid_file} belongs to a running process, leaving it")
        else:
            self._write_pid_file()
        return result

    def shutdown(self) -> None:
        """Remove the PID file on clean shutdown, if this manager wrote it"""
        if not self._owns_pid_file:
            return
        try:
            self.pid_file.unlink()
        except FileNotFoundError:
            pass
        self._owns_pid_file = False

    @staticmethod
    def _is_finished(transfer_state: TransferState, path_states: list[PathState]) -> bool:
        if transfer_state.is_terminal:
            return True
        return bool(path_states) and all(path.is_terminal for path in path_states)

    @staticmethod
    def _interrupted(transfer_state: TransferState, path_states: list[PathState]) -> InterruptedTransfer:
        return InterruptedTransfer(
            transfer_id=transfer_state.transfer_id,
            direction=transfer_state.direction.value if transfer_state.direction else "",
            state=transfer_state.state,
            paths=[
                ResumablePath(
                    path_id=path.path_id,
                    state=path.state,
                    offset=path.bytes or 0,
                    total_bytes=path.total_bytes or 0,
                )
                for path in path_states
                if not path.is_terminal
            ],
        )

    def _inspect_pid_file(self) -> tuple[bool, bool]:
        """
        Returns (crash_detected, owned_elsewhere).

        A PID file whose process is gone means the last run crashed. One whose
        process is still running, or that was written on another machine
        sharing the state dir, belongs to someone else and is left alone.
        """
        if not self.pid_file.exists():
            return False, False

        try:
            content = self.pid_file.read_text().strip()
            parts = content.split(":")
            pid = int(parts[0])
            hostname = parts[1] if len(parts) > 1 else None
        except (ValueError, OSError):
            # Unreadable PID file, assume crash
            return True, False

        if hostname and hostname != socket.gethostname():
            return False, True

        if pid == os.getpid():
            # Ours if written during this run, otherwise a stale file from a
            # crashed process that had the same pid
            return not self._owns_pid_file, False

        if self._is_process_running(pid):
            return False, True
        return True, False

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
            return True
        except PermissionError:
            return True
        except OSError:
            return False

    def _write_pid_file(self) -> None:
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(f"{os.getpid()}:{socket.gethostname()}")
        self._owns_pid_file = True


def create_recovery_manager(config: dict, storage: Optional[TransferStorage] = None) -> RecoveryManager:
    """Create recovery manager from config"""
    state_dir = config.get("paths", {}).get("state_dir", "./state")
    return RecoveryManager(storage or create_storage(config), state_dir)
