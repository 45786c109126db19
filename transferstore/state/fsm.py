"""
State Reconstruction & Transition Guard
=======================================

Current state is never stored. It is folded from an entity's event history:

- Terminal stages (cancel, failed, completed) beat non-terminal ones
  (pending, active, started) whenever both exist. A stale `started` that
  lands after a cancellation does not resurrect the path.
- Among terminal events the first recorded one is authoritative; later
  terminal rows are kept as history only. Precedence.LAST flips this.
- Without a terminal event, the latest non-terminal event is the state.

The guard answers "may this stage be appended now?" from a reconstructed
state. It is pure; callers serialize read-validate-append per entity.
"""

import logging
from typing import Optional, Iterable
from dataclasses import dataclass, field
from enum import Enum

from ..errors import IllegalTransition, RegressedCounter
from .events import Direction, Stage, StateEvent, COUNTER_STAGES


logger = logging.getLogger(__name__)


class Precedence(str, Enum):
    """Which terminal event wins when several were recorded"""
    FIRST = "first"
    LAST = "last"


@dataclass
class TransferState:
    """Reconstructed state of a transfer"""
    transfer_id: str
    direction: Optional[Direction] = None
    state: Optional[Stage] = None
    by_peer: Optional[bool] = None
    status_code: Optional[int] = None
    events: list = field(default_factory=list)
    anomalies: list = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state is not None and self.state.is_terminal


@dataclass
class PathState:
    """Reconstructed state of one path, with its byte progress"""
    transfer_id: str
    path_id: str
    direction: Optional[Direction] = None
    state: Optional[Stage] = None
    bytes: Optional[int] = None
    total_bytes: Optional[int] = None
    final_path: Optional[str] = None
    by_peer: Optional[bool] = None
    status_code: Optional[int] = None
    events: list = field(default_factory=list)
    anomalies: list = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.state is not None and self.state.is_terminal

    @property
    def progress_percent(self) -> float:
        if not self.total_bytes:
            return 100.0 if self.state == Stage.COMPLETED else 0.0
        return min(100.0, (self.bytes or 0) / self.total_bytes * 100)


# =============================================================================
# Reconstruction
# =============================================================================

def _ordered(events: Iterable[StateEvent]) -> list[StateEvent]:
    return sorted(events, key=StateEvent.sort_key)


def _decide(events: list[StateEvent], precedence: Precedence) -> Optional[StateEvent]:
    """Pick the event that defines current state from an ordered history"""
    terminals = [event for event in events if event.stage.is_terminal]
    if terminals:
        if Precedence(precedence) == Precedence.LAST:
            return terminals[-1]
        return terminals[0]
    return events[-1] if events else None


def reduce_transfer(
    transfer_id: str,
    events: Iterable[StateEvent],
    direction: Optional[Direction] = None,
    precedence: Precedence = Precedence.FIRST,
) -> TransferState:
    """Fold a transfer's event history into its current state"""
    history = _ordered(events)
    result = TransferState(transfer_id=transfer_id, direction=direction, events=history)

    decisive = _decide(history, precedence)
    if decisive is None:
        return result

    result.state = decisive.stage
    result.by_peer = decisive.by_peer
    result.status_code = decisive.status_code

    extra = sum(1 for event in history if event.stage.is_terminal) - 1
    if extra > 0:
        logger.debug(f"Transfer {transfer_id}: ignoring {extra} later terminal event(s)")

    return result


def reduce_path(
    transfer_id: str,
    path_id: str,
    events: Iterable[StateEvent],
    direction: Optional[Direction] = None,
    total_bytes: Optional[int] = None,
    precedence: Precedence = Precedence.FIRST,
) -> PathState:
    """
    Fold a path's event history into its current state.

    The byte counter is the latest value carried by started/cancel/failed.
    Whenever it drops below the highest value seen so far a RegressedCounter
    anomaly is attached; the fold still returns its best answer.
    """
    history = _ordered(events)
    result = PathState(
        transfer_id=transfer_id,
        path_id=path_id,
        direction=direction,
        total_bytes=total_bytes,
        events=history,
    )

    entity = f"{transfer_id}/{path_id}"
    highest = None
    for event in history:
        if event.stage not in COUNTER_STAGES or event.bytes is None:
            continue
        if highest is not None and event.bytes < highest:
            anomaly = RegressedCounter(entity, highest, event.bytes, event.created_at)
            logger.warning(f"Path {entity}: {anomaly}")
            result.anomalies.append(anomaly)
        highest = event.bytes if highest is None else max(highest, event.bytes)
        result.bytes = event.bytes

    decisive = _decide(history, precedence)
    if decisive is None:
        return result

    result.state = decisive.stage
    result.by_peer = decisive.by_peer
    result.status_code = decisive.status_code
    if decisive.stage == Stage.COMPLETED:
        result.final_path = decisive.final_path
        if result.bytes is None and total_bytes is not None:
            result.bytes = total_bytes

    return result


# =============================================================================
# Transition Guard
# =============================================================================

@dataclass(frozen=True)
class Verdict:
    """Outcome of a guard check"""
    ok: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.ok


ALLOW = Verdict(True)


class TransitionGuard:
    """
    Rules deciding which stage may be appended next.

    Paths:
        pending    only as the very first event
        started    never after completed
        cancel     only from a non-terminal state
        failed     only from a non-terminal state
        completed  from started, or from pending for a zero-byte file

    Transfers:
        active, cancel, failed   only from a non-terminal state
    """

    def validate_transfer(self, current: TransferState, stage: Stage) -> Verdict:
        stage = Stage(stage)
        if stage not in (Stage.ACTIVE, Stage.CANCELLED, Stage.FAILED):
            return Verdict(False, f"'{stage.value}' is not a transfer stage")
        if current.is_terminal:
            return Verdict(
                False,
                f"transfer is already '{current.state.value}'",
            )
        return ALLOW

    def validate_path(self, current: PathState, stage: Stage) -> Verdict:
        stage = Stage(stage)
        recorded = {event.stage for event in current.events}

        if stage == Stage.PENDING:
            if current.events:
                return Verdict(False, "pending must be the first event of a path")
            return ALLOW

        if stage == Stage.STARTED:
            if Stage.COMPLETED in recorded:
                return Verdict(False, "path is already completed")
            return ALLOW

        if stage in (Stage.CANCELLED, Stage.FAILED):
            if current.is_terminal:
                return Verdict(False, f"path is already '{current.state.value}'")
            return ALLOW

        if stage == Stage.COMPLETED:
            if current.state == Stage.STARTED:
                return ALLOW
            if current.state == Stage.PENDING and current.total_bytes == 0:
                return ALLOW
            state = current.state.value if current.state else "new"
            return Verdict(False, f"cannot complete a path that is '{state}'")

        return Verdict(False, f"'{stage.value}' is not a path stage")

    def check_transfer(self, current: TransferState, stage: Stage) -> None:
        verdict = self.validate_transfer(current, stage)
        if not verdict:
            raise IllegalTransition(
                f"transfer {current.transfer_id}",
                current.state.value if current.state else None,
                Stage(stage).value,
                verdict.reason,
            )

    def check_path(self, current: PathState, stage: Stage) -> None:
        verdict = self.validate_path(current, stage)
        if not verdict:
            raise IllegalTransition(
                f"path {current.transfer_id}/{current.path_id}",
                current.state.value if current.state else None,
                Stage(stage).value,
                verdict.reason,
            )
