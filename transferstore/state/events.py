"""
State Events
============

The vocabulary of the append-only log.

A transfer or path never carries a status field. Its lifecycle is a list of
immutable StateEvent records, one per stored row, each tagged with a Stage.
The stage decides which payload fields are meaningful:

    transfer:  active | cancel{by_peer} | failed{status_code}
    path:      pending | started{bytes} | cancel{by_peer, bytes}
               | failed{status_code, bytes} | completed{final_path}

This module also defines the engine-side event stream (EngineEvent) that the
storage facade ingests, and the history records returned to operators.
"""

from datetime import datetime, timedelta
from typing import Optional, Any
from dataclasses import dataclass, field, replace
from enum import Enum

from ..errors import InvalidPayload


EPOCH = datetime(1970, 1, 1)


def to_millis(timestamp: Optional[datetime]) -> Optional[int]:
    """Naive UTC datetime -> unix milliseconds"""
    if timestamp is None:
        return None
    return (timestamp - EPOCH) // timedelta(milliseconds=1)


class Direction(str, Enum):
    """Direction of a transfer, fixed for its whole life"""
    OUTGOING = "outgoing"
    INCOMING = "incoming"


class EntityKind(str, Enum):
    """Kinds of entity that own an event log"""
    TRANSFER = "transfer"
    OUTGOING_PATH = "outgoing_path"
    INCOMING_PATH = "incoming_path"

    @classmethod
    def for_path(cls, direction: Direction) -> "EntityKind":
        if Direction(direction) == Direction.OUTGOING:
            return cls.OUTGOING_PATH
        return cls.INCOMING_PATH


class Stage(str, Enum):
    """Lifecycle stages, one event table per (entity kind, stage)"""
    PENDING = "pending"
    ACTIVE = "active"
    STARTED = "started"
    CANCELLED = "cancel"
    FAILED = "failed"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STAGES

    @property
    def rank(self) -> int:
        """Tie-break for events sharing a timestamp"""
        return STAGE_RANK[self]


TERMINAL_STAGES = frozenset({Stage.CANCELLED, Stage.FAILED, Stage.COMPLETED})

STAGE_RANK = {
    Stage.PENDING: 0,
    Stage.ACTIVE: 1,
    Stage.STARTED: 2,
    Stage.CANCELLED: 3,
    Stage.FAILED: 4,
    Stage.COMPLETED: 5,
}

ALLOWED_STAGES = {
    EntityKind.TRANSFER: (Stage.ACTIVE, Stage.CANCELLED, Stage.FAILED),
    EntityKind.OUTGOING_PATH: (
        Stage.PENDING, Stage.STARTED, Stage.CANCELLED, Stage.FAILED, Stage.COMPLETED,
    ),
    EntityKind.INCOMING_PATH: (
        Stage.PENDING, Stage.STARTED, Stage.CANCELLED, Stage.FAILED, Stage.COMPLETED,
    ),
}

# Stages whose rows carry a byte counter
COUNTER_STAGES = frozenset({Stage.STARTED, Stage.CANCELLED, Stage.FAILED})

COUNTER_NAMES = {
    EntityKind.OUTGOING_PATH: "bytes_sent",
    EntityKind.INCOMING_PATH: "bytes_received",
}


@dataclass(frozen=True)
class StateEvent:
    """
    One immutable lifecycle event.

    created_at and seq are assigned by the store when the row is written;
    events built by callers leave them unset.
    """
    stage: Stage
    created_at: Optional[datetime] = None
    by_peer: Optional[bool] = None
    status_code: Optional[int] = None
    bytes: Optional[int] = None
    final_path: Optional[str] = None
    base_dir: Optional[str] = None
    seq: Optional[int] = field(default=None, compare=False)

    # Variant constructors

    @classmethod
    def active(cls) -> "StateEvent":
        return cls(Stage.ACTIVE)

    @classmethod
    def pending(cls) -> "StateEvent":
        return cls(Stage.PENDING)

    @classmethod
    def started(cls, bytes: int = 0, base_dir: Optional[str] = None) -> "StateEvent":
        return cls(Stage.STARTED, bytes=bytes, base_dir=base_dir)

    @classmethod
    def cancelled(cls, by_peer: bool, bytes: Optional[int] = None) -> "StateEvent":
        return cls(Stage.CANCELLED, by_peer=by_peer, bytes=bytes)

    @classmethod
    def failed(cls, status_code: int, bytes: Optional[int] = None) -> "StateEvent":
        return cls(Stage.FAILED, status_code=status_code, bytes=bytes)

    @classmethod
    def completed(cls, final_path: Optional[str] = None) -> "StateEvent":
        return cls(Stage.COMPLETED, final_path=final_path)

    def stamped(self, created_at: datetime, seq: int) -> "StateEvent":
        return replace(self, created_at=created_at, seq=seq)

    def sort_key(self) -> tuple:
        return (self.created_at or EPOCH, self.stage.rank, self.seq or 0)

    def validate(self, kind: EntityKind) -> None:
        """Check the payload shape for this stage and entity kind"""
        stage = Stage(self.stage)
        if stage not in ALLOWED_STAGES[kind]:
            raise InvalidPayload(
                f"Stage '{stage.value}' is not recorded for {kind.value}",
                stage=stage.value, kind=kind.value,
            )

        if stage == Stage.CANCELLED and self.by_peer is None:
            raise InvalidPayload("Cancel event requires by_peer", kind=kind.value)
        if stage == Stage.FAILED and self.status_code is None:
            raise InvalidPayload("Failed event requires status_code", kind=kind.value)

        if kind == EntityKind.TRANSFER:
            if self.bytes is not None:
                raise InvalidPayload("Transfer events carry no byte counter")
            return

        if stage in COUNTER_STAGES:
            if self.bytes is None:
                raise InvalidPayload(
                    f"{COUNTER_NAMES[kind]} is required for '{stage.value}'",
                    stage=stage.value, kind=kind.value,
                )
            if self.bytes < 0:
                raise InvalidPayload(
                    f"{COUNTER_NAMES[kind]} must be >= 0",
                    stage=stage.value, bytes=self.bytes,
                )
        elif self.bytes is not None:
            raise InvalidPayload(
                f"'{stage.value}' carries no byte counter", stage=stage.value,
            )

        if self.base_dir is not None and not (
            kind == EntityKind.INCOMING_PATH and stage == Stage.STARTED
        ):
            raise InvalidPayload("base_dir is only recorded when a download starts")

        if stage == Stage.COMPLETED:
            if kind == EntityKind.INCOMING_PATH and not self.final_path:
                raise InvalidPayload("Completed download requires final_path")
            if kind == EntityKind.OUTGOING_PATH and self.final_path is not None:
                raise InvalidPayload("Completed upload carries no final_path")
        elif self.final_path is not None:
            raise InvalidPayload(
                f"'{stage.value}' carries no final_path", stage=stage.value,
            )

    def to_dict(self, kind: EntityKind) -> dict[str, Any]:
        """History dump entry, matching the engine's JSON layout"""
        data: dict[str, Any] = {
            "created_at": to_millis(self.created_at),
            "state": self.stage.value,
        }
        if self.by_peer is not None:
            data["by_peer"] = self.by_peer
        if self.status_code is not None:
            data["status_code"] = self.status_code
        if self.base_dir is not None:
            data["base_dir"] = self.base_dir
        if self.bytes is not None and kind in COUNTER_NAMES:
            data[COUNTER_NAMES[kind]] = self.bytes
        if self.final_path is not None:
            data["final_path"] = self.final_path
        return data


def merge_events(*groups) -> list[StateEvent]:
    """Merge per-stage event lists into one list in log order"""
    merged = [event for group in groups for event in group]
    merged.sort(key=StateEvent.sort_key)
    return merged


# =============================================================================
# History records
# =============================================================================

@dataclass
class PathRecord:
    """A path's identity plus its full event history"""
    transfer_id: str
    path: str
    path_id: str
    bytes: int
    created_at: datetime
    direction: Direction
    states: list = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        kind = EntityKind.for_path(self.direction)
        return {
            "transfer_id": self.transfer_id,
            "path": self.path,
            "path_id": self.path_id,
            "bytes": self.bytes,
            "created_at": to_millis(self.created_at),
            "states": [event.to_dict(kind) for event in self.states],
        }


@dataclass
class TransferRecord:
    """A transfer's identity, its event history, and all of its paths"""
    id: str
    peer_id: str
    direction: Direction
    created_at: datetime
    states: list = field(default_factory=list)
    paths: list = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "peer_id": self.peer_id,
            "created_at": to_millis(self.created_at),
            "type": self.direction.value,
            "states": [event.to_dict(EntityKind.TRANSFER) for event in self.states],
            "paths": [path.to_dict() for path in self.paths],
        }


# =============================================================================
# Engine events
# =============================================================================

class EngineEventType(str, Enum):
    """Events emitted by the transfer engine as transfers progress"""
    PENDING = "pending"
    ACTIVE = "active"
    STARTED = "started"
    PROGRESS = "progress"
    FILE_CANCELLED = "file_cancelled"
    FILE_FAILED = "file_failed"
    FILE_UPLOAD_COMPLETE = "file_upload_complete"
    FILE_DOWNLOAD_COMPLETE = "file_download_complete"
    TRANSFER_CANCELLED = "transfer_cancelled"
    TRANSFER_FAILED = "transfer_failed"


@dataclass(frozen=True)
class TransferFile:
    """A file announced in a new transfer"""
    path_id: str
    path: str
    bytes: int


@dataclass
class EngineEvent:
    """
    A single event from the engine.

    Which fields are set depends on event_type; `pending` carries the whole
    transfer description (peer_id, direction, files).
    """
    event_type: EngineEventType
    transfer_id: str
    direction: Optional[Direction] = None
    peer_id: Optional[str] = None
    files: list = field(default_factory=list)
    path_id: Optional[str] = None
    progress: Optional[int] = None
    by_peer: Optional[bool] = None
    status_code: Optional[int] = None
    final_path: Optional[str] = None
    base_dir: Optional[str] = None
