"""
State Module
============

Event-sourced transfer state:
1. Entity tables + one append-only table per lifecycle stage (database)
2. Stage vocabulary and history records (events)
3. Reconstruction by terminal precedence and the transition guard (fsm)
"""

from .events import (
    Direction,
    EngineEvent,
    EngineEventType,
    EntityKind,
    PathRecord,
    Stage,
    StateEvent,
    TransferFile,
    TransferRecord,
)
from .fsm import (
    PathState,
    Precedence,
    TransferState,
    TransitionGuard,
    Verdict,
    reduce_path,
    reduce_transfer,
)
from .database import TransferDatabase
from .locks import KeyedLock

__all__ = [
    "Direction",
    "EngineEvent",
    "EngineEventType",
    "EntityKind",
    "KeyedLock",
    "PathRecord",
    "PathState",
    "Precedence",
    "Stage",
    "StateEvent",
    "TransferDatabase",
    "TransferFile",
    "TransferRecord",
    "TransferState",
    "TransitionGuard",
    "Verdict",
    "reduce_path",
    "reduce_transfer",
]
