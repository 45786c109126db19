"""
transferstore - Durable Transfer History
========================================

Event-sourced storage for peer-to-peer file transfers:
- Immutable peers, transfers, and per-file paths
- Append-only state events for every lifecycle stage
- Current state reconstructed with terminal precedence
- Per-entity serialized, guarded appends
"""

from .errors import (
    DuplicateId,
    IllegalTransition,
    InvalidPayload,
    RegressedCounter,
    SchemaVersionError,
    TransferStoreError,
    UnknownEntity,
    UnknownParent,
)
from .state import Direction, EngineEvent, EngineEventType, Stage, StateEvent, TransferFile
from .storage import TransferStorage, create_storage

__version__ = "0.1.0"

__all__ = [
    "Direction",
    "DuplicateId",
    "EngineEvent",
    "EngineEventType",
    "IllegalTransition",
    "InvalidPayload",
    "RegressedCounter",
    "SchemaVersionError",
    "Stage",
    "StateEvent",
    "TransferFile",
    "TransferStorage",
    "TransferStoreError",
    "UnknownEntity",
    "UnknownParent",
    "create_storage",
]
