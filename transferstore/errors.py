"""
Error Taxonomy
==============

Every failure the store raises derives from TransferStoreError, which carries
a human message plus a context dict of the identifiers involved.

Storage-level failures (disk full, locked database, corruption) are NOT
wrapped: SQLAlchemy's exceptions propagate to the caller unchanged.
"""

from typing import Any, Optional


class TransferStoreError(Exception):
    """Base exception for all transferstore errors"""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            context_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class DuplicateId(TransferStoreError):
    """An entity with this identifier already exists"""

    def __init__(self, kind: str, entity_id: Any) -> None:
        super().__init__(
            f"{kind} already exists",
            context={"kind": kind, "id": entity_id},
        )
        self.kind = kind
        self.entity_id = entity_id


class UnknownEntity(TransferStoreError):
    """The addressed entity does not exist"""

    def __init__(self, kind: str, entity_id: Any) -> None:
        super().__init__(
            f"{kind} not found",
            context={"kind": kind, "id": entity_id},
        )
        self.kind = kind
        self.entity_id = entity_id


class UnknownParent(UnknownEntity):
    """The parent referenced by a new entity does not exist"""


class InvalidPayload(TransferStoreError):
    """
    A structural constraint was violated by the caller.

    Mirrors the schema's CHECK constraints (negative byte counters) and the
    per-stage payload shape (missing status code, misplaced final path, ...).
    """

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message, context=context)


class IllegalTransition(TransferStoreError):
    """
    The transition guard rejected an event for the entity's current state.

    Recoverable: the caller may pick a different action or report it.
    """

    def __init__(self, entity: str, current: Any, proposed: Any, reason: str) -> None:
        super().__init__(
            f"Illegal transition: {reason}",
            context={"entity": entity, "current": current, "proposed": proposed},
        )
        self.entity = entity
        self.current = current
        self.proposed = proposed
        self.reason = reason


class RegressedCounter(TransferStoreError):
    """
    A byte counter went backwards in a path's history.

    Detected at read time. Reconstruction attaches these to the returned
    state as anomalies instead of failing, unless asked to be strict.
    """

    def __init__(self, entity: str, previous: int, current: int, created_at: Any = None) -> None:
        super().__init__(
            f"Byte counter regressed from {previous} to {current}",
            context={"entity": entity, "previous": previous, "current": current},
        )
        self.entity = entity
        self.previous = previous
        self.current = current
        self.created_at = created_at

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RegressedCounter):
            return NotImplemented
        return (self.entity, self.previous, self.current) == (
            other.entity, other.previous, other.current
        )

    def __hash__(self) -> int:
        return hash((self.entity, self.previous, self.current))


class SchemaVersionError(TransferStoreError):
    """The database file was written by a newer schema than this code knows"""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            "Unsupported schema version",
            context={"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual
