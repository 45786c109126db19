"""
Transfer Storage
================

The facade the transfer engine talks to.

Writes go: per-entity lock -> immediate write transaction -> reconstruct
current state -> transition guard -> append. The in-process locks are always
taken before the database write lock, never the other way round.

Reads reconstruct state from the event log inside one snapshot.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from .errors import IllegalTransition, InvalidPayload
from .state.database import TransferDatabase, Transfer, create_database
from .state.events import (
    Direction,
    EngineEvent,
    EngineEventType,
    EntityKind,
    Stage,
    StateEvent,
    TransferRecord,
)
from .state.fsm import (
    PathState,
    Precedence,
    TransferState,
    TransitionGuard,
    Verdict,
    reduce_path,
    reduce_transfer,
)
from .state.locks import KeyedLock


logger = logging.getLogger(__name__)


def _transfer_key(transfer_id: str) -> tuple:
    return ("transfer", transfer_id)


def _path_key(transfer_id: str, path_id: str) -> tuple:
    return ("path", transfer_id, path_id)


class TransferStorage:
    """
    Durable, event-sourced transfer history.

    Usage:
        storage = create_storage(config)
        storage.create_peer("P1")
        storage.create_transfer("T1", "P1", Direction.OUTGOING)
        storage.create_outgoing_path("T1", "docs/a.txt", "PA1", bytes=1000)
        storage.append_path_event("T1", "PA1", StateEvent.pending())
        storage.current_path_state("T1", "PA1").state   # Stage.PENDING
    """

    def __init__(
        self,
        database: TransferDatabase,
        precedence: Precedence = Precedence.FIRST,
        guard: Optional[TransitionGuard] = None,
    ):
        self.database = database
        self.precedence = Precedence(precedence)
        self.guard = guard or TransitionGuard()
        self.locks = KeyedLock()

    def close(self) -> None:
        self.database.close()

    # =========================================================================
    # Entity Store
    # =========================================================================

    def create_peer(self, peer_id: str) -> datetime:
        return self.database.create_peer(peer_id)

    def ensure_peer(self, peer_id: str) -> None:
        self.database.ensure_peer(peer_id)

    def create_transfer(self, transfer_id: str, peer_id: str, direction: Direction) -> None:
        self.database.create_transfer(transfer_id, peer_id, direction)

    def create_outgoing_path(self, transfer_id: str, path: str, path_id: str, bytes: int) -> None:
        self.database.create_outgoing_path(transfer_id, path, path_id, bytes)

    def create_incoming_path(self, transfer_id: str, path: str, path_id: str, bytes: int) -> None:
        self.database.create_incoming_path(transfer_id, path, path_id, bytes)

    def remove_peer(self, peer_id: str) -> int:
        return self.database.remove_peer(peer_id)

    def purge_transfers(self, transfer_ids: Iterable[str]) -> int:
        return self.database.purge_transfers(transfer_ids)

    def purge_transfers_until(self, until: datetime) -> int:
        return self.database.purge_transfers_until(until)

    def list_peers(self) -> list[str]:
        with self.database.read_session() as session:
            return [peer.id for peer in self.database.list_peers(session)]

    # =========================================================================
    # Reconstruction
    # =========================================================================

    def _transfer_state(self, session: Session, transfer: Transfer) -> TransferState:
        return reduce_transfer(
            transfer.id,
            self.database.fetch_transfer_events(session, transfer),
            direction=transfer.direction,
            precedence=self.precedence,
        )

    def _path_state(self, session: Session, path_row, direction: Direction) -> PathState:
        return reduce_path(
            path_row.transfer_id,
            path_row.path_id,
            self.database.fetch_path_events(session, path_row),
            direction=direction,
            total_bytes=path_row.bytes,
            precedence=self.precedence,
        )

    def _path_states(self, session: Session, transfer: Transfer) -> list[PathState]:
        paths = list(transfer.paths)
        kind = EntityKind.for_path(transfer.direction)
        events = self.database.fetch_paths_events(session, kind, [row.id for row in paths])
        return [
            reduce_path(
                transfer.id,
                row.path_id,
                events[row.id],
                direction=transfer.direction,
                total_bytes=row.bytes,
                precedence=self.precedence,
            )
            for row in paths
        ]

    @staticmethod
    def _surface(state, strict: bool):
        if strict and state.anomalies:
            raise state.anomalies[0]
        return state

    def current_transfer_state(self, transfer_id: str, strict: bool = False) -> TransferState:
        with self.database.read_session() as session:
            transfer = self.database.load_transfer(session, transfer_id)
            return self._surface(self._transfer_state(session, transfer), strict)

    def current_path_state(self, transfer_id: str, path_id: str, strict: bool = False) -> PathState:
        """
        Current state of one path.

        A regressed byte counter is reported in `anomalies`; with strict=True
        the first one is raised as RegressedCounter instead.
        """
        with self.database.read_session() as session:
            path_row = self.database.load_path(session, transfer_id, path_id)
            direction = self.database.load_transfer(session, transfer_id).direction
            return self._surface(self._path_state(session, path_row, direction), strict)

    def path_states(self, transfer_id: str) -> list[PathState]:
        with self.database.read_session() as session:
            transfer = self.database.load_transfer(session, transfer_id)
            return self._path_states(session, transfer)

    def current_states(
        self, since: Optional[datetime] = None
    ) -> list[tuple[TransferState, list[PathState]]]:
        """
        Every transfer with its paths, reconstructed from one snapshot.
        With `since` (naive UTC) only transfers created at or after it.
        """
        with self.database.read_session() as session:
            return [
                (self._transfer_state(session, transfer), self._path_states(session, transfer))
                for transfer in self.database.list_transfers(session, since=since)
            ]

    # =========================================================================
    # History
    # =========================================================================

    def transfer_history(self, transfer_id: str) -> TransferRecord:
        """Full ordered event history of a transfer and its paths"""
        with self.database.read_session() as session:
            transfer = self.database.load_transfer(session, transfer_id)
            return self.database.build_record(session, transfer)

    def transfers_since(self, since: Optional[datetime] = None) -> list[TransferRecord]:
        """History of every transfer created at or after `since` (naive UTC)"""
        with self.database.read_session() as session:
            return [
                self.database.build_record(session, transfer)
                for transfer in self.database.list_transfers(session, since=since)
            ]

    # =========================================================================
    # Guarded appends
    # =========================================================================

    def validate_transfer_event(self, transfer_id: str, stage: Stage) -> Verdict:
        with self.database.read_session() as session:
            transfer = self.database.load_transfer(session, transfer_id)
            return self.guard.validate_transfer(self._transfer_state(session, transfer), stage)

    def validate_path_event(self, transfer_id: str, path_id: str, stage: Stage) -> Verdict:
        with self.database.read_session() as session:
            path_row = self.database.load_path(session, transfer_id, path_id)
            direction = self.database.load_transfer(session, transfer_id).direction
            return self.guard.validate_path(self._path_state(session, path_row, direction), stage)

    def append_transfer_event(self, transfer_id: str, state_event: StateEvent) -> StateEvent:
        """Validate against current state and append; IllegalTransition if rejected"""
        state_event.validate(EntityKind.TRANSFER)
        with self.locks.hold(_transfer_key(transfer_id)):
            with self.database.write_session() as session:
                return self._append_transfer(session, transfer_id, state_event)

    def append_path_event(self, transfer_id: str, path_id: str, state_event: StateEvent) -> StateEvent:
        """Validate against current state and append; IllegalTransition if rejected"""
        return self._append_path(transfer_id, path_id, lambda current: state_event)

    def _append_transfer(self, session: Session, transfer_id: str, state_event: StateEvent) -> StateEvent:
        transfer = self.database.load_transfer(session, transfer_id)
        current = self._transfer_state(session, transfer)
        try:
            self.guard.check_transfer(current, state_event.stage)
        except IllegalTransition as e:
            logger.warning(f"Rejected '{state_event.stage.value}' for transfer {transfer_id}: {e.reason}")
            raise
        return self.database.insert_transfer_event(session, transfer, state_event)

    def _append_path(
        self,
        transfer_id: str,
        path_id: str,
        make_event: Callable[[PathState], StateEvent],
    ) -> StateEvent:
        with self.locks.hold(_path_key(transfer_id, path_id)):
            with self.database.write_session() as session:
                transfer = self.database.load_transfer(session, transfer_id)
                path_row = self.database.load_path(session, transfer_id, path_id)
                current = self._path_state(session, path_row, transfer.direction)

                state_event = make_event(current)
                state_event.validate(path_row.kind)
                try:
                    self.guard.check_path(current, state_event.stage)
                except IllegalTransition as e:
                    logger.warning(
                        f"Rejected '{state_event.stage.value}' for path "
                        f"{transfer_id}/{path_id}: {e.reason}"
                    )
                    raise
                return self.database.insert_path_event(session, path_row, state_event)

    def _terminate_transfer(
        self,
        transfer_id: str,
        transfer_event: StateEvent,
        make_path_event: Callable[[PathState], StateEvent],
    ) -> int:
        """
        Record a transfer-level terminal event plus the matching terminal on
        every path still in flight, in one transaction. Returns the number of
        paths terminated.

        Path locks must be held before the write lock, so the path list is
        read first and checked again inside the write transaction. A path
        added in between means nothing is written and the locks are taken
        again over the wider set.
        """
        transfer_event.validate(EntityKind.TRANSFER)
        path_ids = self._path_ids(transfer_id)

        while True:
            keys = [_transfer_key(transfer_id)] + [_path_key(transfer_id, p) for p in path_ids]
            with self.locks.hold_many(keys):
                with self.database.write_session() as session:
                    transfer = self.database.load_transfer(session, transfer_id)
                    current_ids = [row.path_id for row in transfer.paths]
                    if not set(current_ids) <= set(path_ids):
                        logger.debug(f"Transfer {transfer_id} gained paths, retaking locks")
                        path_ids = current_ids
                        continue

                    self._append_transfer(session, transfer_id, transfer_event)
                    terminated = 0
                    for path_row in transfer.paths:
                        current = self._path_state(session, path_row, transfer.direction)
                        path_event = make_path_event(current)
                        if not self.guard.validate_path(current, path_event.stage):
                            continue
                        self.database.insert_path_event(session, path_row, path_event)
                        terminated += 1
                    return terminated

    def _path_ids(self, transfer_id: str) -> list[str]:
        with self.database.read_session() as session:
            transfer = self.database.load_transfer(session, transfer_id)
            return [row.path_id for row in transfer.paths]

    # =========================================================================
    # Engine events
    # =========================================================================

    def handle_event(self, engine_event: EngineEvent) -> None:
        """
        Record one event from the transfer engine.

        IllegalTransition, UnknownEntity and friends propagate to the caller.
        """
        event_type = EngineEventType(engine_event.event_type)
        transfer_id = engine_event.transfer_id
        path_id = engine_event.path_id
        logger.debug(f"Engine event {event_type.value} for {transfer_id} {path_id or ''}".rstrip())

        if event_type == EngineEventType.PENDING:
            self._record_new_transfer(engine_event)

        elif event_type == EngineEventType.ACTIVE:
            self.append_transfer_event(transfer_id, StateEvent.active())

        elif event_type == EngineEventType.STARTED:
            self.append_path_event(
                transfer_id, path_id,
                StateEvent.started(0, base_dir=engine_event.base_dir),
            )

        elif event_type == EngineEventType.PROGRESS:
            self.append_path_event(
                transfer_id, path_id, StateEvent.started(engine_event.progress),
            )

        elif event_type == EngineEventType.FILE_CANCELLED:
            self._append_path(
                transfer_id, path_id,
                lambda current: StateEvent.cancelled(engine_event.by_peer, current.bytes or 0),
            )

        elif event_type == EngineEventType.FILE_FAILED:
            self._append_path(
                transfer_id, path_id,
                lambda current: StateEvent.failed(engine_event.status_code, current.bytes or 0),
            )

        elif event_type == EngineEventType.FILE_UPLOAD_COMPLETE:
            self.append_path_event(transfer_id, path_id, StateEvent.completed())

        elif event_type == EngineEventType.FILE_DOWNLOAD_COMPLETE:
            self.append_path_event(
                transfer_id, path_id, StateEvent.completed(engine_event.final_path),
            )

        elif event_type == EngineEventType.TRANSFER_CANCELLED:
            self._terminate_transfer(
                transfer_id,
                StateEvent.cancelled(engine_event.by_peer),
                lambda current: StateEvent.cancelled(engine_event.by_peer, current.bytes or 0),
            )

        elif event_type == EngineEventType.TRANSFER_FAILED:
            self._terminate_transfer(
                transfer_id,
                StateEvent.failed(engine_event.status_code),
                lambda current: StateEvent.failed(engine_event.status_code, current.bytes or 0),
            )

    def _record_new_transfer(self, engine_event: EngineEvent) -> None:
        """Peer, transfer, its paths, and each path's pending event, atomically"""
        if engine_event.direction is None or engine_event.peer_id is None:
            raise InvalidPayload(
                "A new transfer needs a direction and a peer",
                transfer_id=engine_event.transfer_id,
            )
        direction = Direction(engine_event.direction)
        kind = EntityKind.for_path(direction)

        with self.locks.hold(_transfer_key(engine_event.transfer_id)):
            with self.database.write_session() as session:
                self.database.ensure_peer(engine_event.peer_id, session)
                self.database.create_transfer(
                    engine_event.transfer_id, engine_event.peer_id, direction, session,
                )
                for file in engine_event.files:
                    path_row = self.database.create_path(
                        kind, engine_event.transfer_id, file.path, file.path_id, file.bytes, session,
                    )
                    self.database.insert_path_event(session, path_row, StateEvent.pending())


def create_storage(config: dict) -> TransferStorage:
    """Create storage facade from config"""
    database = create_database(config)
    precedence = config.get("storage", {}).get("terminal_precedence", Precedence.FIRST.value)
    return TransferStorage(database, precedence=Precedence(precedence))
