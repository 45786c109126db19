"""
SQLite Transfer Database
========================

Durable home of the transfer history.

Layout:
- Identity tables (peers, transfers, outgoing_paths, incoming_paths) whose
  rows are written once and never updated.
- One append-only table per (entity kind x lifecycle stage), e.g.
  transfer_cancel_states or incoming_path_started_states.
- Foreign keys with ON DELETE/UPDATE CASCADE tie every row to its owner, so
  removing a peer or purging a transfer takes the whole subtree with it.

Every write transaction is opened with BEGIN IMMEDIATE, which takes the
database write lock up front. Reads use a deferred transaction and therefore
see a single WAL snapshot.

Timestamps come from the one-row store_clock table, advanced under that
write lock, so they increase strictly across processes and restarts.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Iterator, Iterable

from sqlalchemy import (
    create_engine,
    Column,
    String,
    Integer,
    Text,
    DateTime,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    event,
    delete,
    select,
    func,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import (
    declarative_base,
    declared_attr,
    sessionmaker,
    relationship,
    Session,
)

from ..errors import (
    DuplicateId,
    UnknownEntity,
    UnknownParent,
    InvalidPayload,
    SchemaVersionError,
)
from .events import (
    Direction,
    EntityKind,
    Stage,
    StateEvent,
    PathRecord,
    TransferRecord,
    merge_events,
)


logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

Base = declarative_base()


def _cascade_fk(target: str) -> ForeignKey:
    return ForeignKey(target, ondelete="CASCADE", onupdate="CASCADE")


# =============================================================================
# Identity tables
# =============================================================================

class Peer(Base):
    """A remote peer, created on first contact"""
    __tablename__ = "peers"

    id = Column(String, primary_key=True)
    created_at = Column(DateTime, nullable=False)

    transfers = relationship(
        "Transfer", back_populates="peer",
        cascade="all, delete-orphan", passive_deletes=True,
    )


class Transfer(Base):
    """A batch transfer with one peer; direction fixed at creation"""
    __tablename__ = "transfers"

    id = Column(String, primary_key=True)
    peer_id = Column(String, _cascade_fk("peers.id"), nullable=False, index=True)
    is_outgoing = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, index=True)

    peer = relationship("Peer", back_populates="transfers")
    outgoing_paths = relationship(
        "OutgoingPath", order_by="OutgoingPath.id",
        cascade="all, delete-orphan", passive_deletes=True,
    )
    incoming_paths = relationship(
        "IncomingPath", order_by="IncomingPath.id",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("is_outgoing = 0 OR is_outgoing = 1", name="ck_transfer_direction"),
    )

    @property
    def direction(self) -> Direction:
        return Direction.OUTGOING if self.is_outgoing else Direction.INCOMING

    @property
    def paths(self) -> list:
        return self.outgoing_paths if self.is_outgoing else self.incoming_paths


class _PathRow:
    """Columns shared by outgoing and incoming paths"""
    kind: EntityKind

    id = Column(Integer, primary_key=True, autoincrement=True)
    path = Column(Text, nullable=False)
    path_id = Column(String, nullable=False)
    bytes = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False)

    @declared_attr
    def transfer_id(cls):
        return Column(String, _cascade_fk("transfers.id"), nullable=False, index=True)

    @declared_attr
    def __table_args__(cls):
        return (
            UniqueConstraint("transfer_id", "path_id", name=f"uq_{cls.__tablename__}_path_id"),
            CheckConstraint("bytes >= 0", name=f"ck_{cls.__tablename__}_bytes"),
            {"sqlite_autoincrement": True},
        )


class OutgoingPath(_PathRow, Base):
    """A file being uploaded"""
    __tablename__ = "outgoing_paths"
    kind = EntityKind.OUTGOING_PATH


class IncomingPath(_PathRow, Base):
    """A file being downloaded"""
    __tablename__ = "incoming_paths"
    kind = EntityKind.INCOMING_PATH


PATH_MODELS = {
    EntityKind.OUTGOING_PATH: OutgoingPath,
    EntityKind.INCOMING_PATH: IncomingPath,
}


# =============================================================================
# Append-only state tables
# =============================================================================

class _EventRow:
    """
    One stored StateEvent.

    payload_columns names the stage-specific columns copied 1:1 from the
    event; counter names the byte counter column, if the stage has one.
    """
    stage: Stage
    parent_key: str
    payload_columns: tuple = ()
    counter: Optional[str] = None

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_at = Column(DateTime, nullable=False)

    @classmethod
    def columns_for(cls, state_event: StateEvent) -> dict:
        values = {name: getattr(state_event, name) for name in cls.payload_columns}
        if "by_peer" in values:
            values["by_peer"] = int(values["by_peer"])
        if cls.counter:
            values[cls.counter] = state_event.bytes
        return values

    def to_event(self) -> StateEvent:
        fields = {name: getattr(self, name) for name in self.payload_columns}
        if "by_peer" in fields:
            fields["by_peer"] = bool(fields["by_peer"])
        if self.counter:
            fields["bytes"] = getattr(self, self.counter)
        return StateEvent(self.stage, created_at=self.created_at, seq=self.id, **fields)


class _TransferEventRow(_EventRow):
    parent_key = "transfer_id"
    __table_args__ = {"sqlite_autoincrement": True}

    @declared_attr
    def transfer_id(cls):
        return Column(String, _cascade_fk("transfers.id"), nullable=False, index=True)


class _OutgoingEventRow(_EventRow):
    parent_key = "path_id"

    @declared_attr
    def path_id(cls):
        return Column(Integer, _cascade_fk("outgoing_paths.id"), nullable=False, index=True)

    @declared_attr
    def __table_args__(cls):
        if cls.counter:
            return (
                CheckConstraint(f"{cls.counter} >= 0", name=f"ck_{cls.__tablename__}_counter"),
                {"sqlite_autoincrement": True},
            )
        return {"sqlite_autoincrement": True}


class _IncomingEventRow(_OutgoingEventRow):
    @declared_attr
    def path_id(cls):
        return Column(Integer, _cascade_fk("incoming_paths.id"), nullable=False, index=True)


class TransferActiveState(_TransferEventRow, Base):
    __tablename__ = "transfer_active_states"
    stage = Stage.ACTIVE


class TransferCancelState(_TransferEventRow, Base):
    __tablename__ = "transfer_cancel_states"
    stage = Stage.CANCELLED
    payload_columns = ("by_peer",)

    by_peer = Column(Integer, nullable=False)


class TransferFailedState(_TransferEventRow, Base):
    __tablename__ = "transfer_failed_states"
    stage = Stage.FAILED
    payload_columns = ("status_code",)

    status_code = Column(Integer, nullable=False)


class OutgoingPathPendingState(_OutgoingEventRow, Base):
    __tablename__ = "outgoing_path_pending_states"
    stage = Stage.PENDING


class OutgoingPathStartedState(_OutgoingEventRow, Base):
    __tablename__ = "outgoing_path_started_states"
    stage = Stage.STARTED
    counter = "bytes_sent"

    bytes_sent = Column(Integer, nullable=False)


class OutgoingPathCancelState(_OutgoingEventRow, Base):
    __tablename__ = "outgoing_path_cancel_states"
    stage = Stage.CANCELLED
    payload_columns = ("by_peer",)
    counter = "bytes_sent"

    by_peer = Column(Integer, nullable=False)
    bytes_sent = Column(Integer, nullable=False)


class OutgoingPathFailedState(_OutgoingEventRow, Base):
    __tablename__ = "outgoing_path_failed_states"
    stage = Stage.FAILED
    payload_columns = ("status_code",)
    counter = "bytes_sent"

    status_code = Column(Integer, nullable=False)
    bytes_sent = Column(Integer, nullable=False)


class OutgoingPathCompletedState(_OutgoingEventRow, Base):
    __tablename__ = "outgoing_path_completed_states"
    stage = Stage.COMPLETED


class IncomingPathPendingState(_IncomingEventRow, Base):
    __tablename__ = "incoming_path_pending_states"
    stage = Stage.PENDING


class IncomingPathStartedState(_IncomingEventRow, Base):
    __tablename__ = "incoming_path_started_states"
    stage = Stage.STARTED
    payload_columns = ("base_dir",)
    counter = "bytes_received"

    bytes_received = Column(Integer, nullable=False)
    base_dir = Column(Text)


class IncomingPathCancelState(_IncomingEventRow, Base):
    __tablename__ = "incoming_path_cancel_states"
    stage = Stage.CANCELLED
    payload_columns = ("by_peer",)
    counter = "bytes_received"

    by_peer = Column(Integer, nullable=False)
    bytes_received = Column(Integer, nullable=False)


class IncomingPathFailedState(_IncomingEventRow, Base):
    __tablename__ = "incoming_path_failed_states"
    stage = Stage.FAILED
    payload_columns = ("status_code",)
    counter = "bytes_received"

    status_code = Column(Integer, nullable=False)
    bytes_received = Column(Integer, nullable=False)


class IncomingPathCompletedState(_IncomingEventRow, Base):
    __tablename__ = "incoming_path_completed_states"
    stage = Stage.COMPLETED
    payload_columns = ("final_path",)

    final_path = Column(Text, nullable=False)


TRANSFER_EVENT_MODELS = {
    Stage.ACTIVE: TransferActiveState,
    Stage.CANCELLED: TransferCancelState,
    Stage.FAILED: TransferFailedState,
}

PATH_EVENT_MODELS = {
    EntityKind.OUTGOING_PATH: {
        Stage.PENDING: OutgoingPathPendingState,
        Stage.STARTED: OutgoingPathStartedState,
        Stage.CANCELLED: OutgoingPathCancelState,
        Stage.FAILED: OutgoingPathFailedState,
        Stage.COMPLETED: OutgoingPathCompletedState,
    },
    EntityKind.INCOMING_PATH: {
        Stage.PENDING: IncomingPathPendingState,
        Stage.STARTED: IncomingPathStartedState,
        Stage.CANCELLED: IncomingPathCancelState,
        Stage.FAILED: IncomingPathFailedState,
        Stage.COMPLETED: IncomingPathCompletedState,
    },
}


class StoreClock(Base):
    """
    Single row holding the last timestamp issued by any writer.

    Read and advanced inside each write transaction, so every process sharing
    the file draws from one strictly increasing sequence.
    """
    __tablename__ = "store_clock"

    id = Column(Integer, primary_key=True)
    last_stamp = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("id = 1", name="ck_store_clock_single_row"),
    )


# =============================================================================
# Database
# =============================================================================

class TransferDatabase:
    """
    Entity store and event log on top of SQLite.

    Public create_*/append_*/remove_*/purge_* methods each run in their own
    write transaction. The load_*/fetch_*/insert_* helpers work inside a
    session supplied by the caller, so a facade can read, validate, and
    append within one transaction.
    """

    def __init__(
        self,
        db_path: str | Path,
        busy_timeout_ms: int = 5000,
        echo: bool = False,
    ):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        db_url = f"sqlite:///{self.db_path}"

        self.engine = create_engine(
            db_url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )

        @event.listens_for(self.engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            # Transactions are begun explicitly in the "begin" hook below
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
            cursor.close()

        @event.listens_for(self.engine, "begin")
        def begin_transaction(conn):
            mode = conn.get_execution_options().get("sqlite_begin", "DEFERRED")
            conn.exec_driver_sql(f"BEGIN {mode}")

        self._check_schema_version()
        Base.metadata.create_all(self.engine)
        with self.engine.begin() as conn:
            conn.exec_driver_sql(f"PRAGMA user_version = {SCHEMA_VERSION}")

        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)

    def _check_schema_version(self) -> None:
        with self.engine.connect() as conn:
            version = conn.exec_driver_sql("PRAGMA user_version").scalar() or 0
        if version > SCHEMA_VERSION:
            raise SchemaVersionError(SCHEMA_VERSION, version)

    def close(self) -> None:
        self.engine.dispose()

    # =========================================================================
    # Sessions & timestamps
    # =========================================================================

    @contextmanager
    def read_session(self) -> Iterator[Session]:
        """Deferred transaction: one consistent snapshot for all reads"""
        with self.Session() as session:
            with session.begin():
                yield session

    @contextmanager
    def write_session(self) -> Iterator[Session]:
        """Immediate transaction: holds the write lock until commit"""
        with self.Session.begin() as session:
            session.connection(execution_options={"sqlite_begin": "IMMEDIATE"})
            yield session

    def stamp(self, session: Optional[Session] = None) -> datetime:
        """
        Store-assigned timestamp: naive UTC, millisecond precision, strictly
        increasing across every table and every writer sharing the file.

        The floor lives in the store_clock row and must be read under the
        write lock, so `session` has to be a write session. Without one a
        write transaction of its own is opened.
        """
        if session is None:
            with self.write_session() as session:
                return self.stamp(session)

        now = datetime.now(timezone.utc).replace(tzinfo=None)
        now = now.replace(microsecond=now.microsecond // 1000 * 1000)

        clock = session.get(StoreClock, 1)
        if clock is None:
            clock = StoreClock(id=1)
            session.add(clock)
        if clock.last_stamp is not None and now <= clock.last_stamp:
            now = clock.last_stamp + timedelta(milliseconds=1)
        clock.last_stamp = now
        session.flush()
        return now

    # =========================================================================
    # Entity Store
    # =========================================================================

    def create_peer(self, peer_id: str) -> datetime:
        """Insert a peer; DuplicateId if it exists"""
        with self.write_session() as session:
            if session.get(Peer, peer_id) is not None:
                raise DuplicateId("peer", peer_id)
            peer = Peer(id=peer_id, created_at=self.stamp(session))
            session.add(peer)
        logger.info(f"Created peer {peer_id}")
        return peer.created_at

    def ensure_peer(self, peer_id: str, session: Optional[Session] = None) -> None:
        """Insert a peer unless it already exists"""
        if session is None:
            with self.write_session() as session:
                self.ensure_peer(peer_id, session)
            return
        if session.get(Peer, peer_id) is None:
            session.add(Peer(id=peer_id, created_at=self.stamp(session)))
            session.flush()
            logger.info(f"Created peer {peer_id}")

    def create_transfer(
        self,
        transfer_id: str,
        peer_id: str,
        direction: Direction,
        session: Optional[Session] = None,
    ) -> Transfer:
        """Insert a transfer; DuplicateId / UnknownParent"""
        if session is None:
            with self.write_session() as session:
                return self.create_transfer(transfer_id, peer_id, direction, session)

        direction = Direction(direction)
        if session.get(Transfer, transfer_id) is not None:
            raise DuplicateId("transfer", transfer_id)
        if session.get(Peer, peer_id) is None:
            raise UnknownParent("peer", peer_id)

        transfer = Transfer(
            id=transfer_id,
            peer_id=peer_id,
            is_outgoing=int(direction == Direction.OUTGOING),
            created_at=self.stamp(session),
        )
        session.add(transfer)
        session.flush()
        logger.info(f"Created {direction.value} transfer {transfer_id} with peer {peer_id}")
        return transfer

    def create_path(
        self,
        kind: EntityKind,
        transfer_id: str,
        path: str,
        path_id: str,
        bytes: int,
        session: Optional[Session] = None,
    ):
        """Insert a path of the given kind under a transfer of the same direction"""
        if session is None:
            with self.write_session() as session:
                return self.create_path(kind, transfer_id, path, path_id, bytes, session)

        kind = EntityKind(kind)
        transfer = session.get(Transfer, transfer_id)
        if transfer is None:
            raise UnknownParent("transfer", transfer_id)
        if EntityKind.for_path(transfer.direction) != kind:
            raise InvalidPayload(
                f"Cannot add {kind.value} to a {transfer.direction.value} transfer",
                transfer_id=transfer_id, path_id=path_id,
            )
        if bytes is None or bytes < 0:
            raise InvalidPayload("Path size must be >= 0", path_id=path_id, bytes=bytes)

        model = PATH_MODELS[kind]
        existing = session.execute(
            select(model.id).where(model.transfer_id == transfer_id, model.path_id == path_id)
        ).first()
        if existing is not None:
            raise DuplicateId(kind.value, f"{transfer_id}/{path_id}")

        row = model(
            transfer_id=transfer_id,
            path=path,
            path_id=path_id,
            bytes=bytes,
            created_at=self.stamp(session),
        )
        session.add(row)
        session.flush()
        logger.debug(f"Created {kind.value} {transfer_id}/{path_id} ({bytes} bytes)")
        return row

    def create_outgoing_path(self, transfer_id: str, path: str, path_id: str, bytes: int) -> OutgoingPath:
        return self.create_path(EntityKind.OUTGOING_PATH, transfer_id, path, path_id, bytes)

    def create_incoming_path(self, transfer_id: str, path: str, path_id: str, bytes: int) -> IncomingPath:
        return self.create_path(EntityKind.INCOMING_PATH, transfer_id, path, path_id, bytes)

    def remove_peer(self, peer_id: str) -> int:
        """
        Delete a peer with all of its transfers, paths, and events.

        Runs as one write transaction: either the whole subtree goes or none
        of it does. Returns the number of transfers removed.
        """
        with self.write_session() as session:
            if session.get(Peer, peer_id) is None:
                raise UnknownEntity("peer", peer_id)
            transfers = session.execute(
                select(func.count()).select_from(Transfer).where(Transfer.peer_id == peer_id)
            ).scalar()
            session.execute(delete(Peer).where(Peer.id == peer_id))
        logger.info(f"Removed peer {peer_id} and {transfers} transfer(s)")
        return transfers

    def purge_transfers(self, transfer_ids: Iterable[str]) -> int:
        """Delete the given transfers (unknown ids are skipped)"""
        transfer_ids = list(transfer_ids)
        if not transfer_ids:
            return 0
        with self.write_session() as session:
            result = session.execute(delete(Transfer).where(Transfer.id.in_(transfer_ids)))
        logger.info(f"Purged {result.rowcount} transfer(s)")
        return result.rowcount

    def purge_transfers_until(self, until: datetime) -> int:
        """Delete every transfer created before `until` (naive UTC)"""
        with self.write_session() as session:
            result = session.execute(delete(Transfer).where(Transfer.created_at < until))
        logger.info(f"Purged {result.rowcount} transfer(s) created before {until.isoformat()}")
        return result.rowcount

    # =========================================================================
    # Lookups (inside a caller's session)
    # =========================================================================

    def load_transfer(self, session: Session, transfer_id: str) -> Transfer:
        transfer = session.get(Transfer, transfer_id)
        if transfer is None:
            raise UnknownEntity("transfer", transfer_id)
        return transfer

    def load_path(self, session: Session, transfer_id: str, path_id: str):
        transfer = self.load_transfer(session, transfer_id)
        model = PATH_MODELS[EntityKind.for_path(transfer.direction)]
        row = session.execute(
            select(model).where(model.transfer_id == transfer_id, model.path_id == path_id)
        ).scalar_one_or_none()
        if row is None:
            raise UnknownEntity("path", f"{transfer_id}/{path_id}")
        return row

    def list_transfers(self, session: Session, since: Optional[datetime] = None) -> list[Transfer]:
        query = select(Transfer)
        if since is not None:
            query = query.where(Transfer.created_at >= since)
        return list(session.execute(query.order_by(Transfer.created_at, Transfer.id)).scalars())

    def list_peers(self, session: Session) -> list[Peer]:
        return list(session.execute(select(Peer).order_by(Peer.created_at)).scalars())

    # =========================================================================
    # Event Log
    # =========================================================================

    def fetch_transfer_events(self, session: Session, transfer: Transfer) -> list[StateEvent]:
        groups = []
        for model in TRANSFER_EVENT_MODELS.values():
            rows = session.execute(
                select(model).where(model.transfer_id == transfer.id)
            ).scalars()
            groups.append([row.to_event() for row in rows])
        return merge_events(*groups)

    def fetch_path_events(self, session: Session, path_row) -> list[StateEvent]:
        return self.fetch_paths_events(session, path_row.kind, [path_row.id])[path_row.id]

    def fetch_paths_events(
        self, session: Session, kind: EntityKind, path_row_ids: list[int]
    ) -> dict[int, list[StateEvent]]:
        """Events for many paths of one kind, one query per stage table"""
        events: dict[int, list[StateEvent]] = {row_id: [] for row_id in path_row_ids}
        if not path_row_ids:
            return events
        for model in PATH_EVENT_MODELS[kind].values():
            rows = session.execute(
                select(model).where(model.path_id.in_(path_row_ids))
            ).scalars()
            for row in rows:
                events[row.path_id].append(row.to_event())
        return {row_id: merge_events(group) for row_id, group in events.items()}

    def insert_transfer_event(
        self, session: Session, transfer: Transfer, state_event: StateEvent
    ) -> StateEvent:
        state_event.validate(EntityKind.TRANSFER)
        model = TRANSFER_EVENT_MODELS[state_event.stage]
        return self._insert(session, model, transfer.id, state_event, f"transfer {transfer.id}")

    def insert_path_event(self, session: Session, path_row, state_event: StateEvent) -> StateEvent:
        state_event.validate(path_row.kind)
        model = PATH_EVENT_MODELS[path_row.kind][state_event.stage]
        entity = f"{path_row.kind.value} {path_row.transfer_id}/{path_row.path_id}"
        return self._insert(session, model, path_row.id, state_event, entity)

    def _insert(self, session: Session, model, parent_id, state_event: StateEvent, entity: str) -> StateEvent:
        row = model(
            created_at=self.stamp(session),
            **{model.parent_key: parent_id},
            **model.columns_for(state_event),
        )
        session.add(row)
        try:
            session.flush()
        except IntegrityError as e:
            raise InvalidPayload(
                f"Rejected by schema constraint: {e.orig}", entity=entity,
            ) from e
        logger.debug(f"Appended '{model.stage.value}' to {entity}")
        return row.to_event()

    def append_transfer_event(self, transfer_id: str, state_event: StateEvent) -> StateEvent:
        """Append without consulting the transition guard"""
        with self.write_session() as session:
            transfer = self.load_transfer(session, transfer_id)
            return self.insert_transfer_event(session, transfer, state_event)

    def append_path_event(self, transfer_id: str, path_id: str, state_event: StateEvent) -> StateEvent:
        """Append without consulting the transition guard"""
        with self.write_session() as session:
            path_row = self.load_path(session, transfer_id, path_id)
            return self.insert_path_event(session, path_row, state_event)

    # =========================================================================
    # History
    # =========================================================================

    def build_record(self, session: Session, transfer: Transfer) -> TransferRecord:
        """Full ordered history of a transfer and all of its paths"""
        paths = list(transfer.paths)
        kind = EntityKind.for_path(transfer.direction)
        path_events = self.fetch_paths_events(session, kind, [row.id for row in paths])

        return TransferRecord(
            id=transfer.id,
            peer_id=transfer.peer_id,
            direction=transfer.direction,
            created_at=transfer.created_at,
            states=self.fetch_transfer_events(session, transfer),
            paths=[
                PathRecord(
                    transfer_id=transfer.id,
                    path=row.path,
                    path_id=row.path_id,
                    bytes=row.bytes,
                    created_at=row.created_at,
                    direction=transfer.direction,
                    states=path_events[row.id],
                )
                for row in paths
            ],
        )


def create_database(config: dict) -> TransferDatabase:
    """Create database from config"""
    state_dir = config.get("paths", {}).get("state_dir", "./state")
    storage = config.get("storage", {})
    db_path = Path(state_dir) / storage.get("db_file", "transfers.db")
    return TransferDatabase(
        db_path,
        busy_timeout_ms=storage.get("busy_timeout_ms", 5000),
        echo=storage.get("echo_sql", False),
    )
