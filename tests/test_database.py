"""
test_database.py - Tests for the entity store and the event log tables.
"""

import sqlite3

import pytest
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from transferstore.errors import (
    DuplicateId,
    InvalidPayload,
    SchemaVersionError,
    UnknownEntity,
    UnknownParent,
)
from transferstore.state.database import (
    PATH_EVENT_MODELS,
    SCHEMA_VERSION,
    TRANSFER_EVENT_MODELS,
    IncomingPath,
    OutgoingPath,
    OutgoingPathStartedState,
    Peer,
    Transfer,
    TransferDatabase,
    create_database,
)
from transferstore.state.events import Direction, EntityKind, Stage, StateEvent


def _count(database, model) -> int:
    with database.read_session() as session:
        return session.execute(select(func.count()).select_from(model)).scalar()


@pytest.fixture
def seeded(database):
    database.create_peer("P1")
    database.create_transfer("T1", "P1", Direction.OUTGOING)
    database.create_outgoing_path("T1", "a.txt", "PA1", 100)
    return database


class TestEntityStore:
    """Identity rows are inserted once and never updated."""

    def test_duplicate_peer(self, database):
        database.create_peer("P1")
        with pytest.raises(DuplicateId) as exc_info:
            database.create_peer("P1")
        assert exc_info.value.kind == "peer"

    def test_ensure_peer_is_idempotent(self, database):
        database.ensure_peer("P1")
        database.ensure_peer("P1")
        assert _count(database, Peer) == 1

    def test_duplicate_transfer(self, seeded):
        with pytest.raises(DuplicateId):
            seeded.create_transfer("T1", "P1", Direction.INCOMING)

    def test_transfer_needs_peer(self, database):
        with pytest.raises(UnknownParent) as exc_info:
            database.create_transfer("T1", "nobody", Direction.OUTGOING)
        assert isinstance(exc_info.value, UnknownEntity)

    def test_path_needs_transfer(self, database):
        with pytest.raises(UnknownParent):
            database.create_outgoing_path("T404", "a.txt", "PA1", 10)

    def test_duplicate_path_id_within_transfer(self, seeded):
        with pytest.raises(DuplicateId):
            seeded.create_outgoing_path("T1", "b.txt", "PA1", 5)

    def test_same_path_id_in_other_transfer(self, seeded):
        seeded.create_transfer("T2", "P1", Direction.OUTGOING)
        seeded.create_outgoing_path("T2", "a.txt", "PA1", 100)
        assert _count(seeded, OutgoingPath) == 2

    def test_path_direction_must_match_transfer(self, seeded):
        with pytest.raises(InvalidPayload):
            seeded.create_incoming_path("T1", "a.txt", "PX", 10)
        assert _count(seeded, IncomingPath) == 0

    def test_negative_path_size(self, seeded):
        with pytest.raises(InvalidPayload):
            seeded.create_outgoing_path("T1", "b.txt", "PB1", -1)

    def test_direction_is_stored(self, seeded):
        with seeded.read_session() as session:
            assert seeded.load_transfer(session, "T1").direction == Direction.OUTGOING


class TestEventLog:
    """Insert-only event tables."""

    def test_append_to_unknown_transfer(self, database):
        with pytest.raises(UnknownEntity):
            database.append_transfer_event("T404", StateEvent.active())

    def test_append_to_unknown_path(self, seeded):
        with pytest.raises(UnknownEntity) as exc_info:
            seeded.append_path_event("T1", "nope", StateEvent.pending())
        assert exc_info.value.kind == "path"

    def test_payload_checked_before_insert(self, seeded):
        with pytest.raises(InvalidPayload):
            seeded.append_path_event("T1", "PA1", StateEvent.started(-10))
        assert _count(seeded, OutgoingPathStartedState) == 0

    def test_check_constraint_backstops_counter(self, seeded):
        with pytest.raises(IntegrityError):
            with seeded.write_session() as session:
                path_row = seeded.load_path(session, "T1", "PA1")
                session.add(OutgoingPathStartedState(
                    path_id=path_row.id, bytes_sent=-1, created_at=seeded.stamp(session),
                ))
                session.flush()

    def test_store_assigns_increasing_timestamps(self, seeded):
        for _ in range(20):
            seeded.append_path_event("T1", "PA1", StateEvent.started(0))
        seeded.append_transfer_event("T1", StateEvent.active())

        with seeded.read_session() as session:
            path_row = seeded.load_path(session, "T1", "PA1")
            events = seeded.fetch_path_events(session, path_row)
            transfer_events = seeded.fetch_transfer_events(session, seeded.load_transfer(session, "T1"))

        stamps = [event.created_at for event in events]
        assert stamps == sorted(stamps)
        assert len(set(stamps)) == len(stamps)
        assert all(stamp.microsecond % 1000 == 0 for stamp in stamps)
        assert transfer_events[0].created_at > stamps[-1]

    def test_timestamps_ordered_across_instances(self, seeded):
        other = TransferDatabase(seeded.db_path)
        try:
            # A burst pushes the shared clock ahead of wall time
            for _ in range(200):
                seeded.stamp()
            seeded.append_path_event("T1", "PA1", StateEvent.started(100))
            other.append_path_event("T1", "PA1", StateEvent.started(200))

            with other.read_session() as session:
                events = other.fetch_path_events(session, other.load_path(session, "T1", "PA1"))
        finally:
            other.close()

        assert [event.bytes for event in events] == [100, 200]
        assert events[0].created_at < events[1].created_at

    def test_timestamps_survive_reopen(self, tmp_path):
        first = TransferDatabase(tmp_path / "t.db")
        for _ in range(100):
            last = first.stamp()
        first.close()

        second = TransferDatabase(tmp_path / "t.db")
        try:
            assert second.stamp() > last
        finally:
            second.close()

    def test_payload_round_trips_through_tables(self, database):
        database.create_peer("P2")
        database.create_transfer("T2", "P2", Direction.INCOMING)
        database.create_incoming_path("T2", "cat.jpg", "PC1", 500)
        database.append_path_event("T2", "PC1", StateEvent.started(0, base_dir="/dl"))
        database.append_path_event("T2", "PC1", StateEvent.cancelled(by_peer=True, bytes=20))
        database.append_path_event("T2", "PC1", StateEvent.failed(status_code=9, bytes=30))
        database.append_path_event("T2", "PC1", StateEvent.completed("/dl/cat.jpg"))

        with database.read_session() as session:
            events = database.fetch_path_events(session, database.load_path(session, "T2", "PC1"))

        assert [event.stage for event in events] == [
            Stage.STARTED, Stage.CANCELLED, Stage.FAILED, Stage.COMPLETED,
        ]
        assert events[0].base_dir == "/dl"
        assert events[1].by_peer is True and events[1].bytes == 20
        assert events[2].status_code == 9 and events[2].bytes == 30
        assert events[3].final_path == "/dl/cat.jpg"


class TestCascadingDelete:
    """Removing a peer takes its whole subtree, atomically."""

    def _fill(self, database):
        database.append_transfer_event("T1", StateEvent.active())
        database.append_transfer_event("T1", StateEvent.cancelled(by_peer=False))
        for stage_event in (
            StateEvent.pending(),
            StateEvent.started(10),
            StateEvent.cancelled(by_peer=False, bytes=10),
            StateEvent.failed(status_code=1, bytes=10),
            StateEvent.completed(),
        ):
            database.append_path_event("T1", "PA1", stage_event)

    def test_remove_peer_cascades(self, seeded):
        self._fill(seeded)
        assert seeded.remove_peer("P1") == 1

        assert _count(seeded, Peer) == 0
        assert _count(seeded, Transfer) == 0
        assert _count(seeded, OutgoingPath) == 0
        for model in TRANSFER_EVENT_MODELS.values():
            assert _count(seeded, model) == 0
        for model in PATH_EVENT_MODELS[EntityKind.OUTGOING_PATH].values():
            assert _count(seeded, model) == 0

    def test_remove_unknown_peer(self, database):
        with pytest.raises(UnknownEntity):
            database.remove_peer("P404")

    def test_interrupted_delete_leaves_subtree_intact(self, seeded):
        self._fill(seeded)

        with pytest.raises(RuntimeError):
            with seeded.write_session() as session:
                session.execute(delete(Peer).where(Peer.id == "P1"))
                raise RuntimeError("crash mid-delete")

        assert _count(seeded, Peer) == 1
        assert _count(seeded, OutgoingPath) == 1
        for model in PATH_EVENT_MODELS[EntityKind.OUTGOING_PATH].values():
            assert _count(seeded, model) == 1

    def test_other_peers_untouched(self, seeded):
        seeded.create_peer("P2")
        seeded.create_transfer("T2", "P2", Direction.OUTGOING)
        seeded.remove_peer("P1")
        assert _count(seeded, Transfer) == 1

    def test_purge_by_id_skips_unknown(self, seeded):
        seeded.create_transfer("T2", "P1", Direction.INCOMING)
        assert seeded.purge_transfers(["T1", "T404"]) == 1
        assert _count(seeded, OutgoingPath) == 0
        assert _count(seeded, Peer) == 1

    def test_purge_until(self, seeded):
        cutoff = seeded.stamp()
        seeded.create_transfer("T2", "P1", Direction.INCOMING)
        assert seeded.purge_transfers_until(cutoff) == 1
        with seeded.read_session() as session:
            assert [t.id for t in seeded.list_transfers(session)] == ["T2"]


class TestSchema:
    """Database file setup."""

    def test_foreign_keys_enforced(self, database):
        with pytest.raises(IntegrityError):
            with database.write_session() as session:
                session.add(Transfer(id="T1", peer_id="ghost", is_outgoing=1, created_at=database.stamp(session)))
                session.flush()

    def test_schema_version_recorded(self, database):
        database.close()
        conn = sqlite3.connect(database.db_path)
        try:
            assert conn.execute("PRAGMA user_version").fetchone()[0] == SCHEMA_VERSION
        finally:
            conn.close()

    def test_newer_schema_refused(self, tmp_path):
        db_path = tmp_path / "future.db"
        conn = sqlite3.connect(db_path)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        conn.close()

        with pytest.raises(SchemaVersionError):
            TransferDatabase(db_path)

    def test_reopen_keeps_history(self, tmp_path):
        first = TransferDatabase(tmp_path / "t.db")
        first.create_peer("P1")
        first.close()

        second = TransferDatabase(tmp_path / "t.db")
        with pytest.raises(DuplicateId):
            second.create_peer("P1")
        second.close()

    def test_create_from_config(self, tmp_path):
        config = {
            "paths": {"state_dir": str(tmp_path / "state")},
            "storage": {"db_file": "x.db", "busy_timeout_ms": 100},
        }
        database = create_database(config)
        assert database.db_path == tmp_path / "state" / "x.db"
        database.close()
