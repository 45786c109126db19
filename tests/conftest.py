"""
conftest.py - pytest fixtures for transferstore tests.
"""

import pytest

from transferstore import Direction, TransferStorage
from transferstore.state.database import TransferDatabase


@pytest.fixture
def database(tmp_path):
    """A fresh database in a temp directory."""
    db = TransferDatabase(tmp_path / "transfers.db")
    yield db
    db.close()


@pytest.fixture
def storage(database):
    """Storage facade over the fresh database."""
    return TransferStorage(database)


@pytest.fixture
def outgoing(storage):
    """
    Peer P1 with outgoing transfer T1 holding two paths:
    PA1 (1000 bytes) and PB1 (empty file).
    """
    storage.create_peer("P1")
    storage.create_transfer("T1", "P1", Direction.OUTGOING)
    storage.create_outgoing_path("T1", "docs/report.pdf", "PA1", bytes=1000)
    storage.create_outgoing_path("T1", "docs/empty.txt", "PB1", bytes=0)
    return storage


@pytest.fixture
def incoming(storage):
    """Peer P2 with incoming transfer T2 holding path PC1 (500 bytes)."""
    storage.create_peer("P2")
    storage.create_transfer("T2", "P2", Direction.INCOMING)
    storage.create_incoming_path("T2", "photos/cat.jpg", "PC1", bytes=500)
    return storage
