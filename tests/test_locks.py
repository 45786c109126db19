"""
test_locks.py - Tests for per-entity locking.
"""

import threading
import time

from transferstore.state.locks import KeyedLock


class TestKeyedLock:
    """Same key serializes, different keys do not."""

    def test_same_key_is_exclusive(self):
        locks = KeyedLock()
        inside = []
        overlaps = []

        def worker():
            with locks.hold(("path", "T1", "PA1")):
                inside.append(1)
                if len(inside) > 1:
                    overlaps.append(1)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert overlaps == []

    def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        entered = threading.Event()

        def other():
            with locks.hold(("transfer", "T2")):
                entered.set()

        with locks.hold(("transfer", "T1")):
            thread = threading.Thread(target=other)
            thread.start()
            assert entered.wait(timeout=2)
            thread.join()

    def test_entries_are_released(self):
        locks = KeyedLock()
        with locks.hold("a"):
            with locks.hold_many(["c", "b"]):
                assert len(locks) == 3
        assert len(locks) == 0
