"""
test_events.py - Tests for event payload rules and history serialization.
"""

from datetime import datetime

import pytest

from transferstore.errors import InvalidPayload
from transferstore.state.events import (
    EntityKind,
    Stage,
    StateEvent,
    merge_events,
    to_millis,
)


class TestPayloadValidation:
    """Each stage carries exactly the payload its table stores."""

    def test_negative_counter_rejected(self):
        with pytest.raises(InvalidPayload):
            StateEvent.started(-1).validate(EntityKind.OUTGOING_PATH)
        with pytest.raises(InvalidPayload):
            StateEvent.cancelled(by_peer=True, bytes=-5).validate(EntityKind.INCOMING_PATH)
        with pytest.raises(InvalidPayload):
            StateEvent.failed(status_code=1, bytes=-1).validate(EntityKind.OUTGOING_PATH)

    def test_counter_required_on_path_progress_stages(self):
        with pytest.raises(InvalidPayload):
            StateEvent.cancelled(by_peer=False).validate(EntityKind.OUTGOING_PATH)
        with pytest.raises(InvalidPayload):
            StateEvent.failed(status_code=3).validate(EntityKind.INCOMING_PATH)

    def test_transfer_events_have_no_counter(self):
        StateEvent.cancelled(by_peer=False).validate(EntityKind.TRANSFER)
        with pytest.raises(InvalidPayload):
            StateEvent.cancelled(by_peer=False, bytes=10).validate(EntityKind.TRANSFER)

    def test_stage_must_belong_to_entity(self):
        with pytest.raises(InvalidPayload):
            StateEvent.started(0).validate(EntityKind.TRANSFER)
        with pytest.raises(InvalidPayload):
            StateEvent.active().validate(EntityKind.OUTGOING_PATH)

    def test_missing_fields(self):
        with pytest.raises(InvalidPayload):
            StateEvent(Stage.CANCELLED).validate(EntityKind.TRANSFER)
        with pytest.raises(InvalidPayload):
            StateEvent(Stage.FAILED).validate(EntityKind.TRANSFER)

    def test_final_path_only_on_completed_download(self):
        StateEvent.completed("/tmp/a.txt").validate(EntityKind.INCOMING_PATH)
        StateEvent.completed().validate(EntityKind.OUTGOING_PATH)
        with pytest.raises(InvalidPayload):
            StateEvent.completed().validate(EntityKind.INCOMING_PATH)
        with pytest.raises(InvalidPayload):
            StateEvent.completed("/tmp/a.txt").validate(EntityKind.OUTGOING_PATH)

    def test_base_dir_only_on_started_download(self):
        StateEvent.started(0, base_dir="/tmp").validate(EntityKind.INCOMING_PATH)
        with pytest.raises(InvalidPayload):
            StateEvent.started(0, base_dir="/tmp").validate(EntityKind.OUTGOING_PATH)


class TestSerialization:
    """History entries follow the engine's JSON layout."""

    def test_millis(self):
        assert to_millis(datetime(1970, 1, 1, 0, 0, 1, 500000)) == 1500
        assert to_millis(None) is None

    def test_counter_named_by_direction(self):
        stamp = datetime(2023, 6, 13, 10, 10, 25, 991000)
        event = StateEvent.started(42).stamped(stamp, seq=1)

        assert event.to_dict(EntityKind.OUTGOING_PATH) == {
            "created_at": to_millis(stamp),
            "state": "started",
            "bytes_sent": 42,
        }
        assert event.to_dict(EntityKind.INCOMING_PATH)["bytes_received"] == 42

    def test_cancel_entry(self):
        event = StateEvent.cancelled(by_peer=True).stamped(datetime(2023, 6, 13), seq=1)
        assert event.to_dict(EntityKind.TRANSFER) == {
            "created_at": to_millis(datetime(2023, 6, 13)),
            "state": "cancel",
            "by_peer": True,
        }

    def test_merge_orders_across_tables(self):
        first = StateEvent.pending().stamped(datetime(2024, 1, 1, 0, 0, 0, 1000), seq=9)
        second = StateEvent.started(0).stamped(datetime(2024, 1, 1, 0, 0, 0, 2000), seq=1)
        third = StateEvent.completed().stamped(datetime(2024, 1, 1, 0, 0, 0, 3000), seq=4)

        assert merge_events([third, first], [second]) == [first, second, third]
