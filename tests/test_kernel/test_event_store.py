"""
Tests for SQLite event store

Tests cover:
- Basic append and load operations
- Optimistic locking (version conflicts)
- Command idempotency
- Global positions for projection catch-up
- Query operations
"""

from datetime import datetime, timedelta, timezone

import pytest

from delivery_rotation.kernel.errors import StreamVersionConflict
from delivery_rotation.kernel.event_store import SQLiteEventStore
from delivery_rotation.kernel.events import create_event

T0 = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_event(
    stream_id: str,
    version: int,
    command_id: str,
    event_type: str = "ProviderContacted",
    stream_type: str = "DeliveryRequest",
    occurred_at: datetime = T0,
    payload: dict | None = None,
):
    return create_event(
        event_id=f"evt_{stream_id}_{version}",
        stream_id=stream_id,
        stream_type=stream_type,
        event_type=event_type,
        occurred_at=occurred_at,
        command_id=command_id,
        payload=payload or {"provider_id": "p1"},
        version=version,
    )


def test_append_and_load_single_event(event_store: SQLiteEventStore) -> None:
    """Test appending and loading a single event"""
    event = make_event("req_1", 1, "cmd_1", event_type="DeliveryRequestCreated")

    stored = event_store.append("req_1", 0, [event])

    assert len(stored) == 1
    assert stored[0].position is not None

    loaded = event_store.load_stream("req_1")
    assert len(loaded) == 1
    assert loaded[0].event_id == event.event_id
    assert loaded[0].event_type == "DeliveryRequestCreated"
    assert loaded[0].payload == {"provider_id": "p1"}
    assert loaded[0].occurred_at == T0


def test_append_multiple_events_in_one_transaction(event_store: SQLiteEventStore) -> None:
    """All events of one transition land together with consecutive versions"""
    events = [
        make_event("req_1", 1, "cmd_1", event_type="DeliveryRequestCreated"),
        make_event("req_1", 2, "cmd_1", event_type="ProviderQueueBuilt"),
        make_event("req_1", 3, "cmd_1", event_type="ProviderContacted"),
    ]

    event_store.append("req_1", 0, events)

    loaded = event_store.load_stream("req_1")
    assert [e.version for e in loaded] == [1, 2, 3]
    assert event_store.get_stream_version("req_1") == 3


def test_load_unknown_stream_is_empty(event_store: SQLiteEventStore) -> None:
    assert event_store.load_stream("req_missing") == []
    assert event_store.get_stream_version("req_missing") == 0


def test_version_conflict_on_stale_expected_version(event_store: SQLiteEventStore) -> None:
    """Two writers that loaded the same version cannot both append"""
    event_store.append("req_1", 0, [make_event("req_1", 1, "cmd_1")])

    # First responder wins
    event_store.append("req_1", 1, [make_event("req_1", 2, "cmd_2")])

    # Second responder based its decision on version 1
    with pytest.raises(StreamVersionConflict) as exc_info:
        event_store.append("req_1", 1, [make_event("req_1", 2, "cmd_3")])

    assert exc_info.value.expected_version == 1
    assert exc_info.value.actual_version == 2
    assert event_store.get_stream_version("req_1") == 2


def test_failed_append_writes_nothing(event_store: SQLiteEventStore) -> None:
    event_store.append("req_1", 0, [make_event("req_1", 1, "cmd_1")])

    with pytest.raises(StreamVersionConflict):
        event_store.append(
            "req_1",
            0,
            [make_event("req_1", 2, "cmd_2"), make_event("req_1", 3, "cmd_2")],
        )

    assert event_store.count_events() == 1


def test_command_idempotency_returns_stored_events(event_store: SQLiteEventStore) -> None:
    """Re-submitting a command returns the original events without writing"""
    first = event_store.append("req_1", 0, [make_event("req_1", 1, "cmd_1")])

    again = event_store.append("req_1", 0, [make_event("req_1", 1, "cmd_1")])

    assert [e.event_id for e in again] == [e.event_id for e in first]
    assert event_store.count_events() == 1


def test_find_command_events(event_store: SQLiteEventStore) -> None:
    event_store.append(
        "req_1",
        0,
        [make_event("req_1", 1, "cmd_1"), make_event("req_1", 2, "cmd_1")],
    )
    event_store.append("req_2", 0, [make_event("req_2", 1, "cmd_2")])

    found = event_store.find_command_events("req_1", "cmd_1")
    assert [e.version for e in found] == [1, 2]

    # Command ids are scoped to a stream
    assert event_store.find_command_events("req_2", "cmd_1") == []
    assert event_store.find_command_events("req_1", "cmd_unknown") == []


def test_load_since_returns_events_in_global_order(event_store: SQLiteEventStore) -> None:
    """Projections catch up from the last position they processed"""
    event_store.append("req_1", 0, [make_event("req_1", 1, "cmd_1")])
    event_store.append("req_2", 0, [make_event("req_2", 1, "cmd_2")])
    event_store.append("req_1", 1, [make_event("req_1", 2, "cmd_3")])

    everything = event_store.load_since(0)
    assert [(e.stream_id, e.version) for e in everything] == [
        ("req_1", 1),
        ("req_2", 1),
        ("req_1", 2),
    ]

    positions = [e.position for e in everything]
    assert positions == sorted(positions)

    rest = event_store.load_since(everything[0].position)
    assert len(rest) == 2

    assert len(event_store.load_since(0, limit=1)) == 1
    assert event_store.load_since(everything[-1].position) == []


def test_query_events_by_type_and_time(event_store: SQLiteEventStore) -> None:
    event_store.append(
        "req_1",
        0,
        [
            make_event("req_1", 1, "cmd_1", event_type="DeliveryRequestCreated"),
            make_event("req_1", 2, "cmd_1", event_type="ProviderContacted"),
        ],
    )
    event_store.append(
        "prv_1",
        0,
        [
            make_event(
                "prv_1",
                1,
                "cmd_2",
                event_type="ProviderRegistered",
                stream_type="DeliveryProvider",
                occurred_at=T0 + timedelta(hours=1),
            )
        ],
    )

    contacted = event_store.query_events(event_type="ProviderContacted")
    assert len(contacted) == 1

    providers = event_store.query_events(stream_type="DeliveryProvider")
    assert [e.stream_id for e in providers] == ["prv_1"]

    later = event_store.query_events(from_time=T0 + timedelta(minutes=30))
    assert [e.event_type for e in later] == ["ProviderRegistered"]

    assert len(event_store.query_events(limit=2)) == 2


def test_counts(event_store: SQLiteEventStore) -> None:
    assert event_store.count_events() == 0
    assert event_store.count_streams() == 0

    event_store.append("req_1", 0, [make_event("req_1", 1, "cmd_1")])
    event_store.append("req_2", 0, [make_event("req_2", 1, "cmd_2")])
    event_store.append("req_2", 1, [make_event("req_2", 2, "cmd_3")])

    assert event_store.count_events() == 3
    assert event_store.count_streams() == 2


def test_store_survives_reopen(temp_db) -> None:
    """Events persist across store instances"""
    SQLiteEventStore(temp_db).append("req_1", 0, [make_event("req_1", 1, "cmd_1")])

    reopened = SQLiteEventStore(temp_db)
    assert reopened.get_stream_version("req_1") == 1
