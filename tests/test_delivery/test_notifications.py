"""
Tests for communication records produced by rotation steps

Notifications are written after each transition is stored. A failure while
writing or sending one must never undo the transition.
"""

from delivery_rotation.delivery.models import PartyType, RequestStatus
from delivery_rotation.delivery.notifications import (
    NO_PROVIDERS_MESSAGE,
    ROTATION_FAILED_MESSAGE,
    SYSTEM_SENDER_NAME,
)
from delivery_rotation.kernel.errors import EventStoreError
from delivery_rotation.kernel.ids import SequentialIdFactory
from delivery_rotation.kernel.policy import RotationPolicy
from delivery_rotation.kernel.time import TestTimeProvider
from delivery_rotation.service import DeliveryRotation
from tests.helpers import (
    BUILDER_ID,
    FailingAlertSender,
    RecordingAlertSender,
    create_request,
    register_nearby_providers,
)


def message_types(rotation: DeliveryRotation, request_id: str) -> list[str]:
    return [r.message_type for r in rotation.get_communications(request_id)]


def test_first_provider_is_notified_on_create(rotation: DeliveryRotation) -> None:
    register_nearby_providers(rotation, 3)
    request = create_request(rotation)

    records = rotation.get_communications(request.request_id)

    assert len(records) == 1
    record = records[0]
    assert record.message_type == "delivery_request_notification"
    assert record.recipient_id == "p1"
    assert record.recipient_type == PartyType.PROVIDER
    assert record.sender_type == PartyType.SYSTEM
    assert record.sender_name == SYSTEM_SENDER_NAME
    assert record.content.startswith(
        "New delivery request available: cement from Industrial Area, Nairobi to Kilimani, Nairobi."
    )
    assert "automatically assigned" not in record.content
    assert record.metadata["rotation_attempt"] == 1
    assert record.metadata["max_attempts"] == 5
    assert record.metadata["queue_position"] == 1
    assert record.metadata["trip_distance_km"] is not None
    assert record.metadata["timeout_at"] is not None


def test_rotation_notifies_builder_and_next_provider(
    rotation: DeliveryRotation, alerts: RecordingAlertSender
) -> None:
    register_nearby_providers(rotation, 3)
    request = create_request(rotation)

    rotation.submit_provider_response(request.request_id, "p1", "reject", message="Truck busy")
    rotation.submit_provider_response(
        request.request_id, "p2", "accept", message="Arriving at 2pm"
    )

    records = rotation.get_communications(request.request_id)
    assert [r.message_type for r in records] == [
        "delivery_request_notification",
        "provider_response",
        "delivery_request_notification",
        "provider_rotation",
        "provider_acceptance",
    ]

    rejection = records[1]
    assert rejection.sender_id == "p1"
    assert rejection.sender_name == "Provider 1"
    assert rejection.recipient_id == BUILDER_ID
    assert rejection.content == "Provider rejected request. Reason: Truck busy"

    second_contact = records[2]
    assert second_contact.recipient_id == "p2"
    assert second_contact.content.endswith(
        "This request was automatically assigned to you after the previous provider declined."
    )
    assert second_contact.metadata["rotation_attempt"] == 2

    assert "attempt 2 of 5" in records[3].content

    acceptance = records[4]
    assert acceptance.recipient_type == PartyType.BUILDER
    assert acceptance.content == "Your delivery request has been accepted! Arriving at 2pm"

    # Only the outcome goes off-band
    assert alerts.types() == ["provider_acceptance"]
    assert alerts.sent[0]["recipient_id"] == BUILDER_ID


def test_timeout_is_reported_by_system(
    rotation: DeliveryRotation, test_time: TestTimeProvider
) -> None:
    register_nearby_providers(rotation, 2)
    request = create_request(rotation)

    test_time.advance_minutes(20)
    rotation.sweep_timeouts()

    response = [
        r for r in rotation.get_communications(request.request_id)
        if r.message_type == "provider_response"
    ]
    assert len(response) == 1
    assert response[0].sender_type == PartyType.SYSTEM
    assert response[0].content == "Provider did not respond within 15 minutes."
    assert response[0].metadata["action"] == "timeout"


def test_exhaustion_alerts_builder(rotation: DeliveryRotation, alerts: RecordingAlertSender) -> None:
    register_nearby_providers(rotation, 3)
    request = create_request(rotation, max_attempts=1)

    rotation.submit_provider_response(request.request_id, "p1", "reject")

    records = rotation.get_communications(request.request_id)
    assert records[-1].message_type == "rotation_failed"
    assert records[-1].content == ROTATION_FAILED_MESSAGE
    assert records[-1].metadata["attempted_providers"] == ["p1"]
    assert alerts.types() == ["rotation_failed"]


def test_no_providers_alerts_builder(rotation: DeliveryRotation, alerts: RecordingAlertSender) -> None:
    request = create_request(rotation)

    records = rotation.get_communications(request.request_id)

    assert [r.message_type for r in records] == ["no_providers_available"]
    assert records[0].content == NO_PROVIDERS_MESSAGE
    assert alerts.types() == ["no_providers_available"]


def test_cancel_notifies_withdrawn_provider(rotation: DeliveryRotation) -> None:
    register_nearby_providers(rotation, 2)
    request = create_request(rotation)

    rotation.cancel_delivery_request(request.request_id, BUILDER_ID, reason="Site closed")

    last = rotation.get_communications(request.request_id)[-1]
    assert last.message_type == "request_cancelled"
    assert last.recipient_id == "p1"
    assert last.metadata["reason"] == "Site closed"


def test_manual_pause_tells_builder(rotation: DeliveryRotation) -> None:
    register_nearby_providers(rotation, 2)
    request = create_request(rotation, auto_rotation_enabled=False)

    rotation.submit_provider_response(request.request_id, "p1", "reject")

    last = rotation.get_communications(request.request_id)[-1]
    assert last.message_type == "provider_rotation"
    assert last.metadata["rotation_paused"] is True


def test_broadcast_reaches_whole_queue(
    temp_db, test_time: TestTimeProvider, alerts: RecordingAlertSender
) -> None:
    rotation = DeliveryRotation(
        temp_db,
        policy=RotationPolicy(broadcast_initial_queue=True),
        time_provider=test_time,
        id_factory=SequentialIdFactory(),
        alert_sender=alerts,
    )
    register_nearby_providers(rotation, 3)
    request = create_request(rotation)

    records = rotation.get_communications(request.request_id)
    broadcast = [r for r in records if r.message_type == "delivery_request_broadcast"]

    assert [r.recipient_id for r in broadcast] == ["p2", "p3"]
    assert "50 bags of cement" in broadcast[0].content


def test_failing_alert_does_not_roll_back(temp_db, test_time: TestTimeProvider) -> None:
    rotation = DeliveryRotation(
        temp_db,
        time_provider=test_time,
        id_factory=SequentialIdFactory(),
        alert_sender=FailingAlertSender(),
    )
    register_nearby_providers(rotation, 2)
    request = create_request(rotation)

    accepted = rotation.submit_provider_response(request.request_id, "p1", "accept")

    assert accepted.status == RequestStatus.ACCEPTED
    assert message_types(rotation, request.request_id)[-1] == "provider_acceptance"


def test_failed_record_write_does_not_roll_back(rotation: DeliveryRotation, monkeypatch) -> None:
    register_nearby_providers(rotation, 2)
    request = create_request(rotation)

    def broken_append(*args, **kwargs):
        raise EventStoreError("comms table unavailable")

    monkeypatch.setattr(rotation.dispatcher, "_append_record", broken_append)
    updated = rotation.submit_provider_response(request.request_id, "p1", "reject")

    assert updated.attempted_providers == ["p1"]
    assert updated.contacted_entry().provider_id == "p2"
    # Only the record written before the failure
    assert message_types(rotation, request.request_id) == ["delivery_request_notification"]


def test_redispatching_events_stores_no_duplicates(rotation: DeliveryRotation) -> None:
    register_nearby_providers(rotation, 3)
    request = create_request(rotation)
    rotation.submit_provider_response(request.request_id, "p1", "reject")
    before = message_types(rotation, request.request_id)

    rotation.dispatcher.handle_events(rotation.event_store.load_stream(request.request_id))

    assert message_types(rotation, request.request_id) == before
