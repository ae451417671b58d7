"""
Delivery Rotation Projections

Read models rebuilt from the event log. ``apply_request_event`` is the one
fold over a request stream: the write path uses it to rebuild a request
before deciding, and ``RequestRegistry`` uses it to keep every request
current for queries and the timeout sweeper.
"""

from datetime import datetime

from delivery_rotation.delivery import events as ev
from delivery_rotation.delivery.models import (
    Address,
    DeliveryPhase,
    DeliveryProvider,
    DeliveryRequest,
    Location,
    MaterialSpec,
    ProviderAction,
    ProviderQueueEntry,
    QueueEntryStatus,
    RequestStatus,
)
from delivery_rotation.kernel.events import Event
from delivery_rotation.kernel.logging import get_logger

logger = get_logger(__name__)


def _ts(value: str | datetime | None) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ============================================================================
# Request fold
# ============================================================================


def apply_request_event(request: DeliveryRequest | None, event: Event) -> DeliveryRequest | None:
    """
    Apply one DeliveryRequest-stream event

    Returns the updated request (a new object for the creation event, the
    same object mutated in place otherwise). Unknown event types only bump
    the version.
    """
    payload = event.payload

    if event.event_type == "DeliveryRequestCreated":
        return DeliveryRequest(
            request_id=payload["request_id"],
            builder_id=payload["builder_id"],
            supplier_id=payload.get("supplier_id"),
            materials=MaterialSpec.model_validate(payload["materials"]),
            pickup=Address.model_validate(payload["pickup"]),
            delivery=Address.model_validate(payload["delivery"]),
            max_rotation_attempts=payload["max_rotation_attempts"],
            auto_rotation_enabled=payload["auto_rotation_enabled"],
            search_radius_km=payload["search_radius_km"],
            created_at=_ts(payload["created_at"]),
            version=event.version,
        )

    if request is None:
        logger.warning(
            "Request event before creation, ignoring",
            stream_id=event.stream_id,
            event_type=event.event_type,
        )
        return None

    if event.event_type == "ProviderQueueBuilt":
        request.queue = [
            ProviderQueueEntry(
                request_id=request.request_id,
                provider_id=entry["provider_id"],
                queue_position=entry["queue_position"],
                distance_km=entry.get("distance_km"),
                priority_score=entry.get("priority_score"),
            )
            for entry in payload["entries"]
        ]
        request.origin = Location(
            latitude=payload["origin_latitude"], longitude=payload["origin_longitude"]
        )
        request.coordinates_defaulted = payload.get("coordinates_defaulted", False)

    elif event.event_type == "ProviderContacted":
        entry = request.entry_for(payload["provider_id"])
        if entry is None:
            entry = ProviderQueueEntry(
                request_id=request.request_id,
                provider_id=payload["provider_id"],
                queue_position=payload["queue_position"],
                distance_km=payload.get("distance_km"),
                priority_score=payload.get("priority_score"),
            )
            request.queue.append(entry)
        entry.status = QueueEntryStatus.CONTACTED
        entry.contacted_at = _ts(payload["contacted_at"])
        entry.timeout_at = _ts(payload["timeout_at"])
        request.status = RequestStatus.PENDING

    elif event.event_type == "ProviderResponded":
        action = ProviderAction(payload["action"])
        entry = request.entry_for(payload["provider_id"])
        if entry is not None:
            entry.status = action.entry_status
            entry.responded_at = _ts(payload["responded_at"])
            entry.response_message = payload.get("message")
            entry.estimated_cost = payload.get("estimated_cost")
            entry.estimated_duration_hours = payload.get("estimated_duration_hours")
        if action == ProviderAction.ACCEPT:
            request.status = RequestStatus.ACCEPTED
            request.assigned_provider_id = payload["provider_id"]
            request.delivery_phase = DeliveryPhase.PENDING
            request.rotation_completed_at = _ts(payload["responded_at"])
        elif payload["provider_id"] not in request.attempted_providers:
            request.attempted_providers.append(payload["provider_id"])

    elif event.event_type == "RotationAwaitingManualAdvance":
        request.status = RequestStatus.REJECTED

    elif event.event_type == "RotationFailed":
        request.status = RequestStatus.ROTATION_FAILED
        request.rotation_completed_at = _ts(payload["failed_at"])

    elif event.event_type == "NoProvidersAvailable":
        request.status = RequestStatus.NO_PROVIDERS_AVAILABLE
        request.rotation_completed_at = _ts(payload["detected_at"])

    elif event.event_type == "DeliveryRequestCancelled":
        request.status = RequestStatus.CANCELLED
        request.rotation_completed_at = _ts(payload["cancelled_at"])

    elif event.event_type == "DeliveryPhaseChanged":
        request.delivery_phase = DeliveryPhase(payload["to_phase"])

    request.version = event.version
    return request


def fold_request(events: list[Event]) -> DeliveryRequest | None:
    """Rebuild a request from its full stream (None for an empty stream)"""
    request: DeliveryRequest | None = None
    for event in events:
        request = apply_request_event(request, event)
    return request


# ============================================================================
# Registries
# ============================================================================


class RequestRegistry:
    """
    All delivery requests, current as of the last applied event

    Rebuilt from DeliveryRequest-stream events.
    """

    def __init__(self) -> None:
        self.requests: dict[str, DeliveryRequest] = {}

    def apply_event(self, event: Event) -> None:
        if event.stream_type != ev.DELIVERY_REQUEST:
            return
        current = self.requests.get(event.stream_id)
        if current is not None and event.version <= current.version:
            return
        updated = apply_request_event(current, event)
        if updated is not None:
            self.requests[event.stream_id] = updated

    def get(self, request_id: str) -> DeliveryRequest | None:
        return self.requests.get(request_id)

    def list_all(self) -> list[DeliveryRequest]:
        return list(self.requests.values())

    def list_by_status(self, status: RequestStatus) -> list[DeliveryRequest]:
        return [r for r in self.requests.values() if r.status == status]

    def list_active(self) -> list[DeliveryRequest]:
        """Requests that can still rotate"""
        return [r for r in self.requests.values() if not r.is_terminal]


class ProviderRegistry:
    """
    Delivery providers with their location, rating and availability

    Rebuilt from ProviderRegistered, ProviderLocationUpdated and
    ProviderActivationChanged events.
    """

    def __init__(self) -> None:
        self.providers: dict[str, DeliveryProvider] = {}
        self.versions: dict[str, int] = {}

    def apply_event(self, event: Event) -> None:
        if event.event_type == "ProviderRegistered":
            self._apply_provider_registered(event)
        elif event.event_type == "ProviderLocationUpdated":
            self._apply_location_updated(event)
        elif event.event_type == "ProviderActivationChanged":
            self._apply_activation_changed(event)

    def _apply_provider_registered(self, event: Event) -> None:
        payload = event.payload
        location = None
        if payload.get("latitude") is not None and payload.get("longitude") is not None:
            location = Location(latitude=payload["latitude"], longitude=payload["longitude"])
        self.providers[payload["provider_id"]] = DeliveryProvider(
            provider_id=payload["provider_id"],
            provider_name=payload["provider_name"],
            phone=payload.get("phone"),
            provider_type=payload["provider_type"],
            vehicle_type=payload.get("vehicle_type"),
            rating=payload["rating"],
            location=location,
            registered_at=_ts(payload["registered_at"]),
        )
        self.versions[payload["provider_id"]] = event.version

    def _apply_location_updated(self, event: Event) -> None:
        payload = event.payload
        provider = self.providers.get(payload["provider_id"])
        if provider is None:
            return
        provider.location = Location(latitude=payload["latitude"], longitude=payload["longitude"])
        self.versions[provider.provider_id] = event.version

    def _apply_activation_changed(self, event: Event) -> None:
        payload = event.payload
        provider = self.providers.get(payload["provider_id"])
        if provider is None:
            return
        provider.is_active = payload["is_active"]
        self.versions[provider.provider_id] = event.version

    def get(self, provider_id: str) -> DeliveryProvider | None:
        return self.providers.get(provider_id)

    def get_version(self, provider_id: str) -> int:
        return self.versions.get(provider_id, 0)

    def list_all(self) -> list[DeliveryProvider]:
        return list(self.providers.values())

    def list_active(self) -> list[DeliveryProvider]:
        return [p for p in self.providers.values() if p.is_active]
