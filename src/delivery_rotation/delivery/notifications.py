"""
Notification Dispatcher

Turns committed rotation events into communication records (and off-band
alerts for outcomes the builder must not miss). Dispatch always runs after
the transition has been stored: a failure here is logged and counted, it
never undoes a rotation step.
"""

from typing import Any, Protocol

from delivery_rotation.delivery import events as ev
from delivery_rotation.delivery.geo import DistanceFunction, haversine_km
from delivery_rotation.delivery.models import (
    CommunicationRecord,
    DeliveryRequest,
    PartyType,
)
from delivery_rotation.delivery.projections import ProviderRegistry, RequestRegistry
from delivery_rotation.delivery.queue import trip_distance_km
from delivery_rotation.kernel.event_store import SQLiteEventStore
from delivery_rotation.kernel.events import Event, create_event
from delivery_rotation.kernel.ids import IdFactory
from delivery_rotation.kernel.logging import get_logger, redact_context
from delivery_rotation.kernel.metrics import notifications_failed_total, notifications_sent_total
from delivery_rotation.kernel.policy import RotationPolicy
from delivery_rotation.kernel.retry import retry_on_version_conflict
from delivery_rotation.kernel.time import TimeProvider

logger = get_logger(__name__)

SYSTEM_SENDER_ID = "system"
SYSTEM_SENDER_NAME = "Auto-Rotation System"

ACCEPTED_TEMPLATE = "Your delivery request has been accepted! {detail}"
ACCEPTED_DEFAULT_DETAIL = "Provider will contact you with delivery details."
ROTATION_FAILED_MESSAGE = (
    "Unfortunately, all nearby providers are unavailable for your delivery request. "
    "Please try expanding your search area or adjusting your requirements."
)
NO_PROVIDERS_MESSAGE = (
    "No delivery providers are currently available near your pickup location. "
    "Please try expanding your search area or try again later."
)

# Outcomes that also go to the off-band alert channel
ALERT_MESSAGE_TYPES = frozenset({"provider_acceptance", "rotation_failed", "no_providers_available"})


class AlertSender(Protocol):
    """Off-band channel (SMS, push, email) for builder-facing outcomes"""

    def send(
        self, recipient_id: str, message_type: str, content: str, metadata: dict[str, Any]
    ) -> None: ...


class LoggingAlertSender:
    """Default sender: writes the alert to the log"""

    def send(
        self, recipient_id: str, message_type: str, content: str, metadata: dict[str, Any]
    ) -> None:
        logger.info(
            "Alert sent",
            recipient_id=recipient_id,
            message_type=message_type,
            content=content,
            **redact_context(metadata),
        )


def provider_notification_text(
    request: DeliveryRequest, distance_km: float | None, rotated: bool
) -> str:
    distance = f"{distance_km}km" if distance_km is not None else "unknown"
    text = (
        f"New delivery request available: {request.materials.material_type} "
        f"from {request.pickup.address} to {request.delivery.address}. Distance: {distance}"
    )
    if rotated:
        text += " This request was automatically assigned to you after the previous provider declined."
    return text


class NotificationDispatcher:
    """
    Writes CommunicationRecords for committed rotation events

    Each record is its own append on the ``comms:<request_id>`` stream with a
    command id derived from the source event, so dispatching the same event
    twice stores one record.
    """

    def __init__(
        self,
        event_store: SQLiteEventStore,
        requests: RequestRegistry,
        providers: ProviderRegistry,
        time_provider: TimeProvider,
        id_factory: IdFactory,
        policy: RotationPolicy,
        alert_sender: AlertSender | None = None,
        distance_fn: DistanceFunction = haversine_km,
    ):
        self.event_store = event_store
        self.requests = requests
        self.providers = providers
        self.time_provider = time_provider
        self.id_factory = id_factory
        self.policy = policy
        self.alert_sender = alert_sender or LoggingAlertSender()
        self.distance_fn = distance_fn

    def handle_events(self, events: list[Event]) -> None:
        """Dispatch every event; never raises"""
        for event in events:
            try:
                self._dispatch(event)
            except Exception as e:
                logger.error(
                    "Notification dispatch failed",
                    event_type=event.event_type,
                    event_id=event.event_id,
                    request_id=event.stream_id,
                    error=str(e),
                    exc_info=True,
                )
                notifications_failed_total.labels(message_type=event.event_type).inc()

    def _dispatch(self, event: Event) -> None:
        if event.stream_type != ev.DELIVERY_REQUEST:
            return
        request = self.requests.get(event.stream_id)
        if request is None:
            logger.warning("Request not found for notification", request_id=event.stream_id)
            return

        payload = event.payload
        if event.event_type == "ProviderQueueBuilt":
            if self.policy.broadcast_initial_queue:
                self.broadcast(request, payload["entries"], event)
        elif event.event_type == "ProviderContacted":
            self._notify_contacted(request, payload, event)
        elif event.event_type == "ProviderResponded":
            self._notify_response(request, payload, event)
        elif event.event_type == "RotationAwaitingManualAdvance":
            self._to_builder(
                request,
                event,
                "provider_rotation",
                "Provider rejected request. Automatic rotation is off for this request; "
                "advance it to contact the next provider.",
                {"rotation_paused": True, "attempts_used": payload["attempts_used"]},
            )
        elif event.event_type == "RotationFailed":
            self._to_builder(
                request,
                event,
                "rotation_failed",
                ROTATION_FAILED_MESSAGE,
                {
                    "attempted_providers": payload["attempted_providers"],
                    "max_attempts": payload["max_rotation_attempts"],
                },
            )
        elif event.event_type == "NoProvidersAvailable":
            self._to_builder(
                request,
                event,
                "no_providers_available",
                NO_PROVIDERS_MESSAGE,
                {"attempted_providers": payload["attempted_providers"]},
            )
        elif event.event_type == "DeliveryRequestCancelled":
            withdrawn = payload.get("withdrawn_provider_id")
            if withdrawn:
                self._record(
                    event,
                    request_id=request.request_id,
                    sender_id=SYSTEM_SENDER_ID,
                    sender_type=PartyType.SYSTEM,
                    sender_name=SYSTEM_SENDER_NAME,
                    recipient_id=withdrawn,
                    recipient_type=PartyType.PROVIDER,
                    message_type="request_cancelled",
                    content=(
                        f"Delivery request for {request.materials.material_type} from "
                        f"{request.pickup.address} has been withdrawn by the builder. "
                        "No action is needed."
                    ),
                    metadata={"reason": payload.get("reason")},
                )

    def broadcast(
        self, request: DeliveryRequest, entries: list[dict[str, Any]], source: Event
    ) -> None:
        """Tell queued candidates (other than the first) about a new request"""
        for entry in entries:
            if entry["queue_position"] == 1:
                continue
            self._record(
                source,
                request_id=request.request_id,
                sender_id=SYSTEM_SENDER_ID,
                sender_type=PartyType.SYSTEM,
                sender_name=SYSTEM_SENDER_NAME,
                recipient_id=entry["provider_id"],
                recipient_type=PartyType.PROVIDER,
                message_type="delivery_request_broadcast",
                content=(
                    f"New delivery request in your area: {request.materials.summary()} "
                    f"from {request.pickup.address}. You will be contacted if it "
                    "reaches you in the queue."
                ),
                metadata={
                    "queue_position": entry["queue_position"],
                    "distance_km": entry.get("distance_km"),
                    "priority_score": entry.get("priority_score"),
                },
            )

    def _notify_contacted(
        self, request: DeliveryRequest, payload: dict[str, Any], event: Event
    ) -> None:
        attempt = payload["rotation_attempt"]
        metadata = {
            "rotation_attempt": attempt,
            "max_attempts": request.max_rotation_attempts,
            "queue_position": payload["queue_position"],
            "distance_km": payload.get("distance_km"),
            "priority_score": payload.get("priority_score"),
            "trip_distance_km": trip_distance_km(
                request.pickup, request.delivery, self.distance_fn
            ),
            "timeout_at": payload["timeout_at"],
        }
        self._record(
            event,
            request_id=request.request_id,
            sender_id=SYSTEM_SENDER_ID,
            sender_type=PartyType.SYSTEM,
            sender_name=SYSTEM_SENDER_NAME,
            recipient_id=payload["provider_id"],
            recipient_type=PartyType.PROVIDER,
            message_type="delivery_request_notification",
            content=provider_notification_text(
                request, payload.get("distance_km"), rotated=attempt > 1
            ),
            metadata=metadata,
        )
        if attempt > 1:
            self._to_builder(
                request,
                event,
                "provider_rotation",
                f"Your request has been sent to the next available provider "
                f"(attempt {attempt} of {request.max_rotation_attempts}).",
                {"rotation_attempt": attempt, "next_provider": payload["provider_id"]},
            )

    def _notify_response(
        self, request: DeliveryRequest, payload: dict[str, Any], event: Event
    ) -> None:
        action = payload["action"]
        provider_id = payload["provider_id"]
        provider = self.providers.get(provider_id)
        provider_name = provider.provider_name if provider else provider_id
        metadata = {
            "action": action,
            "estimated_cost": payload.get("estimated_cost"),
            "estimated_duration_hours": payload.get("estimated_duration_hours"),
            "rotation_attempt": payload.get("rotation_attempt"),
        }

        if action == "accept":
            detail = payload.get("message") or ACCEPTED_DEFAULT_DETAIL
            self._record(
                event,
                request_id=request.request_id,
                sender_id=provider_id,
                sender_type=PartyType.PROVIDER,
                sender_name=provider_name,
                recipient_id=request.builder_id,
                recipient_type=PartyType.BUILDER,
                message_type="provider_acceptance",
                content=ACCEPTED_TEMPLATE.format(detail=detail),
                metadata=metadata,
            )
            return

        if action == "timeout":
            content = (
                f"Provider did not respond within "
                f"{self.policy.response_timeout_minutes} minutes."
            )
            sender_id, sender_type, sender_name = (
                SYSTEM_SENDER_ID,
                PartyType.SYSTEM,
                SYSTEM_SENDER_NAME,
            )
        else:
            reason = payload.get("message")
            content = f"Provider rejected request. Reason: {reason}" if reason else "Provider rejected request."
            sender_id, sender_type, sender_name = provider_id, PartyType.PROVIDER, provider_name

        self._record(
            event,
            request_id=request.request_id,
            sender_id=sender_id,
            sender_type=sender_type,
            sender_name=sender_name,
            recipient_id=request.builder_id,
            recipient_type=PartyType.BUILDER,
            message_type="provider_response",
            content=content,
            metadata=metadata,
        )

    def _to_builder(
        self,
        request: DeliveryRequest,
        event: Event,
        message_type: str,
        content: str,
        metadata: dict[str, Any],
    ) -> None:
        self._record(
            event,
            request_id=request.request_id,
            sender_id=SYSTEM_SENDER_ID,
            sender_type=PartyType.SYSTEM,
            sender_name=SYSTEM_SENDER_NAME,
            recipient_id=request.builder_id,
            recipient_type=PartyType.BUILDER,
            message_type=message_type,
            content=content,
            metadata=metadata,
        )

    def _record(self, source: Event, **fields: Any) -> CommunicationRecord | None:
        """Store one record; failures are isolated per record"""
        message_type = fields["message_type"]
        try:
            record = self._append_record(source, fields)
        except Exception as e:
            logger.error(
                "Failed to record communication",
                request_id=fields["request_id"],
                message_type=message_type,
                error=str(e),
                exc_info=True,
            )
            notifications_failed_total.labels(message_type=message_type).inc()
            return None

        notifications_sent_total.labels(message_type=message_type).inc()
        if message_type in ALERT_MESSAGE_TYPES:
            try:
                self.alert_sender.send(
                    record.recipient_id, message_type, record.content, record.metadata
                )
            except Exception as e:
                logger.error(
                    "Alert delivery failed",
                    request_id=record.request_id,
                    message_type=message_type,
                    error=str(e),
                )
                notifications_failed_total.labels(message_type=message_type).inc()
        return record

    @retry_on_version_conflict()
    def _append_record(self, source: Event, fields: dict[str, Any]) -> CommunicationRecord:
        request_id = fields["request_id"]
        stream_id = ev.communication_stream_id(request_id)
        now = self.time_provider.now()
        record = CommunicationRecord(
            record_id=self.id_factory.generate("msg"), created_at=now, **fields
        )
        version = self.event_store.get_stream_version(stream_id)
        stored = self.event_store.append(
            stream_id,
            version,
            [
                create_event(
                    event_id=self.id_factory.generate("evt"),
                    stream_id=stream_id,
                    stream_type=ev.DELIVERY_COMMUNICATION,
                    event_type=ev.COMMUNICATION_RECORDED,
                    occurred_at=now,
                    actor_id=record.sender_id,
                    command_id=f"{source.event_id}:{record.message_type}:{record.recipient_id}",
                    payload=record.model_dump(mode="json"),
                    version=version + 1,
                )
            ],
        )
        return CommunicationRecord.model_validate(stored[0].payload)

    def get_communications(self, request_id: str) -> list[CommunicationRecord]:
        """Records for a request in the order they were written"""
        return [
            CommunicationRecord.model_validate(event.payload)
            for event in self.event_store.load_stream(ev.communication_stream_id(request_id))
            if event.event_type == ev.COMMUNICATION_RECORDED
        ]
