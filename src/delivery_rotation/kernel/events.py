"""
Stored event envelope

Every state change is an immutable event appended to a stream. A delivery
request is one stream; its queue lives in the same stream so that request and
queue always change together.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class Event(BaseModel):
    """
    Envelope for a single stored fact

    ``stream_id`` + ``version`` give optimistic locking, ``command_id`` gives
    idempotent appends and ``position`` is the global order assigned by the
    store (``None`` until the event has been written).
    """

    event_id: str = Field(..., description="Unique event identifier")

    stream_id: str = Field(
        ...,
        description="Aggregate identifier, e.g. a delivery request id",
    )

    stream_type: str = Field(
        ...,
        description="Aggregate type: 'DeliveryRequest', 'DeliveryProvider', ...",
    )

    event_type: str = Field(
        ...,
        description="Specific event type: 'ProviderContacted', 'RotationFailed', ...",
    )

    occurred_at: datetime = Field(..., description="UTC timestamp of the fact")

    actor_id: str | None = Field(
        default=None,
        description="Who caused the event (None for system events such as timeouts)",
    )

    command_id: str = Field(
        ...,
        description="ID of the command that produced this event (idempotency key)",
    )

    payload: dict = Field(
        default_factory=dict,
        description="Event-specific data (JSON-serializable)",
    )

    version: int = Field(
        ...,
        description="Stream version after this event",
        ge=1,
    )

    position: int | None = Field(
        default=None,
        description="Global position in the store, assigned on append",
    )

    model_config = {
        "frozen": True,
        "json_schema_extra": {
            "examples": [
                {
                    "event_id": "evt_01908e9a3b877000",
                    "stream_id": "req_01908e9a3b877001",
                    "stream_type": "DeliveryRequest",
                    "event_type": "ProviderContacted",
                    "occurred_at": "2025-01-15T10:30:00Z",
                    "actor_id": None,
                    "command_id": "cmd_01908e9a3b877002",
                    "payload": {"provider_id": "prv_1", "queue_position": 1},
                    "version": 3,
                    "position": 42,
                }
            ]
        },
    }


def create_event(
    *,
    event_id: str,
    stream_id: str,
    stream_type: str,
    event_type: str,
    occurred_at: datetime,
    command_id: str,
    version: int,
    actor_id: str | None = None,
    payload: dict | None = None,
) -> Event:
    """Build an unstored event with named parameters"""
    return Event(
        event_id=event_id,
        stream_id=stream_id,
        stream_type=stream_type,
        event_type=event_type,
        occurred_at=occurred_at,
        actor_id=actor_id,
        command_id=command_id,
        payload=payload or {},
        version=version,
    )
