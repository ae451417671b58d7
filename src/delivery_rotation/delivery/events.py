"""
Delivery Rotation Events

Immutable facts about requests, providers, messages and disclosures. The
payload models below are serialised into ``Event.payload``; the projections
read them back as plain dicts.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# Stream types
DELIVERY_REQUEST = "DeliveryRequest"
DELIVERY_PROVIDER = "DeliveryProvider"
DELIVERY_COMMUNICATION = "DeliveryCommunication"
DRIVER_CONTACT_ACCESS = "DriverContactAccess"


def communication_stream_id(request_id: str) -> str:
    return f"comms:{request_id}"


def access_stream_id(request_id: str) -> str:
    return f"access:{request_id}"


# ============================================================================
# Delivery Request Events
# ============================================================================


class DeliveryRequestCreated(BaseModel):
    """Builder asked for a delivery"""

    request_id: str
    builder_id: str
    supplier_id: str | None = None
    materials: dict[str, Any] = Field(..., description="Serialised MaterialSpec")
    pickup: dict[str, Any] = Field(..., description="Serialised pickup Address")
    delivery: dict[str, Any] = Field(..., description="Serialised delivery Address")
    max_rotation_attempts: int
    auto_rotation_enabled: bool
    search_radius_km: float
    created_at: datetime


class ProviderQueueBuilt(BaseModel):
    """Initial candidate ordering computed for a request"""

    request_id: str
    entries: list[dict[str, Any]] = Field(
        ..., description="provider_id, queue_position, distance_km, priority_score"
    )
    origin_latitude: float
    origin_longitude: float
    coordinates_defaulted: bool = False
    built_at: datetime


class ProviderContacted(BaseModel):
    """
    A candidate was marked as the single in-flight contact

    If the provider was not in the queue yet (it became eligible after the
    queue was built) a new entry is appended at ``queue_position``.
    """

    request_id: str
    provider_id: str
    queue_position: int
    rotation_attempt: int
    distance_km: float | None = None
    priority_score: float | None = None
    contacted_at: datetime
    timeout_at: datetime


class ProviderResponded(BaseModel):
    """The contacted provider accepted, rejected or timed out"""

    request_id: str
    provider_id: str
    action: str = Field(..., description="accept, reject or timeout")
    message: str | None = None
    estimated_cost: float | None = None
    estimated_duration_hours: float | None = None
    rotation_attempt: int
    responded_at: datetime


class RotationAwaitingManualAdvance(BaseModel):
    """Auto-rotation is off; the builder (or an admin) must advance"""

    request_id: str
    last_provider_id: str
    attempts_used: int
    paused_at: datetime


class RotationFailed(BaseModel):
    """Attempt budget exhausted"""

    request_id: str
    attempted_providers: list[str]
    max_rotation_attempts: int
    failed_at: datetime


class NoProvidersAvailable(BaseModel):
    """No eligible candidate remains"""

    request_id: str
    attempted_providers: list[str]
    detected_at: datetime


class DeliveryRequestCancelled(BaseModel):
    """Request withdrawn before any terminal outcome"""

    request_id: str
    cancelled_by: str
    reason: str | None = None
    withdrawn_provider_id: str | None = Field(
        default=None, description="Provider that was in flight when cancelled"
    )
    cancelled_at: datetime


class DeliveryPhaseChanged(BaseModel):
    """Physical delivery progressed"""

    request_id: str
    from_phase: str | None
    to_phase: str
    changed_by: str
    changed_at: datetime


# ============================================================================
# Delivery Provider Events
# ============================================================================


class ProviderRegistered(BaseModel):
    provider_id: str
    provider_name: str
    phone: str | None = None
    provider_type: str
    vehicle_type: str | None = None
    rating: float
    latitude: float | None = None
    longitude: float | None = None
    registered_at: datetime
    registered_by: str


class ProviderLocationUpdated(BaseModel):
    provider_id: str
    latitude: float
    longitude: float
    updated_at: datetime


class ProviderActivationChanged(BaseModel):
    provider_id: str
    is_active: bool
    reason: str | None = None
    changed_at: datetime


# ============================================================================
# Audit Streams
# ============================================================================

# CommunicationRecorded and DriverContactAccessLogged carry a full
# CommunicationRecord / AccessLogEntry as their payload.
COMMUNICATION_RECORDED = "CommunicationRecorded"
DRIVER_CONTACT_ACCESS_LOGGED = "DriverContactAccessLogged"
