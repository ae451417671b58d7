"""
Delivery Rotation Domain Models

Requests, queue entries, providers and the append-only records that audit
them.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class RequestStatus(str, Enum):
    """
    Delivery request lifecycle

    PENDING ──accept──→ ACCEPTED
       │ reject/timeout
       ├──→ PENDING (next candidate contacted)
       ├──→ REJECTED (auto-rotation off, waiting for a manual advance)
       ├──→ ROTATION_FAILED (attempt budget spent)
       └──→ NO_PROVIDERS_AVAILABLE (queue exhausted)
    CANCELLED from any non-terminal state.

    PROVIDER_ASSIGNED is the marketplace's older spelling of ACCEPTED; it is
    never produced by the controller but is treated as terminal when read.
    """

    PENDING = "pending"
    PROVIDER_ASSIGNED = "provider_assigned"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ROTATION_FAILED = "rotation_failed"
    NO_PROVIDERS_AVAILABLE = "no_providers_available"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {
        RequestStatus.PROVIDER_ASSIGNED,
        RequestStatus.ACCEPTED,
        RequestStatus.ROTATION_FAILED,
        RequestStatus.NO_PROVIDERS_AVAILABLE,
        RequestStatus.CANCELLED,
    }
)


class QueueEntryStatus(str, Enum):
    PENDING = "pending"
    CONTACTED = "contacted"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMEOUT = "timeout"


class ProviderAction(str, Enum):
    """What a contacted provider (or the timeout sweeper) says"""

    ACCEPT = "accept"
    REJECT = "reject"
    TIMEOUT = "timeout"

    @property
    def entry_status(self) -> QueueEntryStatus:
        return {
            ProviderAction.ACCEPT: QueueEntryStatus.ACCEPTED,
            ProviderAction.REJECT: QueueEntryStatus.REJECTED,
            ProviderAction.TIMEOUT: QueueEntryStatus.TIMEOUT,
        }[self]


class DeliveryPhase(str, Enum):
    """
    Physical delivery progress once a provider has accepted

    Forward only: PENDING → IN_PROGRESS → OUT_FOR_DELIVERY → DELIVERED
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"


PHASE_ORDER = [
    DeliveryPhase.PENDING,
    DeliveryPhase.IN_PROGRESS,
    DeliveryPhase.OUT_FOR_DELIVERY,
    DeliveryPhase.DELIVERED,
]

ACTIVE_PHASES = frozenset({DeliveryPhase.IN_PROGRESS, DeliveryPhase.OUT_FOR_DELIVERY})


class PartyType(str, Enum):
    """Sender/recipient type of a communication record"""

    SYSTEM = "system"
    BUILDER = "builder"
    PROVIDER = "provider"


class Location(BaseModel):
    """A validated WGS84 point"""

    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)


class Address(BaseModel):
    """Street address with optional coordinates"""

    address: str = Field(..., description="Human-readable address")
    latitude: float | None = Field(default=None)
    longitude: float | None = Field(default=None)

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Address cannot be empty")
        return v.strip()


class MaterialSpec(BaseModel):
    """What is being moved"""

    material_type: str = Field(..., description="cement, steel bars, ballast, ...")
    quantity: float = Field(..., gt=0)
    unit: str = Field(default="units")
    weight_kg: float | None = Field(default=None, ge=0)
    description: str | None = Field(default=None)

    @field_validator("material_type")
    @classmethod
    def validate_material_type(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Material type cannot be empty")
        return v.strip()

    def summary(self) -> str:
        return f"{self.quantity:g} {self.unit} of {self.material_type}"


class ProviderQueueEntry(BaseModel):
    """One provider's place in one request's candidate ordering"""

    request_id: str
    provider_id: str
    queue_position: int = Field(..., ge=1)
    status: QueueEntryStatus = QueueEntryStatus.PENDING
    distance_km: float | None = None
    priority_score: float | None = None
    contacted_at: datetime | None = None
    responded_at: datetime | None = None
    timeout_at: datetime | None = None
    response_message: str | None = None
    estimated_cost: float | None = None
    estimated_duration_hours: float | None = None


class DeliveryRequest(BaseModel):
    """A builder's delivery request and its rotation state"""

    request_id: str
    builder_id: str
    supplier_id: str | None = None
    materials: MaterialSpec
    pickup: Address
    delivery: Address
    status: RequestStatus = RequestStatus.PENDING
    attempted_providers: list[str] = Field(default_factory=list)
    max_rotation_attempts: int = Field(default=5, ge=1)
    auto_rotation_enabled: bool = True
    search_radius_km: float = Field(default=25.0, gt=0)
    assigned_provider_id: str | None = None
    delivery_phase: DeliveryPhase | None = None
    queue: list[ProviderQueueEntry] = Field(default_factory=list)
    # Point the queue is ranked around (pickup, or the fallback)
    origin: Location | None = None
    coordinates_defaulted: bool = False
    created_at: datetime
    rotation_completed_at: datetime | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def rotation_attempt(self) -> int:
        """1-based number of the attempt currently in flight"""
        return len(self.attempted_providers) + 1

    def contacted_entry(self) -> ProviderQueueEntry | None:
        for entry in self.queue:
            if entry.status == QueueEntryStatus.CONTACTED:
                return entry
        return None

    def entry_for(self, provider_id: str) -> ProviderQueueEntry | None:
        for entry in self.queue:
            if entry.provider_id == provider_id:
                return entry
        return None

    def next_queue_position(self) -> int:
        return max((e.queue_position for e in self.queue), default=0) + 1


class DeliveryProvider(BaseModel):
    """A delivery provider as the queue builder sees it"""

    provider_id: str
    provider_name: str
    phone: str | None = None
    provider_type: str = "individual"
    vehicle_type: str | None = None
    rating: float = Field(default=0.0, ge=0.0, le=5.0)
    location: Location | None = None
    is_active: bool = True
    registered_at: datetime | None = None


class QueueCandidate(BaseModel):
    """An eligible provider with its ranking inputs"""

    provider_id: str
    provider_name: str
    distance_km: float
    priority_score: float


class CommunicationRecord(BaseModel):
    """Append-only message tied to a delivery request"""

    record_id: str
    request_id: str
    sender_id: str
    sender_type: PartyType
    sender_name: str
    recipient_id: str
    recipient_type: PartyType
    message_type: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class AccessLogEntry(BaseModel):
    """One evaluation of the driver-contact disclosure gate"""

    entry_id: str
    request_id: str
    accessor_id: str
    accessor_role: str
    resource: str = "driver_phone"
    justification: str
    delivery_phase: str | None = None
    authorized: bool
    reason: str
    accessed_at: datetime


class DisclosureDecision(BaseModel):
    """Result of the disclosure gate as returned to the caller"""

    allowed: bool
    reason: str
    driver_name: str | None = None
    driver_contact: str
    access_log_entry_id: str


class TimeoutEvent(BaseModel):
    """
    A contacted provider missed its response deadline

    Produced only by the timeout sweeper (or an external scheduler).
    """

    request_id: str
    provider_id: str
    detected_at: datetime


class RotationStatus(BaseModel):
    """A request together with its queue in position order"""

    request: DeliveryRequest
    queue: list[ProviderQueueEntry]


class SweepResult(BaseModel):
    """Outcome of one timeout sweep"""

    scanned: int = 0
    timed_out: list[str] = Field(default_factory=list, description="Request ids rotated")
    skipped: list[str] = Field(
        default_factory=list, description="Request ids whose provider answered first"
    )

    def summary(self) -> str:
        return (
            f"Scanned {self.scanned} active request(s): "
            f"{len(self.timed_out)} timed out, {len(self.skipped)} skipped"
        )
