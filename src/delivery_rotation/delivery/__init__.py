"""
Delivery Rotation Module

Provider queue ranking, the rotation state machine, builder/provider
notifications and the driver-contact disclosure gate.
"""

from delivery_rotation.delivery.access import (
    ContactResolver,
    DriverContact,
    DriverContactGate,
    ProviderRegistryContactResolver,
)
from delivery_rotation.delivery.models import (
    AccessLogEntry,
    Address,
    CommunicationRecord,
    DeliveryPhase,
    DeliveryProvider,
    DeliveryRequest,
    DisclosureDecision,
    Location,
    MaterialSpec,
    ProviderAction,
    ProviderQueueEntry,
    QueueEntryStatus,
    RequestStatus,
    RotationStatus,
    SweepResult,
    TimeoutEvent,
)
from delivery_rotation.delivery.notifications import AlertSender, LoggingAlertSender
from delivery_rotation.delivery.roles import Capability, Role, has_capability

__all__ = [
    # Models
    "AccessLogEntry",
    "Address",
    "CommunicationRecord",
    "DeliveryPhase",
    "DeliveryProvider",
    "DeliveryRequest",
    "DisclosureDecision",
    "Location",
    "MaterialSpec",
    "ProviderAction",
    "ProviderQueueEntry",
    "QueueEntryStatus",
    "RequestStatus",
    "RotationStatus",
    "SweepResult",
    "TimeoutEvent",
    # Roles
    "Capability",
    "Role",
    "has_capability",
    # Collaborators
    "AlertSender",
    "LoggingAlertSender",
    "ContactResolver",
    "DriverContact",
    "DriverContactGate",
    "ProviderRegistryContactResolver",
]
