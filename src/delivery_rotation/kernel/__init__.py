"""
Kernel - event store, clock, ids, logging and the shared error hierarchy

Everything the delivery domain builds on but that knows nothing about
deliveries.
"""

from delivery_rotation.kernel.errors import (
    AccessDenied,
    ConflictError,
    DeliveryRotationError,
    EventStoreError,
    NotFoundError,
    StreamVersionConflict,
    ValidationError,
)
from delivery_rotation.kernel.events import Event
from delivery_rotation.kernel.ids import IdFactory, generate_id
from delivery_rotation.kernel.policy import RotationPolicy
from delivery_rotation.kernel.time import RealTimeProvider, TestTimeProvider, TimeProvider

__all__ = [
    "IdFactory",
    "generate_id",
    "TimeProvider",
    "RealTimeProvider",
    "TestTimeProvider",
    "Event",
    "RotationPolicy",
    "DeliveryRotationError",
    "ValidationError",
    "AccessDenied",
    "NotFoundError",
    "ConflictError",
    "EventStoreError",
    "StreamVersionConflict",
]
