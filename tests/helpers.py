"""
Shared test helpers

Providers are placed north of the Nairobi CBD pickup point; 0.01 degrees of
latitude is about 1.1 km.
"""

from typing import Any

from delivery_rotation.delivery.models import DeliveryRequest
from delivery_rotation.service import DeliveryRotation

PICKUP = {"address": "Industrial Area, Nairobi", "latitude": -1.2921, "longitude": 36.8219}
DELIVERY = {"address": "Kilimani, Nairobi", "latitude": -1.2900, "longitude": 36.7800}
MATERIALS = {"material_type": "cement", "quantity": 50, "unit": "bags"}

BUILDER_ID = "bld_1"
SUPPLIER_ID = "sup_1"


class RecordingAlertSender:
    """Collects alerts instead of sending them"""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    def send(
        self, recipient_id: str, message_type: str, content: str, metadata: dict[str, Any]
    ) -> None:
        self.sent.append(
            {
                "recipient_id": recipient_id,
                "message_type": message_type,
                "content": content,
                "metadata": metadata,
            }
        )

    def types(self) -> list[str]:
        return [a["message_type"] for a in self.sent]


class FailingAlertSender:
    def send(
        self, recipient_id: str, message_type: str, content: str, metadata: dict[str, Any]
    ) -> None:
        raise ConnectionError("SMS gateway unreachable")


def register_nearby_providers(
    rotation: DeliveryRotation, count: int, rating: float = 4.0
) -> list[str]:
    """Register p1..pN at increasing distance from PICKUP; returns their ids"""
    ids = []
    for i in range(1, count + 1):
        provider = rotation.register_provider(
            provider_name=f"Provider {i}",
            phone=f"+25470000000{i}",
            latitude=PICKUP["latitude"] + 0.01 * i,
            longitude=PICKUP["longitude"],
            rating=rating,
            provider_id=f"p{i}",
        )
        ids.append(provider.provider_id)
    return ids


def create_request(rotation: DeliveryRotation, **overrides: Any) -> DeliveryRequest:
    fields: dict[str, Any] = {
        "builder_id": BUILDER_ID,
        "pickup": PICKUP,
        "delivery": DELIVERY,
        "materials": MATERIALS,
        "supplier_id": SUPPLIER_ID,
    }
    fields.update(overrides)
    return rotation.create_delivery_request(**fields)


def contacted_provider(request: DeliveryRequest) -> str | None:
    entry = request.contacted_entry()
    return entry.provider_id if entry else None
