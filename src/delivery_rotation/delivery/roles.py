"""
Roles and capabilities

Every role check in the service goes through ``has_capability``; nothing
compares role strings directly.
"""

from enum import Enum

from delivery_rotation.kernel.errors import AccessDenied, ValidationError


class Role(str, Enum):
    BUILDER = "builder"
    SUPPLIER = "supplier"
    DELIVERY_PROVIDER = "delivery_provider"
    ADMIN = "admin"


class Capability(str, Enum):
    CREATE_DELIVERY_REQUEST = "create_delivery_request"
    CANCEL_DELIVERY_REQUEST = "cancel_delivery_request"
    ADVANCE_ROTATION = "advance_rotation"
    RESPOND_TO_REQUEST = "respond_to_request"
    UPDATE_DELIVERY_PHASE = "update_delivery_phase"
    # Scheduler hook for missed response deadlines
    REPORT_TIMEOUT = "report_timeout"
    VIEW_DRIVER_CONTACT = "view_driver_contact"
    MANAGE_PROVIDERS = "manage_providers"
    # Act on any request regardless of ownership
    OVERRIDE_OWNERSHIP = "override_ownership"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.BUILDER: frozenset(
        {
            Capability.CREATE_DELIVERY_REQUEST,
            Capability.CANCEL_DELIVERY_REQUEST,
            Capability.ADVANCE_ROTATION,
            Capability.VIEW_DRIVER_CONTACT,
        }
    ),
    Role.SUPPLIER: frozenset({Capability.VIEW_DRIVER_CONTACT}),
    Role.DELIVERY_PROVIDER: frozenset(
        {Capability.RESPOND_TO_REQUEST, Capability.UPDATE_DELIVERY_PHASE}
    ),
    Role.ADMIN: frozenset(Capability),
}


def parse_role(value: "str | Role") -> Role:
    """Convert user input to a Role, rejecting unknown values"""
    if isinstance(value, Role):
        return value
    try:
        return Role(value.strip().lower())
    except ValueError as e:
        allowed = ", ".join(r.value for r in Role)
        raise ValidationError(f"Unknown role '{value}' (expected one of: {allowed})", field="role") from e


def has_capability(role: Role, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())


def require_capability(actor_id: str, role: Role, capability: Capability) -> None:
    """Raise AccessDenied unless the role grants the capability"""
    if not has_capability(role, capability):
        raise AccessDenied(actor_id, capability.value)
