"""
Delivery Rotation Invariants

Pure checks run by the handlers before any event is emitted. Each raises a
kernel error so callers see one hierarchy whichever rule failed.
"""

from datetime import datetime

from delivery_rotation.delivery.models import (
    PHASE_ORDER,
    DeliveryPhase,
    DeliveryRequest,
    ProviderQueueEntry,
    RequestStatus,
)
from delivery_rotation.delivery.roles import Capability, Role, has_capability, require_capability
from delivery_rotation.kernel.errors import (
    AccessDenied,
    ConflictError,
    InvalidStateTransition,
    ProviderNotContacted,
    RequestAlreadyTerminal,
)


def validate_not_terminal(request: DeliveryRequest) -> None:
    """No rotation step may touch a request that already has an outcome"""
    if request.is_terminal:
        raise RequestAlreadyTerminal(request.request_id, request.status.value)


def validate_contacted_provider(
    request: DeliveryRequest, provider_id: str
) -> ProviderQueueEntry:
    """
    The responding provider must be the single in-flight contact

    Returns:
        The provider's contacted queue entry
    """
    validate_not_terminal(request)
    contacted = request.contacted_entry()
    if contacted is None or contacted.provider_id != provider_id:
        raise ProviderNotContacted(
            request.request_id,
            provider_id,
            contacted.provider_id if contacted else None,
        )
    return contacted


def validate_responder(provider_id: str, actor_id: str, role: Role) -> None:
    """Only the provider itself answers, unless the role may act for others"""
    require_capability(actor_id, role, Capability.RESPOND_TO_REQUEST)
    if actor_id == provider_id:
        return
    if has_capability(role, Capability.OVERRIDE_OWNERSHIP):
        return
    raise AccessDenied(
        actor_id,
        Capability.RESPOND_TO_REQUEST.value,
        f"Actor {actor_id} cannot respond on behalf of provider {provider_id}",
    )


def validate_timeout_due(entry: ProviderQueueEntry, detected_at: datetime) -> None:
    if entry.timeout_at is not None and detected_at < entry.timeout_at:
        raise ConflictError(
            f"Provider {entry.provider_id} has until {entry.timeout_at.isoformat()} "
            f"to respond to request {entry.request_id}"
        )


def validate_awaiting_advance(request: DeliveryRequest) -> None:
    validate_not_terminal(request)
    if request.status != RequestStatus.REJECTED:
        raise InvalidStateTransition(
            request.request_id, request.status.value, "advance rotation"
        )


def validate_owner_or_override(
    request: DeliveryRequest, actor_id: str, role: Role, capability: Capability
) -> None:
    """Actor needs the capability and must own the request unless they may override"""
    require_capability(actor_id, role, capability)
    if actor_id == request.builder_id:
        return
    if has_capability(role, Capability.OVERRIDE_OWNERSHIP):
        return
    raise AccessDenied(
        actor_id,
        capability.value,
        f"Actor {actor_id} does not own delivery request {request.request_id}",
    )


def validate_phase_actor(request: DeliveryRequest, actor_id: str, role: Role) -> None:
    """Only the assigned provider (or an admin) moves the delivery along"""
    require_capability(actor_id, role, Capability.UPDATE_DELIVERY_PHASE)
    if actor_id == request.assigned_provider_id:
        return
    if has_capability(role, Capability.OVERRIDE_OWNERSHIP):
        return
    raise AccessDenied(
        actor_id,
        Capability.UPDATE_DELIVERY_PHASE.value,
        f"Actor {actor_id} is not the assigned provider of request {request.request_id}",
    )


def validate_phase_transition(request: DeliveryRequest, new_phase: DeliveryPhase) -> None:
    """
    Phases move forward only: pending → in_progress → out_for_delivery → delivered

    Skipping ahead is allowed, going back or standing still is not.
    """
    if request.status not in (RequestStatus.ACCEPTED, RequestStatus.PROVIDER_ASSIGNED):
        raise InvalidStateTransition(
            request.request_id, request.status.value, f"move to phase {new_phase.value}"
        )
    current = request.delivery_phase or DeliveryPhase.PENDING
    if PHASE_ORDER.index(new_phase) <= PHASE_ORDER.index(current):
        raise InvalidStateTransition(
            request.request_id, f"in phase {current.value}", f"move to phase {new_phase.value}"
        )
