"""
Driver-Contact Disclosure Gate

A driver's phone number is shown only to a party of the delivery (its
builder, its assigned supplier, or an administrator), only once a driver is
assigned, and only while the goods are moving. Every evaluation, allowed or
not, is written to the ``access:<request_id>`` stream before the caller gets
an answer; if that write fails nothing is disclosed.
"""

from typing import NamedTuple, Protocol

from delivery_rotation.delivery import events as ev
from delivery_rotation.delivery.models import (
    ACTIVE_PHASES,
    AccessLogEntry,
    DeliveryRequest,
    DisclosureDecision,
)
from delivery_rotation.delivery.projections import ProviderRegistry
from delivery_rotation.delivery.roles import Capability, Role, has_capability
from delivery_rotation.kernel.event_store import SQLiteEventStore
from delivery_rotation.kernel.events import create_event
from delivery_rotation.kernel.ids import IdFactory
from delivery_rotation.kernel.logging import get_logger
from delivery_rotation.kernel.metrics import driver_contact_requests_total
from delivery_rotation.kernel.retry import retry_on_version_conflict
from delivery_rotation.kernel.time import TimeProvider

logger = get_logger(__name__)

DENIED_CONTACT_MESSAGE = (
    "Driver contact is available only to authorised parties during an active delivery."
)
DRIVER_PHONE = "driver_phone"


class DriverContact(NamedTuple):
    name: str | None
    phone: str | None


class ContactResolver(Protocol):
    """Looks up a provider's raw contact details"""

    def resolve(self, provider_id: str) -> DriverContact | None: ...


class ProviderRegistryContactResolver:
    """Default resolver backed by the provider registry"""

    def __init__(self, providers: ProviderRegistry):
        self.providers = providers

    def resolve(self, provider_id: str) -> DriverContact | None:
        provider = self.providers.get(provider_id)
        if provider is None:
            return None
        return DriverContact(name=provider.provider_name, phone=provider.phone)


def disclosure_denial_reason(
    request: DeliveryRequest, requester_id: str, role: Role, justification: str
) -> str | None:
    """
    Why the gate must refuse, or None if policy allows disclosure

    Checks run in a fixed order so the logged reason is stable.
    """
    if not justification or not justification.strip():
        return "A business justification is required"
    if not has_capability(role, Capability.VIEW_DRIVER_CONTACT):
        return f"Role {role.value} may not view driver contacts"

    is_party = (
        requester_id == request.builder_id
        or (request.supplier_id is not None and requester_id == request.supplier_id)
        or has_capability(role, Capability.OVERRIDE_OWNERSHIP)
    )
    if not is_party:
        return "Requester is not a party to this delivery"
    if request.assigned_provider_id is None:
        return "No driver has been assigned to this delivery"
    if request.delivery_phase not in ACTIVE_PHASES:
        phase = request.delivery_phase.value if request.delivery_phase else "none"
        return f"Delivery is not in progress (phase: {phase})"
    return None


class DriverContactGate:
    """Evaluates, logs and answers driver-contact requests"""

    def __init__(
        self,
        event_store: SQLiteEventStore,
        resolver: ContactResolver,
        time_provider: TimeProvider,
        id_factory: IdFactory,
    ):
        self.event_store = event_store
        self.resolver = resolver
        self.time_provider = time_provider
        self.id_factory = id_factory

    def evaluate(
        self,
        request: DeliveryRequest,
        requester_id: str,
        role: Role,
        justification: str,
    ) -> DisclosureDecision:
        """
        Decide, log, then answer

        Raises:
            EventStoreError: The access log could not be written (nothing disclosed)
        """
        reason = disclosure_denial_reason(request, requester_id, role, justification)
        contact: DriverContact | None = None
        if reason is None:
            contact = self.resolver.resolve(request.assigned_provider_id)
            if contact is None or not contact.phone:
                reason = "Driver contact details are unavailable"

        authorized = reason is None
        entry = self._log_access(
            request,
            requester_id,
            role,
            justification,
            authorized=authorized,
            reason=reason or "Authorised party during active delivery",
        )
        driver_contact_requests_total.labels(authorized=str(authorized).lower()).inc()

        if not authorized:
            logger.info(
                "Driver contact denied",
                request_id=request.request_id,
                requester_id=requester_id,
                role=role.value,
                reason=reason,
            )
            return DisclosureDecision(
                allowed=False,
                reason=reason,
                driver_name=None,
                driver_contact=DENIED_CONTACT_MESSAGE,
                access_log_entry_id=entry.entry_id,
            )

        logger.info(
            "Driver contact disclosed",
            request_id=request.request_id,
            requester_id=requester_id,
            role=role.value,
        )
        return DisclosureDecision(
            allowed=True,
            reason=entry.reason,
            driver_name=contact.name,
            driver_contact=contact.phone,
            access_log_entry_id=entry.entry_id,
        )

    @retry_on_version_conflict()
    def _log_access(
        self,
        request: DeliveryRequest,
        requester_id: str,
        role: Role,
        justification: str,
        *,
        authorized: bool,
        reason: str,
    ) -> AccessLogEntry:
        stream_id = ev.access_stream_id(request.request_id)
        now = self.time_provider.now()
        entry = AccessLogEntry(
            entry_id=self.id_factory.generate("acc"),
            request_id=request.request_id,
            accessor_id=requester_id,
            accessor_role=role.value,
            resource=DRIVER_PHONE,
            justification=justification,
            delivery_phase=request.delivery_phase.value if request.delivery_phase else None,
            authorized=authorized,
            reason=reason,
            accessed_at=now,
        )
        version = self.event_store.get_stream_version(stream_id)
        self.event_store.append(
            stream_id,
            version,
            [
                create_event(
                    event_id=self.id_factory.generate("evt"),
                    stream_id=stream_id,
                    stream_type=ev.DRIVER_CONTACT_ACCESS,
                    event_type=ev.DRIVER_CONTACT_ACCESS_LOGGED,
                    occurred_at=now,
                    actor_id=requester_id,
                    command_id=self.id_factory.generate("cmd"),
                    payload=entry.model_dump(mode="json"),
                    version=version + 1,
                )
            ],
        )
        return entry

    def get_access_log(self, request_id: str) -> list[AccessLogEntry]:
        return [
            AccessLogEntry.model_validate(event.payload)
            for event in self.event_store.load_stream(ev.access_stream_id(request_id))
            if event.event_type == ev.DRIVER_CONTACT_ACCESS_LOGGED
        ]
