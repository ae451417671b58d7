"""
DeliveryRotation - main facade

The one entry point the API, the CLI and the timeout sweeper go through. It
hides the event store, the projections and the handlers behind plain
operations that take ids and return models.

Example:
    >>> from delivery_rotation import DeliveryRotation
    >>> rotation = DeliveryRotation("deliveries.db")
    >>> rotation.register_provider("Kamau Transporters", phone="+254700000001",
    ...                            latitude=-1.28, longitude=36.82, rating=4.5)
    >>> req = rotation.create_delivery_request(
    ...     "bld_1",
    ...     pickup={"address": "Industrial Area", "latitude": -1.30, "longitude": 36.85},
    ...     delivery={"address": "Kilimani", "latitude": -1.29, "longitude": 36.78},
    ...     materials={"material_type": "cement", "quantity": 50, "unit": "bags"},
    ... )
    >>> rotation.get_rotation_status(req.request_id).request.status
    <RequestStatus.PENDING: 'pending'>
"""

import threading
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from delivery_rotation.delivery import commands
from delivery_rotation.delivery import events as ev
from delivery_rotation.delivery.access import (
    ContactResolver,
    DriverContactGate,
    ProviderRegistryContactResolver,
)
from delivery_rotation.delivery.geo import DistanceFunction, haversine_km
from delivery_rotation.delivery.handlers import DeliveryCommandHandlers
from delivery_rotation.delivery.models import (
    AccessLogEntry,
    Address,
    CommunicationRecord,
    DeliveryPhase,
    DeliveryProvider,
    DeliveryRequest,
    DisclosureDecision,
    MaterialSpec,
    ProviderAction,
    RequestStatus,
    RotationStatus,
    SweepResult,
    TimeoutEvent,
)
from delivery_rotation.delivery.notifications import AlertSender, NotificationDispatcher
from delivery_rotation.delivery.projections import (
    ProviderRegistry,
    RequestRegistry,
    fold_request,
)
from delivery_rotation.delivery.roles import Role, parse_role
from delivery_rotation.kernel.bus import InProcessBus
from delivery_rotation.kernel.errors import (
    ConflictError,
    ProviderNotFound,
    RequestNotFound,
    ValidationError,
)
from delivery_rotation.kernel.event_store import SQLiteEventStore
from delivery_rotation.kernel.events import Event
from delivery_rotation.kernel.ids import IdFactory, default_id_factory
from delivery_rotation.kernel.logging import LogOperation, get_logger
from delivery_rotation.kernel.metrics import (
    conflicting_responses_total,
    provider_responses_total,
    rotation_transitions_total,
)
from delivery_rotation.kernel.policy import RotationPolicy
from delivery_rotation.kernel.retry import retry_on_version_conflict
from delivery_rotation.kernel.time import RealTimeProvider, TimeProvider
from delivery_rotation.sweeper import TimeoutSweeper

logger = get_logger(__name__)

PROVIDER_EVENT_TYPES = ["ProviderRegistered", "ProviderLocationUpdated", "ProviderActivationChanged"]


def _coerce(model: type[BaseModel], value: Any, field: str) -> Any:
    """Accept a model or a plain dict; report bad input as ValidationError"""
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {field}: {e.errors()[0]['msg']}", field=field) from e


def _command(model: type[BaseModel], **fields: Any) -> Any:
    try:
        return model(**fields)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(p) for p in first["loc"]) or None
        raise ValidationError(f"Invalid {field}: {first['msg']}", field=field) from e


class DeliveryRotation:
    """
    Delivery provider rotation facade

    Provides:
    - Delivery request lifecycle (create, respond, time out, advance, cancel)
    - Rotation status and communication history
    - Driver-contact disclosure with an access log
    - Delivery phase updates
    - Provider registry maintenance
    - Timeout sweeping
    """

    def __init__(
        self,
        sqlite_path: str | Path,
        policy: RotationPolicy | None = None,
        time_provider: TimeProvider | None = None,
        id_factory: IdFactory | None = None,
        distance_fn: DistanceFunction | None = None,
        contact_resolver: ContactResolver | None = None,
        alert_sender: AlertSender | None = None,
    ) -> None:
        """
        Initialize the rotation service

        Args:
            sqlite_path: Path to SQLite database
            policy: Rotation policy (uses defaults if None)
            time_provider: Clock (uses real time if None)
            id_factory: Id generator (random time-ordered ids if None)
            distance_fn: Distance function (haversine if None)
            contact_resolver: Driver phone lookup (provider registry if None)
            alert_sender: Off-band alert channel (log only if None)
        """
        self.sqlite_path = Path(sqlite_path)
        self.policy = policy or RotationPolicy()
        self.time_provider = time_provider or RealTimeProvider()
        self.id_factory = id_factory or default_id_factory
        self.distance_fn = distance_fn or haversine_km

        # Infrastructure
        self.event_store = SQLiteEventStore(self.sqlite_path)
        self.handlers = DeliveryCommandHandlers(
            self.time_provider, self.policy, self.id_factory, self.distance_fn
        )
        self.bus = InProcessBus()

        # Projections
        self.request_registry = RequestRegistry()
        self.provider_registry = ProviderRegistry()
        self.bus.subscribe("*", self.request_registry.apply_event)
        self.bus.subscribe_many(PROVIDER_EVENT_TYPES, self.provider_registry.apply_event)

        # Outbound
        self.dispatcher = NotificationDispatcher(
            self.event_store,
            self.request_registry,
            self.provider_registry,
            self.time_provider,
            self.id_factory,
            self.policy,
            alert_sender=alert_sender,
            distance_fn=self.distance_fn,
        )
        self.contact_gate = DriverContactGate(
            self.event_store,
            contact_resolver or ProviderRegistryContactResolver(self.provider_registry),
            self.time_provider,
            self.id_factory,
        )
        self.sweeper = TimeoutSweeper(self)

        self._position = 0
        self._catch_up_lock = threading.Lock()
        self._catch_up()

    # ========================================================================
    # Plumbing
    # ========================================================================

    def _catch_up(self) -> None:
        """Feed events written since the last call (by anyone) to the projections"""
        with self._catch_up_lock:
            new_events = self.event_store.load_since(self._position)
            if not new_events:
                return
            self.bus.publish_events(new_events)
            self._position = new_events[-1].position

    def _load_request(self, request_id: str) -> DeliveryRequest:
        stream = self.event_store.load_stream(request_id)
        if not stream or stream[0].stream_type != ev.DELIVERY_REQUEST:
            raise RequestNotFound(request_id)
        request = fold_request(stream)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def _committed(self, stored: list[Event]) -> None:
        """Post-commit: projections first, then metrics and notifications"""
        self._catch_up()
        for event in stored:
            rotation_transitions_total.labels(event_type=event.event_type).inc()
            if event.event_type == "ProviderResponded":
                provider_responses_total.labels(action=event.payload["action"]).inc()
        self.dispatcher.handle_events(stored)

    def _transition(
        self,
        request_id: str,
        decide: Callable[[DeliveryRequest, str], list[Event]],
        command_id: str | None = None,
    ) -> DeliveryRequest:
        """
        Read-fold-decide-append one transition on a request stream

        A lost compare-and-swap race reloads and decides again, so a
        duplicate that lost the race surfaces as a ConflictError. Passing the
        same ``command_id`` twice returns the first result without deciding
        again.
        """
        command_id = command_id or self.id_factory.generate("cmd")

        @retry_on_version_conflict()
        def attempt() -> list[Event]:
            previous = self.event_store.find_command_events(request_id, command_id)
            if previous:
                return []
            request = self._load_request(request_id)
            # Other processes may have changed the provider registry
            self._catch_up()
            new_events = decide(request, command_id)
            return self.event_store.append(request_id, request.version, new_events)

        try:
            stored = attempt()
        except ConflictError as e:
            logger.warning(
                "Conflicting call rejected",
                request_id=request_id,
                conflict=type(e).__name__,
                error=str(e),
            )
            conflicting_responses_total.labels(reason=type(e).__name__).inc()
            raise

        if stored:
            self._committed(stored)
        else:
            self._catch_up()
        return self.get_request(request_id)

    def _append_new_stream(self, new_events: list[Event]) -> list[Event]:
        stored = self.event_store.append(new_events[0].stream_id, new_events[0].version - 1, new_events)
        self._committed(stored)
        return stored

    # ========================================================================
    # Delivery Requests
    # ========================================================================

    def create_delivery_request(
        self,
        builder_id: str,
        pickup: Address | dict[str, Any],
        delivery: Address | dict[str, Any],
        materials: MaterialSpec | dict[str, Any],
        max_attempts: int | None = None,
        radius_km: float | None = None,
        supplier_id: str | None = None,
        auto_rotation_enabled: bool = True,
        actor_id: str | None = None,
        role: Role | str = Role.BUILDER,
    ) -> DeliveryRequest:
        """
        Create a request and contact its first candidate

        Returns:
            The request, either ``pending`` with one contacted provider or
            ``no_providers_available``

        Raises:
            ValidationError: Malformed input (nothing written)
            AccessDenied: Role cannot create requests for this builder
        """
        command = _command(
            commands.CreateDeliveryRequest,
            builder_id=builder_id,
            supplier_id=supplier_id,
            materials=_coerce(MaterialSpec, materials, "materials"),
            pickup=_coerce(Address, pickup, "pickup"),
            delivery=_coerce(Address, delivery, "delivery"),
            max_rotation_attempts=max_attempts,
            search_radius_km=radius_km,
            auto_rotation_enabled=auto_rotation_enabled,
        )
        actor = actor_id or builder_id

        with LogOperation(logger, "create_delivery_request", builder_id=builder_id):
            self._catch_up()
            new_events = self.handlers.handle_create_request(
                command,
                self.id_factory.generate("cmd"),
                actor,
                parse_role(role),
                self.provider_registry,
            )
            stored = self._append_new_stream(new_events)

        return self.get_request(stored[0].stream_id)

    def submit_provider_response(
        self,
        request_id: str,
        provider_id: str,
        action: ProviderAction | str,
        message: str | None = None,
        estimated_cost: float | None = None,
        estimated_duration: float | None = None,
        command_id: str | None = None,
        actor_id: str | None = None,
        role: Role | str = Role.DELIVERY_PROVIDER,
    ) -> DeliveryRequest:
        """
        Apply the contacted provider's accept or reject

        The actor defaults to the provider itself; acting for another
        provider needs the ownership override.

        Raises:
            AccessDenied: Actor may not answer for this provider
            RequestNotFound: Unknown request
            RequestAlreadyTerminal: Request already has an outcome (no-op)
            ProviderNotContacted: Provider is not the in-flight contact (no-op)
        """
        command = _command(
            commands.SubmitProviderResponse,
            request_id=request_id,
            provider_id=provider_id,
            action=action,
            message=message,
            estimated_cost=estimated_cost,
            estimated_duration_hours=estimated_duration,
        )
        actor = actor_id or provider_id
        resolved_role = parse_role(role)
        with LogOperation(
            logger,
            "submit_provider_response",
            request_id=request_id,
            provider_id=provider_id,
            actor_id=actor,
            action=command.action.value,
        ):
            return self._transition(
                request_id,
                lambda request, cid: self.handlers.handle_provider_response(
                    command, cid, actor, resolved_role, request, self.provider_registry
                ),
                command_id,
            )

    def submit_timeout(self, timeout: TimeoutEvent) -> DeliveryRequest:
        """
        Apply a missed response deadline

        Raises:
            ConflictError: The provider answered first, or the deadline has not passed
        """
        with LogOperation(
            logger,
            "submit_timeout",
            request_id=timeout.request_id,
            provider_id=timeout.provider_id,
        ):
            return self._transition(
                timeout.request_id,
                lambda request, cid: self.handlers.handle_timeout(
                    timeout, cid, request, self.provider_registry
                ),
            )

    def advance_rotation(
        self, request_id: str, actor_id: str, role: Role | str = Role.BUILDER
    ) -> DeliveryRequest:
        """Contact the next candidate of a request waiting for a manual advance"""
        command = commands.AdvanceRotation(request_id=request_id)
        resolved_role = parse_role(role)
        with LogOperation(logger, "advance_rotation", request_id=request_id, actor_id=actor_id):
            return self._transition(
                request_id,
                lambda request, cid: self.handlers.handle_advance_rotation(
                    command, cid, actor_id, resolved_role, request, self.provider_registry
                ),
            )

    def cancel_delivery_request(
        self,
        request_id: str,
        actor_id: str,
        role: Role | str = Role.BUILDER,
        reason: str | None = None,
    ) -> DeliveryRequest:
        """
        Withdraw a request before it reaches an outcome

        Raises:
            AccessDenied: Not the owning builder (and not an admin)
            RequestAlreadyTerminal: Request already has an outcome
        """
        command = _command(commands.CancelDeliveryRequest, request_id=request_id, reason=reason)
        resolved_role = parse_role(role)
        with LogOperation(logger, "cancel_delivery_request", request_id=request_id, actor_id=actor_id):
            return self._transition(
                request_id,
                lambda request, cid: self.handlers.handle_cancel_request(
                    command, cid, actor_id, resolved_role, request
                ),
            )

    def update_delivery_phase(
        self,
        request_id: str,
        phase: DeliveryPhase | str,
        actor_id: str,
        role: Role | str = Role.DELIVERY_PROVIDER,
    ) -> DeliveryRequest:
        """Move an accepted delivery forward (pending → ... → delivered)"""
        command = _command(commands.UpdateDeliveryPhase, request_id=request_id, phase=phase)
        resolved_role = parse_role(role)
        with LogOperation(
            logger, "update_delivery_phase", request_id=request_id, phase=command.phase.value
        ):
            return self._transition(
                request_id,
                lambda request, cid: self.handlers.handle_update_phase(
                    command, cid, actor_id, resolved_role, request
                ),
            )

    def get_request(self, request_id: str) -> DeliveryRequest:
        self._catch_up()
        request = self.request_registry.get(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request.model_copy(deep=True)

    def get_rotation_status(self, request_id: str) -> RotationStatus:
        """Request plus its queue in position order"""
        request = self.get_request(request_id)
        queue = sorted(request.queue, key=lambda e: e.queue_position)
        return RotationStatus(request=request, queue=queue)

    def list_requests(self, status: RequestStatus | str | None = None) -> list[DeliveryRequest]:
        self._catch_up()
        if status is None:
            requests = self.request_registry.list_all()
        else:
            requests = self.request_registry.list_by_status(RequestStatus(status))
        return [r.model_copy(deep=True) for r in requests]

    def list_active_requests(self) -> list[DeliveryRequest]:
        self._catch_up()
        return [r.model_copy(deep=True) for r in self.request_registry.list_active()]

    def get_communications(self, request_id: str) -> list[CommunicationRecord]:
        self.get_request(request_id)
        return self.dispatcher.get_communications(request_id)

    # ========================================================================
    # Driver Contact
    # ========================================================================

    def can_disclose_driver_contact(
        self,
        request_id: str,
        requester_id: str,
        role: Role | str,
        justification: str,
    ) -> DisclosureDecision:
        """
        Evaluate the disclosure gate (always writes one access-log entry)

        Raises:
            RequestNotFound: Unknown request (nothing logged)
            ValidationError: Unknown role (nothing logged)
            EventStoreError: Access log write failed (nothing disclosed)
        """
        resolved_role = parse_role(role)
        request = self.get_request(request_id)
        return self.contact_gate.evaluate(request, requester_id, resolved_role, justification)

    def get_access_log(self, request_id: str) -> list[AccessLogEntry]:
        return self.contact_gate.get_access_log(request_id)

    # ========================================================================
    # Providers
    # ========================================================================

    def register_provider(
        self,
        provider_name: str,
        phone: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        rating: float = 0.0,
        provider_type: str = "individual",
        vehicle_type: str | None = None,
        provider_id: str | None = None,
        actor_id: str = "system",
        role: Role | str = Role.ADMIN,
    ) -> DeliveryProvider:
        command = _command(
            commands.RegisterProvider,
            provider_name=provider_name,
            phone=phone,
            latitude=latitude,
            longitude=longitude,
            rating=rating,
            provider_type=provider_type,
            vehicle_type=vehicle_type,
            provider_id=provider_id,
        )
        self._catch_up()
        new_events = self.handlers.handle_register_provider(
            command,
            self.id_factory.generate("cmd"),
            actor_id,
            parse_role(role),
            self.provider_registry,
        )
        stored = self._append_new_stream(new_events)
        logger.info("Provider registered", provider_id=stored[0].stream_id)
        return self.get_provider(stored[0].stream_id)

    def update_provider_location(
        self,
        provider_id: str,
        latitude: float,
        longitude: float,
        actor_id: str = "system",
        role: Role | str = Role.ADMIN,
    ) -> DeliveryProvider:
        command = _command(
            commands.UpdateProviderLocation,
            provider_id=provider_id,
            latitude=latitude,
            longitude=longitude,
        )
        self._catch_up()
        new_events = self.handlers.handle_update_provider_location(
            command,
            self.id_factory.generate("cmd"),
            actor_id,
            parse_role(role),
            self.provider_registry,
        )
        self._append_new_stream(new_events)
        return self.get_provider(provider_id)

    def set_provider_active(
        self,
        provider_id: str,
        is_active: bool,
        reason: str | None = None,
        actor_id: str = "system",
        role: Role | str = Role.ADMIN,
    ) -> DeliveryProvider:
        command = commands.SetProviderActive(
            provider_id=provider_id, is_active=is_active, reason=reason
        )
        self._catch_up()
        new_events = self.handlers.handle_set_provider_active(
            command,
            self.id_factory.generate("cmd"),
            actor_id,
            parse_role(role),
            self.provider_registry,
        )
        self._append_new_stream(new_events)
        return self.get_provider(provider_id)

    def get_provider(self, provider_id: str) -> DeliveryProvider:
        self._catch_up()
        provider = self.provider_registry.get(provider_id)
        if provider is None:
            raise ProviderNotFound(provider_id)
        return provider.model_copy(deep=True)

    def list_providers(self, active_only: bool = False) -> list[DeliveryProvider]:
        self._catch_up()
        providers = (
            self.provider_registry.list_active()
            if active_only
            else self.provider_registry.list_all()
        )
        return [p.model_copy(deep=True) for p in providers]

    # ========================================================================
    # Timeouts & Health
    # ========================================================================

    def sweep_timeouts(self) -> SweepResult:
        """Time out every contacted provider whose deadline has passed"""
        return self.sweeper.sweep()

    def stats(self) -> dict[str, Any]:
        """Store and registry counts (for health checks and the CLI)"""
        self._catch_up()
        requests = self.request_registry.list_all()
        by_status: dict[str, int] = {}
        for request in requests:
            by_status[request.status.value] = by_status.get(request.status.value, 0) + 1
        return {
            "events": self.event_store.count_events(),
            "streams": self.event_store.count_streams(),
            "requests": len(requests),
            "requests_by_status": by_status,
            "providers": len(self.provider_registry.list_all()),
            "active_providers": len(self.provider_registry.list_active()),
        }
