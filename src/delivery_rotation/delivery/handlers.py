"""
Delivery Rotation Command Handlers

Each handler receives the current state (a folded request, the provider
registry), validates through the invariants and returns the events of one
transition. Handlers never write: the caller appends the returned events
with the request's version as the expected version, which is what makes a
transition all-or-nothing.
"""

from datetime import timedelta
from typing import Any

from delivery_rotation.delivery import commands, events, invariants
from delivery_rotation.delivery.geo import DistanceFunction, haversine_km
from delivery_rotation.delivery.models import (
    DeliveryRequest,
    ProviderAction,
    QueueCandidate,
    TimeoutEvent,
)
from delivery_rotation.delivery.projections import ProviderRegistry
from delivery_rotation.delivery.queue import build_queue, resolve_origin
from delivery_rotation.delivery.roles import Capability, Role, has_capability, require_capability
from delivery_rotation.kernel.errors import AccessDenied, ProviderNotFound, ValidationError
from delivery_rotation.kernel.events import Event, create_event
from delivery_rotation.kernel.ids import IdFactory, default_id_factory
from delivery_rotation.kernel.policy import RotationPolicy
from delivery_rotation.kernel.time import TimeProvider


class _StreamEvents:
    """Accumulates events for one stream with consecutive versions"""

    def __init__(
        self,
        stream_id: str,
        stream_type: str,
        base_version: int,
        command_id: str,
        actor_id: str | None,
        id_factory: IdFactory,
        time_provider: TimeProvider,
    ) -> None:
        self.stream_id = stream_id
        self.stream_type = stream_type
        self.version = base_version
        self.command_id = command_id
        self.actor_id = actor_id
        self.id_factory = id_factory
        self.now = time_provider.now()
        self.events: list[Event] = []

    def add(self, event_type: str, payload: dict[str, Any]) -> None:
        self.version += 1
        self.events.append(
            create_event(
                event_id=self.id_factory.generate("evt"),
                stream_id=self.stream_id,
                stream_type=self.stream_type,
                event_type=event_type,
                occurred_at=self.now,
                actor_id=self.actor_id,
                command_id=self.command_id,
                payload=payload,
                version=self.version,
            )
        )


class DeliveryCommandHandlers:
    """
    Command handlers for the provider rotation protocol

    Stateless: state is passed in, events come out.
    """

    def __init__(
        self,
        time_provider: TimeProvider,
        policy: RotationPolicy,
        id_factory: IdFactory = default_id_factory,
        distance_fn: DistanceFunction = haversine_km,
    ):
        self.time_provider = time_provider
        self.policy = policy
        self.id_factory = id_factory
        self.distance_fn = distance_fn

    def _request_stream(
        self, request_id: str, base_version: int, command_id: str, actor_id: str | None
    ) -> _StreamEvents:
        return _StreamEvents(
            request_id,
            events.DELIVERY_REQUEST,
            base_version,
            command_id,
            actor_id,
            self.id_factory,
            self.time_provider,
        )

    # ========================================================================
    # Delivery Request Handlers
    # ========================================================================

    def handle_create_request(
        self,
        command: commands.CreateDeliveryRequest,
        command_id: str,
        actor_id: str,
        role: Role,
        provider_registry: ProviderRegistry,
    ) -> list[Event]:
        """
        Create a request, build its queue and contact the first candidate

        Emits DeliveryRequestCreated, ProviderQueueBuilt and then either
        ProviderContacted (position 1) or NoProvidersAvailable.

        Raises:
            AccessDenied: Role cannot create requests
            ValidationError: Pickup coordinates unusable under a strict policy
        """
        require_capability(actor_id, role, Capability.CREATE_DELIVERY_REQUEST)
        if actor_id != command.builder_id and not has_capability(role, Capability.OVERRIDE_OWNERSHIP):
            raise AccessDenied(
                actor_id,
                Capability.CREATE_DELIVERY_REQUEST.value,
                "Builders can only create requests for themselves",
            )

        request_id = self.id_factory.generate("req")
        max_attempts = command.max_rotation_attempts or self.policy.default_max_rotation_attempts
        radius_km = command.search_radius_km or self.policy.default_search_radius_km
        origin, defaulted = resolve_origin(command.pickup, self.policy, request_id)

        stream = self._request_stream(request_id, 0, command_id, actor_id)
        stream.add(
            "DeliveryRequestCreated",
            events.DeliveryRequestCreated(
                request_id=request_id,
                builder_id=command.builder_id,
                supplier_id=command.supplier_id,
                materials=command.materials.model_dump(mode="json"),
                pickup=command.pickup.model_dump(mode="json"),
                delivery=command.delivery.model_dump(mode="json"),
                max_rotation_attempts=max_attempts,
                auto_rotation_enabled=command.auto_rotation_enabled,
                search_radius_km=radius_km,
                created_at=stream.now,
            ).model_dump(mode="json"),
        )

        candidates = build_queue(
            provider_registry.list_active(),
            origin,
            radius_km=radius_km,
            max_candidates=self.policy.max_candidates,
            exclude=[],
            policy=self.policy,
            distance_fn=self.distance_fn,
        )
        stream.add(
            "ProviderQueueBuilt",
            events.ProviderQueueBuilt(
                request_id=request_id,
                entries=[
                    {
                        "provider_id": c.provider_id,
                        "queue_position": position,
                        "distance_km": c.distance_km,
                        "priority_score": c.priority_score,
                    }
                    for position, c in enumerate(candidates, start=1)
                ],
                origin_latitude=origin.latitude,
                origin_longitude=origin.longitude,
                coordinates_defaulted=defaulted,
                built_at=stream.now,
            ).model_dump(mode="json"),
        )

        if not candidates:
            stream.add(
                "NoProvidersAvailable",
                events.NoProvidersAvailable(
                    request_id=request_id, attempted_providers=[], detected_at=stream.now
                ).model_dump(mode="json"),
            )
        else:
            self._add_contact(stream, request_id, candidates[0], queue_position=1, attempt=1)

        return stream.events

    def handle_provider_response(
        self,
        command: commands.SubmitProviderResponse,
        command_id: str,
        actor_id: str,
        role: Role,
        request: DeliveryRequest,
        provider_registry: ProviderRegistry,
    ) -> list[Event]:
        """
        Record an accept or reject from the contacted provider

        Raises:
            AccessDenied: Actor is neither the provider nor allowed to act for it
            RequestAlreadyTerminal: Request already has an outcome
            ProviderNotContacted: Provider is not the in-flight contact
        """
        invariants.validate_responder(command.provider_id, actor_id, role)
        invariants.validate_contacted_provider(request, command.provider_id)
        return self._respond(
            request,
            command.provider_id,
            command.action,
            command_id=command_id,
            actor_id=actor_id,
            provider_registry=provider_registry,
            message=command.message,
            estimated_cost=command.estimated_cost,
            estimated_duration_hours=command.estimated_duration_hours,
        )

    def handle_timeout(
        self,
        timeout: TimeoutEvent,
        command_id: str,
        request: DeliveryRequest,
        provider_registry: ProviderRegistry,
    ) -> list[Event]:
        """
        Treat a missed deadline like a rejection

        Raises:
            ConflictError: Provider already answered, or the deadline has not passed
        """
        entry = invariants.validate_contacted_provider(request, timeout.provider_id)
        invariants.validate_timeout_due(entry, timeout.detected_at)
        return self._respond(
            request,
            timeout.provider_id,
            ProviderAction.TIMEOUT,
            command_id=command_id,
            actor_id=None,
            provider_registry=provider_registry,
        )

    def _respond(
        self,
        request: DeliveryRequest,
        provider_id: str,
        action: ProviderAction,
        *,
        command_id: str,
        actor_id: str | None,
        provider_registry: ProviderRegistry,
        message: str | None = None,
        estimated_cost: float | None = None,
        estimated_duration_hours: float | None = None,
    ) -> list[Event]:
        stream = self._request_stream(request.request_id, request.version, command_id, actor_id)
        stream.add(
            "ProviderResponded",
            events.ProviderResponded(
                request_id=request.request_id,
                provider_id=provider_id,
                action=action.value,
                message=message,
                estimated_cost=estimated_cost,
                estimated_duration_hours=estimated_duration_hours,
                rotation_attempt=request.rotation_attempt,
                responded_at=stream.now,
            ).model_dump(mode="json"),
        )

        if action == ProviderAction.ACCEPT:
            return stream.events

        attempted = request.attempted_providers + [provider_id]

        if len(attempted) >= request.max_rotation_attempts:
            stream.add(
                "RotationFailed",
                events.RotationFailed(
                    request_id=request.request_id,
                    attempted_providers=attempted,
                    max_rotation_attempts=request.max_rotation_attempts,
                    failed_at=stream.now,
                ).model_dump(mode="json"),
            )
            return stream.events

        if not request.auto_rotation_enabled:
            stream.add(
                "RotationAwaitingManualAdvance",
                events.RotationAwaitingManualAdvance(
                    request_id=request.request_id,
                    last_provider_id=provider_id,
                    attempts_used=len(attempted),
                    paused_at=stream.now,
                ).model_dump(mode="json"),
            )
            return stream.events

        self._add_next_candidate(stream, request, attempted, provider_registry)
        return stream.events

    def handle_advance_rotation(
        self,
        command: commands.AdvanceRotation,
        command_id: str,
        actor_id: str,
        role: Role,
        request: DeliveryRequest,
        provider_registry: ProviderRegistry,
    ) -> list[Event]:
        """
        Manually contact the next candidate of a paused request

        Raises:
            AccessDenied: Not the owner (and not an admin)
            InvalidStateTransition: Request is not waiting for a manual advance
        """
        invariants.validate_owner_or_override(request, actor_id, role, Capability.ADVANCE_ROTATION)
        invariants.validate_awaiting_advance(request)
        stream = self._request_stream(request.request_id, request.version, command_id, actor_id)
        self._add_next_candidate(
            stream, request, list(request.attempted_providers), provider_registry
        )
        return stream.events

    def _add_next_candidate(
        self,
        stream: _StreamEvents,
        request: DeliveryRequest,
        attempted: list[str],
        provider_registry: ProviderRegistry,
    ) -> None:
        """Recompute the queue without anyone already tried and contact the best"""
        origin = request.origin
        if origin is None:
            origin, _ = resolve_origin(request.pickup, self.policy, request.request_id)

        candidates = build_queue(
            provider_registry.list_active(),
            origin,
            radius_km=request.search_radius_km,
            max_candidates=self.policy.max_candidates,
            exclude=attempted,
            policy=self.policy,
            distance_fn=self.distance_fn,
        )
        if not candidates:
            stream.add(
                "NoProvidersAvailable",
                events.NoProvidersAvailable(
                    request_id=request.request_id,
                    attempted_providers=attempted,
                    detected_at=stream.now,
                ).model_dump(mode="json"),
            )
            return

        chosen = candidates[0]
        existing = request.entry_for(chosen.provider_id)
        position = existing.queue_position if existing else request.next_queue_position()
        self._add_contact(
            stream, request.request_id, chosen, queue_position=position, attempt=len(attempted) + 1
        )

    def _add_contact(
        self,
        stream: _StreamEvents,
        request_id: str,
        candidate: QueueCandidate,
        *,
        queue_position: int,
        attempt: int,
    ) -> None:
        stream.add(
            "ProviderContacted",
            events.ProviderContacted(
                request_id=request_id,
                provider_id=candidate.provider_id,
                queue_position=queue_position,
                rotation_attempt=attempt,
                distance_km=candidate.distance_km,
                priority_score=candidate.priority_score,
                contacted_at=stream.now,
                timeout_at=stream.now + timedelta(minutes=self.policy.response_timeout_minutes),
            ).model_dump(mode="json"),
        )

    def handle_cancel_request(
        self,
        command: commands.CancelDeliveryRequest,
        command_id: str,
        actor_id: str,
        role: Role,
        request: DeliveryRequest,
    ) -> list[Event]:
        """
        Withdraw a request that has no outcome yet

        Raises:
            AccessDenied: Not the owning builder (and not an admin)
            RequestAlreadyTerminal: Request already has an outcome
        """
        invariants.validate_owner_or_override(
            request, actor_id, role, Capability.CANCEL_DELIVERY_REQUEST
        )
        invariants.validate_not_terminal(request)

        contacted = request.contacted_entry()
        stream = self._request_stream(request.request_id, request.version, command_id, actor_id)
        stream.add(
            "DeliveryRequestCancelled",
            events.DeliveryRequestCancelled(
                request_id=request.request_id,
                cancelled_by=actor_id,
                reason=command.reason,
                withdrawn_provider_id=contacted.provider_id if contacted else None,
                cancelled_at=stream.now,
            ).model_dump(mode="json"),
        )
        return stream.events

    def handle_update_phase(
        self,
        command: commands.UpdateDeliveryPhase,
        command_id: str,
        actor_id: str,
        role: Role,
        request: DeliveryRequest,
    ) -> list[Event]:
        """
        Move an accepted delivery to a later phase

        Raises:
            AccessDenied: Not the assigned provider (and not an admin)
            InvalidStateTransition: Not accepted yet, or the phase would go backwards
        """
        invariants.validate_phase_actor(request, actor_id, role)
        invariants.validate_phase_transition(request, command.phase)

        stream = self._request_stream(request.request_id, request.version, command_id, actor_id)
        stream.add(
            "DeliveryPhaseChanged",
            events.DeliveryPhaseChanged(
                request_id=request.request_id,
                from_phase=request.delivery_phase.value if request.delivery_phase else None,
                to_phase=command.phase.value,
                changed_by=actor_id,
                changed_at=stream.now,
            ).model_dump(mode="json"),
        )
        return stream.events

    # ========================================================================
    # Delivery Provider Handlers
    # ========================================================================

    def handle_register_provider(
        self,
        command: commands.RegisterProvider,
        command_id: str,
        actor_id: str,
        role: Role,
        provider_registry: ProviderRegistry,
    ) -> list[Event]:
        require_capability(actor_id, role, Capability.MANAGE_PROVIDERS)
        if (command.latitude is None) != (command.longitude is None):
            raise ValidationError("Latitude and longitude must be given together", field="latitude")

        provider_id = command.provider_id or self.id_factory.generate("prv")
        if provider_registry.get(provider_id) is not None:
            raise ValidationError(f"Provider {provider_id} is already registered", field="provider_id")

        stream = _StreamEvents(
            provider_id,
            events.DELIVERY_PROVIDER,
            0,
            command_id,
            actor_id,
            self.id_factory,
            self.time_provider,
        )
        stream.add(
            "ProviderRegistered",
            events.ProviderRegistered(
                provider_id=provider_id,
                provider_name=command.provider_name,
                phone=command.phone,
                provider_type=command.provider_type,
                vehicle_type=command.vehicle_type,
                rating=command.rating,
                latitude=command.latitude,
                longitude=command.longitude,
                registered_at=stream.now,
                registered_by=actor_id,
            ).model_dump(mode="json"),
        )
        return stream.events

    def _provider_stream(
        self,
        provider_id: str,
        command_id: str,
        actor_id: str,
        provider_registry: ProviderRegistry,
    ) -> _StreamEvents:
        if provider_registry.get(provider_id) is None:
            raise ProviderNotFound(provider_id)
        return _StreamEvents(
            provider_id,
            events.DELIVERY_PROVIDER,
            provider_registry.get_version(provider_id),
            command_id,
            actor_id,
            self.id_factory,
            self.time_provider,
        )

    def handle_update_provider_location(
        self,
        command: commands.UpdateProviderLocation,
        command_id: str,
        actor_id: str,
        role: Role,
        provider_registry: ProviderRegistry,
    ) -> list[Event]:
        # Providers may report their own position
        if actor_id != command.provider_id:
            require_capability(actor_id, role, Capability.MANAGE_PROVIDERS)
        stream = self._provider_stream(command.provider_id, command_id, actor_id, provider_registry)
        stream.add(
            "ProviderLocationUpdated",
            events.ProviderLocationUpdated(
                provider_id=command.provider_id,
                latitude=command.latitude,
                longitude=command.longitude,
                updated_at=stream.now,
            ).model_dump(mode="json"),
        )
        return stream.events

    def handle_set_provider_active(
        self,
        command: commands.SetProviderActive,
        command_id: str,
        actor_id: str,
        role: Role,
        provider_registry: ProviderRegistry,
    ) -> list[Event]:
        require_capability(actor_id, role, Capability.MANAGE_PROVIDERS)
        stream = self._provider_stream(command.provider_id, command_id, actor_id, provider_registry)
        stream.add(
            "ProviderActivationChanged",
            events.ProviderActivationChanged(
                provider_id=command.provider_id,
                is_active=command.is_active,
                reason=command.reason,
                changed_at=stream.now,
            ).model_dump(mode="json"),
        )
        return stream.events
