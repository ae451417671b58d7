"""
Exception hierarchy for the delivery rotation service

Four families matter to callers: validation failures (nothing was written),
missing records, conflicts (the request moved on without you) and
persistence failures (retry the whole call). Terminal rotation outcomes such
as ``rotation_failed`` are states, not exceptions.
"""


class DeliveryRotationError(Exception):
    """Base exception for all delivery rotation errors"""

    pass


# ============================================================================
# Validation
# ============================================================================


class ValidationError(DeliveryRotationError):
    """
    Raised when input is malformed (missing address, bad coordinates, ...)

    Always raised before any state is written.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class AccessDenied(DeliveryRotationError):
    """Raised when the caller's role or identity does not permit the operation"""

    def __init__(self, actor_id: str, capability: str, message: str = "") -> None:
        self.actor_id = actor_id
        self.capability = capability
        super().__init__(message or f"Actor {actor_id} lacks capability {capability}")


# ============================================================================
# Not found
# ============================================================================


class NotFoundError(DeliveryRotationError):
    """Base class for unknown identifiers"""

    pass


class RequestNotFound(NotFoundError):
    """Raised when delivery request does not exist"""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        super().__init__(f"Delivery request {request_id} not found")


class ProviderNotFound(NotFoundError):
    """Raised when delivery provider does not exist"""

    def __init__(self, provider_id: str) -> None:
        self.provider_id = provider_id
        super().__init__(f"Delivery provider {provider_id} not found")


# ============================================================================
# Conflicts
# ============================================================================


class ConflictError(DeliveryRotationError):
    """
    Raised when a call no longer matches the request's state

    Duplicate provider responses and late timeouts land here. The call is a
    no-op: nothing was written.
    """

    pass


class RequestAlreadyTerminal(ConflictError):
    """Raised when a request has already reached a terminal status"""

    def __init__(self, request_id: str, status: str) -> None:
        self.request_id = request_id
        self.status = status
        super().__init__(
            f"Delivery request {request_id} is already {status} - no further rotation"
        )


class ProviderNotContacted(ConflictError):
    """Raised when a response arrives from a provider that is not in flight"""

    def __init__(
        self, request_id: str, provider_id: str, contacted_provider_id: str | None
    ) -> None:
        self.request_id = request_id
        self.provider_id = provider_id
        self.contacted_provider_id = contacted_provider_id
        super().__init__(
            f"Provider {provider_id} is not the contacted provider for request "
            f"{request_id} (currently contacted: {contacted_provider_id or 'none'})"
        )


class InvalidStateTransition(ConflictError):
    """Raised when an operation is not valid for the request's current state"""

    def __init__(self, request_id: str, current: str, attempted: str) -> None:
        self.request_id = request_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Delivery request {request_id} cannot {attempted} while {current}"
        )


# ============================================================================
# Persistence
# ============================================================================


class EventStoreError(DeliveryRotationError):
    """Base class for event store errors"""

    pass


class CommandIdempotencyViolation(EventStoreError):
    """Raised when a command_id was already stored for a different stream"""

    def __init__(self, command_id: str, message: str = "") -> None:
        self.command_id = command_id
        super().__init__(message or f"Command {command_id} already processed")


class StreamVersionConflict(EventStoreError):
    """
    Raised when stream version doesn't match expected (optimistic locking)

    Another writer advanced the stream first - reload and retry.
    """

    def __init__(
        self, stream_id: str, expected_version: int, actual_version: int
    ) -> None:
        self.stream_id = stream_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Stream {stream_id} version mismatch: "
            f"expected {expected_version}, got {actual_version}"
        )
