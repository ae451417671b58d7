"""
Queue Builder - ranked candidate list for one delivery request

Eligibility is binary (active, located, within radius, not yet tried);
ranking is a weighted blend of proximity and rating. The builder is a pure
function over the provider registry so a rotation step can recompute the
queue from scratch every time it needs the next candidate.
"""

from delivery_rotation.delivery.geo import DistanceFunction, haversine_km, location_of
from delivery_rotation.delivery.models import (
    Address,
    DeliveryProvider,
    Location,
    QueueCandidate,
)
from delivery_rotation.kernel.errors import ValidationError
from delivery_rotation.kernel.logging import get_logger
from delivery_rotation.kernel.metrics import coordinates_defaulted_total, queue_candidates
from delivery_rotation.kernel.policy import RotationPolicy

logger = get_logger(__name__)


def resolve_origin(
    pickup: Address, policy: RotationPolicy, request_id: str | None = None
) -> tuple[Location, bool]:
    """
    Pickup coordinates, or the policy fallback when they are unusable

    Returns:
        Tuple of (location, defaulted)

    Raises:
        ValidationError: Coordinates unusable and policy.strict_coordinates is set
    """
    location = location_of(pickup)
    if location is not None:
        return location, False

    if policy.strict_coordinates:
        raise ValidationError(
            "Pickup coordinates are missing or out of range", field="pickup"
        )

    logger.warning(
        "Pickup coordinates unusable, using fallback location",
        request_id=request_id,
        fallback_latitude=policy.fallback_latitude,
        fallback_longitude=policy.fallback_longitude,
    )
    coordinates_defaulted_total.inc()
    return (
        Location(latitude=policy.fallback_latitude, longitude=policy.fallback_longitude),
        True,
    )


def priority_score(
    distance_km: float, radius_km: float, rating: float, policy: RotationPolicy
) -> float:
    """
    Weighted score in [0, 1]: nearer and better-rated is higher

    With default weights: 0.6 * (1 - distance/radius) + 0.4 * rating/5
    """
    proximity = max(0.0, 1.0 - distance_km / radius_km)
    return round(
        policy.distance_weight * proximity + policy.rating_weight * (rating / 5.0), 4
    )


def build_queue(
    providers: list[DeliveryProvider],
    origin: Location,
    *,
    radius_km: float,
    max_candidates: int,
    exclude: list[str] | set[str] | None = None,
    policy: RotationPolicy,
    distance_fn: DistanceFunction = haversine_km,
) -> list[QueueCandidate]:
    """
    Rank eligible providers around ``origin``

    Eligible = active, has a location, within ``radius_km`` and not in
    ``exclude``. Ordered by priority score descending, then distance
    ascending, then provider id. An empty list is a valid result.

    Example:
        >>> queue = build_queue(registry.list_active(), origin, radius_km=25,
        ...                     max_candidates=10, exclude=[], policy=policy)
        >>> [c.provider_id for c in queue]
        ['prv_near_good', 'prv_far_good', 'prv_near_poor']
    """
    excluded = set(exclude or ())
    candidates: list[QueueCandidate] = []

    for provider in providers:
        if not provider.is_active or provider.location is None:
            continue
        if provider.provider_id in excluded:
            continue

        distance = distance_fn(origin, provider.location)
        if distance > radius_km:
            continue

        candidates.append(
            QueueCandidate(
                provider_id=provider.provider_id,
                provider_name=provider.provider_name,
                distance_km=round(distance, 2),
                priority_score=priority_score(distance, radius_km, provider.rating, policy),
            )
        )

    candidates.sort(key=lambda c: (-c.priority_score, c.distance_km, c.provider_id))
    ranked = candidates[:max_candidates]
    queue_candidates.observe(len(ranked))
    return ranked


def trip_distance_km(
    pickup: Address, delivery: Address, distance_fn: DistanceFunction = haversine_km
) -> float | None:
    """Pickup to delivery distance, or None if either end lacks coordinates"""
    start = location_of(pickup)
    end = location_of(delivery)
    if start is None or end is None:
        return None
    return round(distance_fn(start, end), 2)
