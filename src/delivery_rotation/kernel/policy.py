"""
Rotation Policy - tunable parameters of the rotation protocol

One pydantic model holds every knob the controller, queue builder and
dispatcher read, so a deployment can be configured from a single JSON file
or from code.
"""

import json
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

# Nairobi CBD
DEFAULT_FALLBACK_LATITUDE = -1.2921
DEFAULT_FALLBACK_LONGITUDE = 36.8219


class RotationPolicy(BaseModel):
    """
    Parameters of the provider rotation protocol

    Defaults follow the marketplace's production settings: five attempts,
    a 25 km search radius and a city-centre fallback for requests that
    arrive without usable pickup coordinates.
    """

    default_max_rotation_attempts: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Attempt budget for requests that do not set their own",
    )

    default_search_radius_km: float = Field(
        default=25.0,
        gt=0,
        le=500,
        description="Provider search radius around the pickup point",
    )

    max_candidates: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum providers placed in a queue when it is built",
    )

    response_timeout_minutes: int = Field(
        default=15,
        ge=1,
        description="How long a contacted provider has to respond",
    )

    # Queue ranking
    distance_weight: float = Field(default=0.6, ge=0.0, le=1.0)
    rating_weight: float = Field(default=0.4, ge=0.0, le=1.0)

    # Coordinate handling
    strict_coordinates: bool = Field(
        default=False,
        description="Reject missing/malformed pickup coordinates instead of defaulting",
    )
    fallback_latitude: float = Field(default=DEFAULT_FALLBACK_LATITUDE, ge=-90, le=90)
    fallback_longitude: float = Field(default=DEFAULT_FALLBACK_LONGITUDE, ge=-180, le=180)

    broadcast_initial_queue: bool = Field(
        default=False,
        description="Tell every queued candidate about a new request, not only the first",
    )

    @model_validator(mode="after")
    def validate_weights(self) -> "RotationPolicy":
        if abs(self.distance_weight + self.rating_weight - 1.0) > 1e-9:
            raise ValueError("distance_weight + rating_weight must equal 1.0")
        return self

    @classmethod
    def from_file(cls, path: str | Path) -> "RotationPolicy":
        """Load a policy from a JSON file (missing keys keep their defaults)"""
        return cls.model_validate(json.loads(Path(path).read_text()))
