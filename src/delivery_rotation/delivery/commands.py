"""
Delivery Rotation Commands

Commands express intentions; handlers decide what (if anything) happens.
"""

from pydantic import BaseModel, Field, field_validator

from delivery_rotation.delivery.models import (
    Address,
    DeliveryPhase,
    MaterialSpec,
    ProviderAction,
)

# ============================================================================
# Delivery Request Commands
# ============================================================================


class CreateDeliveryRequest(BaseModel):
    """
    Ask for a delivery and start the rotation

    ``max_rotation_attempts`` and ``search_radius_km`` fall back to the
    policy defaults when omitted.
    """

    builder_id: str = Field(..., min_length=1)
    supplier_id: str | None = None
    materials: MaterialSpec
    pickup: Address
    delivery: Address
    max_rotation_attempts: int | None = Field(default=None, ge=1, le=50)
    search_radius_km: float | None = Field(default=None, gt=0, le=500)
    auto_rotation_enabled: bool = True


class SubmitProviderResponse(BaseModel):
    """Contacted provider's answer (accept or reject)"""

    request_id: str
    provider_id: str
    action: ProviderAction
    message: str | None = Field(default=None, max_length=2000)
    estimated_cost: float | None = Field(default=None, ge=0)
    estimated_duration_hours: float | None = Field(default=None, ge=0)

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: ProviderAction) -> ProviderAction:
        # Timeouts come only from the sweeper as a TimeoutEvent
        if v == ProviderAction.TIMEOUT:
            raise ValueError("timeout is not a provider response")
        return v


class AdvanceRotation(BaseModel):
    """Contact the next candidate of a request paused with auto-rotation off"""

    request_id: str


class CancelDeliveryRequest(BaseModel):
    request_id: str
    reason: str | None = Field(default=None, max_length=500)


class UpdateDeliveryPhase(BaseModel):
    request_id: str
    phase: DeliveryPhase


# ============================================================================
# Delivery Provider Commands
# ============================================================================


class RegisterProvider(BaseModel):
    provider_name: str = Field(..., min_length=1)
    phone: str | None = None
    provider_type: str = Field(default="individual", description="individual or company")
    vehicle_type: str | None = None
    rating: float = Field(default=0.0, ge=0.0, le=5.0)
    latitude: float | None = Field(default=None, ge=-90.0, le=90.0)
    longitude: float | None = Field(default=None, ge=-180.0, le=180.0)
    provider_id: str | None = Field(
        default=None, description="Use an existing marketplace id instead of generating one"
    )


class UpdateProviderLocation(BaseModel):
    provider_id: str
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)


class SetProviderActive(BaseModel):
    provider_id: str
    is_active: bool
    reason: str | None = None
