"""Delivery dispatch models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset(
    {DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED, DeliveryStatus.FAILED}
)

# Statuses in which a driver must be attached to the delivery
DRIVER_BOUND_STATUSES = frozenset(
    {
        DeliveryStatus.ASSIGNED,
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.IN_TRANSIT,
        DeliveryStatus.ARRIVED,
        DeliveryStatus.DELIVERED,
    }
)


class ActorKind(str, Enum):
    CUSTOMER = "customer"
    DRIVER = "driver"
    RESTAURANT = "restaurant"
    SYSTEM = "system"


class Actor(BaseModel):
    """Who issued a dispatch command."""

    kind: ActorKind
    id: str | None = None


SYSTEM_ACTOR = Actor(kind=ActorKind.SYSTEM)


class GeoPoint(BaseModel):
    lat: float = Field(ge=-90.0, le=90.0)
    lng: float = Field(ge=-180.0, le=180.0)
    accuracy: float | None = Field(default=None, ge=0.0, description="Meters")
    recorded_at: datetime | None = None


class StatusChange(BaseModel):
    """One entry of the delivery status history."""

    status: DeliveryStatus
    at: datetime
    actor: Actor
    note: str | None = None
    location: GeoPoint | None = None


class ProofKind(str, Enum):
    PHOTO = "photo"
    SIGNATURE = "signature"
    OTP = "otp"
    CUSTOMER_CONFIRM = "customer_confirm"
    GPS = "gps"


class ProofOfDelivery(BaseModel):
    kind: ProofKind
    photo_url: str | None = None
    signature_url: str | None = None
    otp_code: str | None = None
    recipient_name: str | None = None
    notes: str | None = None
    location: GeoPoint | None = None
    submitted_at: datetime | None = None


class PodRequirements(BaseModel):
    """Artifacts a proof of delivery must carry."""

    photo: bool = False
    signature: bool = False


class Delivery(BaseModel):
    """Persisted delivery state."""

    id: str
    order_id: str
    tenant_id: str
    customer_id: str | None = None
    driver_id: str | None = None
    delivery_number: str
    tracking_code: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    previous_status: DeliveryStatus | None = None
    status_history: list[StatusChange] = Field(default_factory=list)

    created_at: datetime
    assigned_at: datetime | None = None
    accepted_at: datetime | None = None
    picked_up_at: datetime | None = None
    in_transit_at: datetime | None = None
    arrived_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    failed_at: datetime | None = None

    assignment_attempts: int = Field(default=0, ge=0)
    assignment_expires_at: datetime | None = None
    rejected_driver_ids: list[str] = Field(default_factory=list)

    current_location: GeoPoint | None = None
    location_history: list[GeoPoint] = Field(default_factory=list)

    pod_required: PodRequirements = Field(default_factory=PodRequirements)
    proof_of_delivery: ProofOfDelivery | None = None
    otp_code: str | None = None

    cancelled_by: ActorKind | None = None
    cancellation_reason: str | None = None
    failure_reason: str | None = None

    version: int = Field(default=0, ge=0)
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
