"""Delivery dispatch endpoints for restaurant staff, drivers and customers."""

from datetime import datetime

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from menuqr.auth import (
    STAFF_ROLES,
    AuthenticatedUser,
    CurrentUser,
    TenantUser,
    UserRole,
    actor_for,
)
from menuqr.errors import DeliveryNotFoundError
from menuqr.models.delivery import (
    Delivery,
    DeliveryStatus,
    GeoPoint,
    PodRequirements,
    ProofOfDelivery,
)
from menuqr.services.delivery_service import DeliveryDispatchService

router = APIRouter(prefix="/deliveries", tags=["deliveries"])

# The OTP reaches the customer out of band; drivers must not read it from the API
_HIDDEN_FIELDS = {"otp_code"}


class CreateDeliveryRequest(BaseModel):
    order_id: str
    customer_id: str | None = None
    pod_required: PodRequirements | None = None


class AssignDriverRequest(BaseModel):
    driver_id: str


class RejectRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class StatusUpdateRequest(BaseModel):
    status: DeliveryStatus
    note: str | None = Field(default=None, max_length=500)


class CancelDeliveryRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class TrackingResponse(BaseModel):
    """Public view of a delivery, reachable with the tracking code alone."""

    delivery_number: str
    status: DeliveryStatus
    current_location: GeoPoint | None = None
    created_at: datetime
    picked_up_at: datetime | None = None
    arrived_at: datetime | None = None
    delivered_at: datetime | None = None


def _get_dispatch_service(request: Request) -> DeliveryDispatchService:
    service = getattr(request.app.state, "dispatch_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Dispatch service unavailable")
    return service


async def _load_visible(service: DeliveryDispatchService, delivery_id: str, user: AuthenticatedUser) -> Delivery:
    """Deliveries are visible to their restaurant's staff, their driver and their customer."""
    delivery = await service.get(delivery_id)
    if user.role in STAFF_ROLES and user.tenant_id == delivery.tenant_id:
        return delivery
    if user.role == UserRole.DRIVER and user.id == delivery.driver_id:
        return delivery
    if user.role == UserRole.CUSTOMER and user.id == delivery.customer_id:
        return delivery
    # Same answer as a missing delivery so ids cannot be enumerated
    raise DeliveryNotFoundError(delivery_id)


@router.post("", response_model=Delivery, status_code=201, response_model_exclude=_HIDDEN_FIELDS)
async def create_delivery(body: CreateDeliveryRequest, request: Request, user: TenantUser) -> Delivery:
    return await _get_dispatch_service(request).create_delivery(
        user.tenant_id,
        body.order_id,
        customer_id=body.customer_id,
        pod_required=body.pod_required,
        actor=actor_for(user),
    )


@router.get("/track/{tracking_code}", response_model=TrackingResponse)
async def track_delivery(tracking_code: str, request: Request) -> TrackingResponse:
    delivery = await _get_dispatch_service(request).get_by_tracking_code(tracking_code)
    return TrackingResponse.model_validate(delivery.model_dump())


@router.get("/{delivery_id}", response_model=Delivery, response_model_exclude=_HIDDEN_FIELDS)
async def get_delivery(delivery_id: str, request: Request, user: CurrentUser) -> Delivery:
    return await _load_visible(_get_dispatch_service(request), delivery_id, user)


@router.post("/{delivery_id}/assign", response_model=Delivery, response_model_exclude=_HIDDEN_FIELDS)
async def assign_driver(
    delivery_id: str, body: AssignDriverRequest, request: Request, user: TenantUser
) -> Delivery:
    service = _get_dispatch_service(request)
    await _load_visible(service, delivery_id, user)
    return await service.assign_driver(delivery_id, body.driver_id, actor=actor_for(user))


@router.post("/{delivery_id}/accept", response_model=Delivery, response_model_exclude=_HIDDEN_FIELDS)
async def accept_delivery(delivery_id: str, request: Request, user: CurrentUser) -> Delivery:
    service = _get_dispatch_service(request)
    await _load_visible(service, delivery_id, user)
    return await service.driver_accept(delivery_id, user.id)


@router.post("/{delivery_id}/reject", response_model=Delivery, response_model_exclude=_HIDDEN_FIELDS)
async def reject_delivery(
    delivery_id: str, body: RejectRequest, request: Request, user: CurrentUser
) -> Delivery:
    service = _get_dispatch_service(request)
    await _load_visible(service, delivery_id, user)
    return await service.driver_reject(delivery_id, user.id, body.reason)


@router.post("/{delivery_id}/status", response_model=Delivery, response_model_exclude=_HIDDEN_FIELDS)
async def update_status(
    delivery_id: str, body: StatusUpdateRequest, request: Request, user: CurrentUser
) -> Delivery:
    if user.role == UserRole.CUSTOMER and body.status != DeliveryStatus.CANCELLED:
        raise HTTPException(status_code=403, detail="Customers can only cancel a delivery")
    service = _get_dispatch_service(request)
    await _load_visible(service, delivery_id, user)
    return await service.update_status(delivery_id, body.status, actor_for(user), body.note)


@router.post("/{delivery_id}/proof", response_model=Delivery, response_model_exclude=_HIDDEN_FIELDS)
async def submit_proof(
    delivery_id: str, body: ProofOfDelivery, request: Request, user: CurrentUser
) -> Delivery:
    service = _get_dispatch_service(request)
    await _load_visible(service, delivery_id, user)
    return await service.submit_proof_of_delivery(delivery_id, body, actor_for(user))


@router.post("/{delivery_id}/cancel", response_model=Delivery, response_model_exclude=_HIDDEN_FIELDS)
async def cancel_delivery(
    delivery_id: str, body: CancelDeliveryRequest, request: Request, user: CurrentUser
) -> Delivery:
    service = _get_dispatch_service(request)
    await _load_visible(service, delivery_id, user)
    return await service.cancel(delivery_id, body.reason, actor_for(user))


@router.post("/{delivery_id}/location", response_model=Delivery, response_model_exclude=_HIDDEN_FIELDS)
async def update_location(
    delivery_id: str, body: GeoPoint, request: Request, user: CurrentUser
) -> Delivery:
    if user.role == UserRole.CUSTOMER:
        raise HTTPException(status_code=403, detail="Customers cannot report a location")
    service = _get_dispatch_service(request)
    await _load_visible(service, delivery_id, user)
    return await service.update_location(delivery_id, body, actor_for(user))
