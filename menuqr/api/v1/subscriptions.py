"""Subscription lifecycle endpoints for the signed-in tenant."""

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from menuqr.auth import TenantUser, actor_for
from menuqr.models.downgrade import DowngradeImpact, EffectiveWhen, UpgradePreview
from menuqr.models.plans import BillingCycle, Plan, ResourceKind
from menuqr.models.subscription import Subscription
from menuqr.services.downgrade_service import DowngradeService
from menuqr.services.subscription_service import SubscriptionService

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class CreateSubscriptionRequest(BaseModel):
    plan_slug: str = Field(description="Plan to subscribe to")
    trial: bool = Field(default=False, description="Start with the plan's trial period")
    billing_cycle: BillingCycle | None = None


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class DowngradeRequest(BaseModel):
    plan_slug: str
    effective: EffectiveWhen = EffectiveWhen.END_OF_CYCLE
    reason: str | None = Field(default=None, max_length=500)
    # Record IDs the tenant chose to archive, per resource
    selection: dict[ResourceKind, list[str]] | None = None


class UpgradeRequest(BaseModel):
    plan_slug: str


class SubscriptionResponse(BaseModel):
    subscription: Subscription
    plan: Plan


def _get_subscription_service(request: Request) -> SubscriptionService:
    service = getattr(request.app.state, "subscription_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Subscription service unavailable")
    return service


def _get_downgrade_service(request: Request) -> DowngradeService:
    service = getattr(request.app.state, "downgrade_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Subscription service unavailable")
    return service


def _respond(service: SubscriptionService, subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        subscription=subscription,
        plan=service.catalog.get_plan(subscription.plan_slug),
    )


@router.get("/me", response_model=SubscriptionResponse)
async def get_my_subscription(request: Request, user: TenantUser) -> SubscriptionResponse:
    service = _get_subscription_service(request)
    return _respond(service, await service.get_active_subscription(user.tenant_id))


@router.post("", response_model=SubscriptionResponse, status_code=201)
async def create_subscription(
    body: CreateSubscriptionRequest, request: Request, user: TenantUser
) -> SubscriptionResponse:
    service = _get_subscription_service(request)
    subscription = await service.create_subscription(
        user.tenant_id,
        body.plan_slug,
        trial=body.trial,
        billing_cycle=body.billing_cycle,
        actor=actor_for(user),
    )
    return _respond(service, subscription)


@router.post("/me/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    body: CancelRequest, request: Request, user: TenantUser
) -> SubscriptionResponse:
    service = _get_subscription_service(request)
    return _respond(service, await service.cancel(user.tenant_id, body.reason, actor=actor_for(user)))


@router.post("/me/reactivate", response_model=SubscriptionResponse)
async def reactivate_subscription(request: Request, user: TenantUser) -> SubscriptionResponse:
    service = _get_subscription_service(request)
    return _respond(service, await service.reactivate(user.tenant_id, actor=actor_for(user)))


@router.get("/me/downgrade-preview/{plan_slug}", response_model=DowngradeImpact)
async def downgrade_preview(plan_slug: str, request: Request, user: TenantUser) -> DowngradeImpact:
    """What the tenant would lose by moving to ``plan_slug``."""
    return await _get_downgrade_service(request).analyze_downgrade(user.tenant_id, plan_slug)


@router.get("/me/upgrade-preview/{plan_slug}", response_model=UpgradePreview)
async def upgrade_preview(plan_slug: str, request: Request, user: TenantUser) -> UpgradePreview:
    return await _get_downgrade_service(request).preview_upgrade(user.tenant_id, plan_slug)


@router.post("/me/downgrade", response_model=SubscriptionResponse)
async def schedule_downgrade(
    body: DowngradeRequest, request: Request, user: TenantUser
) -> SubscriptionResponse:
    subscription = await _get_downgrade_service(request).schedule_downgrade(
        user.tenant_id,
        body.plan_slug,
        effective=body.effective,
        reason=body.reason,
        selection=body.selection,
        actor=actor_for(user),
    )
    return _respond(_get_subscription_service(request), subscription)


@router.delete("/me/downgrade", response_model=SubscriptionResponse)
async def cancel_scheduled_downgrade(request: Request, user: TenantUser) -> SubscriptionResponse:
    subscription = await _get_downgrade_service(request).cancel_scheduled_downgrade(
        user.tenant_id, actor=actor_for(user)
    )
    return _respond(_get_subscription_service(request), subscription)


@router.post("/me/upgrade", response_model=SubscriptionResponse)
async def upgrade(body: UpgradeRequest, request: Request, user: TenantUser) -> SubscriptionResponse:
    subscription = await _get_downgrade_service(request).upgrade(
        user.tenant_id, body.plan_slug, actor=actor_for(user)
    )
    return _respond(_get_subscription_service(request), subscription)
