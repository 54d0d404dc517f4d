"""Feature and usage-limit endpoints for the signed-in tenant."""

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from menuqr.auth import TenantUser, actor_for
from menuqr.models.plans import FeatureKey, ResourceKind
from menuqr.models.subscription import FeatureCheck
from menuqr.services.entitlements import EntitlementService
from menuqr.services.usage_service import UsageService

router = APIRouter(prefix="/entitlements", tags=["entitlements"])


class UsageDelta(BaseModel):
    delta: int = Field(default=1, ge=1, description="Units to consume or release")


class FeatureListResponse(BaseModel):
    plan_slug: str
    features: list[FeatureKey]


def _get_entitlement_service(request: Request) -> EntitlementService:
    service = getattr(request.app.state, "entitlement_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Entitlement service unavailable")
    return service


def _get_usage_service(request: Request) -> UsageService:
    service = getattr(request.app.state, "usage_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Usage service unavailable")
    return service


@router.get("/features", response_model=FeatureListResponse)
async def list_features(request: Request, user: TenantUser) -> FeatureListResponse:
    service = _get_entitlement_service(request)
    plan, _ = await service.resolve(user.tenant_id)
    features = await service.enabled_features(user.tenant_id)
    return FeatureListResponse(
        plan_slug=plan.slug,
        features=[f for f in FeatureKey if f in features],
    )


@router.get("/features/{feature}", response_model=FeatureCheck)
async def check_feature(feature: FeatureKey, request: Request, user: TenantUser) -> FeatureCheck:
    return await _get_entitlement_service(request).check_feature_detail(user.tenant_id, feature)


@router.get("/usage", response_model=dict[ResourceKind, FeatureCheck])
async def usage_summary(request: Request, user: TenantUser) -> dict[ResourceKind, FeatureCheck]:
    return await _get_entitlement_service(request).usage_summary(user.tenant_id)


@router.get("/usage/{resource}", response_model=FeatureCheck)
async def check_resource(
    resource: ResourceKind, request: Request, user: TenantUser, delta: int = 1
) -> FeatureCheck:
    """Would adding ``delta`` units stay within the plan?"""
    return await _get_entitlement_service(request).check_resource(user.tenant_id, resource, delta)


@router.post("/usage/{resource}/consume", response_model=FeatureCheck)
async def consume(
    resource: ResourceKind, body: UsageDelta, request: Request, user: TenantUser
) -> FeatureCheck:
    return await _get_usage_service(request).consume(
        user.tenant_id, resource, body.delta, actor=actor_for(user)
    )


@router.post("/usage/{resource}/release", response_model=FeatureCheck)
async def release(
    resource: ResourceKind, body: UsageDelta, request: Request, user: TenantUser
) -> FeatureCheck:
    return await _get_usage_service(request).release(
        user.tenant_id, resource, body.delta, actor=actor_for(user)
    )
