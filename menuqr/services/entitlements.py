"""Entitlement evaluation.

The module-level functions are pure: given a plan, a subscription and a
point in time they decide whether a feature is on and whether a resource
can grow. ``EntitlementService`` resolves the tenant's plan and subscription
and applies them.
"""

from datetime import UTC, datetime

import structlog

from menuqr.config import SubscriptionConfig
from menuqr.errors import (
    FeatureNotEnabledError,
    LimitExceededError,
    SubscriptionInactiveError,
)
from menuqr.models.plans import UNLIMITED, FeatureKey, Plan, ResourceKind
from menuqr.models.subscription import CheckReason, FeatureCheck, Subscription
from menuqr.services.plan_catalog import PlanCatalog
from menuqr.services.repositories import SubscriptionRepository
from menuqr.services.ttl_cache import SubscriptionCache

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def effective_limit(plan: Plan, subscription: Subscription, resource: ResourceKind) -> int:
    """Plan limit widened by tenant overrides. Overrides never narrow."""
    base = plan.limit_for(resource)
    override = subscription.limit_overrides.get(resource)
    if override is None:
        return base
    if base == UNLIMITED or override == UNLIMITED:
        return UNLIMITED
    return max(base, override)


def enabled_features(plan: Plan, subscription: Subscription) -> set[FeatureKey]:
    if not subscription.is_active:
        return set()
    return set(plan.enabled_features) | set(subscription.custom_permissions)


def has_feature(plan: Plan, subscription: Subscription, feature: FeatureKey) -> bool:
    if not subscription.is_active:
        return False
    return feature in plan.enabled_features or feature in subscription.custom_permissions


def check_resource_limit(
    plan: Plan,
    subscription: Subscription,
    resource: ResourceKind,
    requested_delta: int = 1,
    now: datetime | None = None,
) -> FeatureCheck:
    now = now or _utcnow()
    current = subscription.usage_of(resource)
    limit = effective_limit(plan, subscription, resource)

    if limit == UNLIMITED:
        remaining = None
        percent_used = None
    else:
        remaining = max(0, limit - current)
        percent_used = round(current * 100 / limit, 1) if limit > 0 else (100.0 if current else 0.0)

    def _check(allowed: bool, reason: CheckReason) -> FeatureCheck:
        return FeatureCheck(
            allowed=allowed,
            reason=reason,
            resource=resource,
            current_usage=current,
            limit=limit,
            remaining=remaining,
            percent_used=percent_used,
        )

    if not subscription.is_active:
        return _check(False, CheckReason.SUBSCRIPTION_INACTIVE)
    if requested_delta <= 0:
        return _check(True, CheckReason.OK)
    # Over-limit data left by a downgrade is read-only until the window closes
    if subscription.in_grace(now):
        return _check(False, CheckReason.LIMIT_EXCEEDED)
    if limit == UNLIMITED or current + requested_delta <= limit:
        return _check(True, CheckReason.OK)
    return _check(False, CheckReason.LIMIT_EXCEEDED)


def usage_summary(
    plan: Plan, subscription: Subscription, now: datetime | None = None
) -> dict[ResourceKind, FeatureCheck]:
    return {
        resource: check_resource_limit(plan, subscription, resource, requested_delta=0, now=now)
        for resource in ResourceKind
    }


def raise_for_check(tenant_id: str, subscription: Subscription, check: FeatureCheck, requested: int) -> None:
    """Turn a denied check into the matching domain error."""
    if check.allowed:
        return
    if check.reason == CheckReason.SUBSCRIPTION_INACTIVE:
        raise SubscriptionInactiveError(tenant_id, subscription.status.value)
    raise LimitExceededError(
        check.resource.value, check.current_usage or 0, check.limit or 0, requested=requested
    )


class EntitlementService:
    """Answers feature and limit questions for a tenant."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        catalog: PlanCatalog,
        config: SubscriptionConfig,
        cache: SubscriptionCache | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.config = config
        self.cache = cache or SubscriptionCache(
            maxsize=config.entitlement_cache_size, ttl=config.entitlement_cache_ttl_seconds
        )
        self.now_provider = now_provider

    async def get_subscription(self, tenant_id: str) -> Subscription | None:
        cached = self.cache.get(tenant_id)
        if cached is not None:
            return cached
        subscription = await self.repository.get_by_tenant(tenant_id)
        if subscription is not None:
            self.cache.put(subscription)
        return subscription

    def _fallback_subscription(self, tenant_id: str) -> Subscription:
        now = self.now_provider()
        return Subscription(
            id="",
            tenant_id=tenant_id,
            plan_slug=self.config.fallback_plan_slug,
            current_period_start=now,
            current_period_end=now,
        )

    async def resolve(self, tenant_id: str) -> tuple[Plan, Subscription]:
        """Return the tenant's plan and subscription.

        Tenants without a subscription are evaluated against the fallback
        (free) plan with zero usage.
        """
        subscription = await self.get_subscription(tenant_id)
        if subscription is None:
            subscription = self._fallback_subscription(tenant_id)
        return self.catalog.get_plan(subscription.plan_slug), subscription

    async def check_feature(self, tenant_id: str, feature: FeatureKey) -> bool:
        plan, subscription = await self.resolve(tenant_id)
        return has_feature(plan, subscription, feature)

    async def check_feature_detail(self, tenant_id: str, feature: FeatureKey) -> FeatureCheck:
        plan, subscription = await self.resolve(tenant_id)
        if not subscription.is_active:
            return FeatureCheck(allowed=False, reason=CheckReason.SUBSCRIPTION_INACTIVE, feature=feature)
        if has_feature(plan, subscription, feature):
            return FeatureCheck(allowed=True, reason=CheckReason.OK, feature=feature)
        return FeatureCheck(allowed=False, reason=CheckReason.PLAN_LACKS_FEATURE, feature=feature)

    async def require_feature(self, tenant_id: str, feature: FeatureKey) -> None:
        plan, subscription = await self.resolve(tenant_id)
        if not subscription.is_active:
            raise SubscriptionInactiveError(tenant_id, subscription.status.value)
        if not has_feature(plan, subscription, feature):
            logger.info(
                "feature_denied",
                tenant_id=tenant_id,
                feature=feature.value,
                plan_slug=plan.slug,
            )
            raise FeatureNotEnabledError(feature.value, plan.slug)

    async def check_resource(
        self, tenant_id: str, resource: ResourceKind, delta: int = 1
    ) -> FeatureCheck:
        plan, subscription = await self.resolve(tenant_id)
        return check_resource_limit(plan, subscription, resource, delta, now=self.now_provider())

    async def require_resource(self, tenant_id: str, resource: ResourceKind, delta: int = 1) -> FeatureCheck:
        """Like check_resource, but a denial raises. Nothing is consumed."""
        plan, subscription = await self.resolve(tenant_id)
        check = check_resource_limit(plan, subscription, resource, delta, now=self.now_provider())
        raise_for_check(tenant_id, subscription, check, delta)
        return check

    async def usage_summary(self, tenant_id: str) -> dict[ResourceKind, FeatureCheck]:
        plan, subscription = await self.resolve(tenant_id)
        return usage_summary(plan, subscription, now=self.now_provider())

    async def enabled_features(self, tenant_id: str) -> set[FeatureKey]:
        plan, subscription = await self.resolve(tenant_id)
        return enabled_features(plan, subscription)

    def invalidate(self, tenant_id: str) -> None:
        self.cache.invalidate(tenant_id)
