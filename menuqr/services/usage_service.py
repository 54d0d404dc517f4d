"""Usage counters: consume and release plan-limited resources."""

from datetime import UTC, datetime

import structlog

from menuqr.errors import LimitExceededError, NoSubscriptionError
from menuqr.models.delivery import SYSTEM_ACTOR, Actor
from menuqr.models.events import AuditEntry
from menuqr.models.plans import ResourceKind
from menuqr.models.subscription import FeatureCheck, Subscription
from menuqr.services.entitlements import (
    check_resource_limit,
    effective_limit,
    raise_for_check,
)
from menuqr.services.events import AuditSink, LoggingAuditSink
from menuqr.services.plan_catalog import PlanCatalog
from menuqr.services.repositories import SubscriptionRepository
from menuqr.services.ttl_cache import SubscriptionCache

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UsageService:
    """Applies usage deltas after an entitlement check.

    The increment itself is conditional inside the store, so of several
    concurrent consumers racing for the last unit only one succeeds.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        catalog: PlanCatalog,
        cache: SubscriptionCache | None = None,
        audit: AuditSink | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.cache = cache
        self.audit = audit or LoggingAuditSink()
        self.now_provider = now_provider

    async def _load(self, tenant_id: str) -> Subscription:
        # Counters are read from the store, never from the read cache
        subscription = await self.repository.get_by_tenant(tenant_id)
        if subscription is None:
            raise NoSubscriptionError(tenant_id)
        return subscription

    def _invalidate(self, tenant_id: str) -> None:
        if self.cache is not None:
            self.cache.invalidate(tenant_id)

    async def _record(
        self,
        action: str,
        subscription: Subscription,
        resource: ResourceKind,
        previous: int,
        value: int,
        actor: Actor | None,
    ) -> None:
        actor = actor or SYSTEM_ACTOR
        await self.audit.record(
            AuditEntry(
                actor_kind=actor.kind,
                actor_id=actor.id,
                action=action,
                entity="subscription_usage",
                entity_id=subscription.id,
                tenant_id=subscription.tenant_id,
                before={"resource": resource.value, "usage": previous},
                after={"resource": resource.value, "usage": value},
                at=self.now_provider(),
            )
        )

    async def consume(
        self,
        tenant_id: str,
        resource: ResourceKind,
        delta: int = 1,
        actor: Actor | None = None,
    ) -> FeatureCheck:
        if delta <= 0:
            raise ValueError("delta must be positive")

        subscription = await self._load(tenant_id)
        plan = self.catalog.get_plan(subscription.plan_slug)
        check = check_resource_limit(plan, subscription, resource, delta, now=self.now_provider())
        if not check.allowed:
            logger.info(
                "usage_denied",
                tenant_id=tenant_id,
                resource=resource.value,
                reason=check.reason.value,
                current_usage=check.current_usage,
                limit=check.limit,
            )
            raise_for_check(tenant_id, subscription, check, delta)

        limit = effective_limit(plan, subscription, resource)
        new_value = await self.repository.increment_usage(tenant_id, resource, delta, limit)
        if new_value is None:
            latest = await self._load(tenant_id)
            logger.info(
                "usage_increment_refused",
                tenant_id=tenant_id,
                resource=resource.value,
                current_usage=latest.usage_of(resource),
                limit=limit,
            )
            raise LimitExceededError(resource.value, latest.usage_of(resource), limit, requested=delta)

        self._invalidate(tenant_id)
        await self._record("usage.consume", subscription, resource, new_value - delta, new_value, actor)
        subscription.usage[resource] = new_value
        return check_resource_limit(plan, subscription, resource, 0, now=self.now_provider())

    async def release(
        self,
        tenant_id: str,
        resource: ResourceKind,
        delta: int = 1,
        actor: Actor | None = None,
    ) -> FeatureCheck:
        if delta <= 0:
            raise ValueError("delta must be positive")
        subscription = await self._load(tenant_id)
        previous = subscription.usage_of(resource)
        new_value = await self.repository.decrement_usage(tenant_id, resource, delta)
        self._invalidate(tenant_id)
        await self._record("usage.release", subscription, resource, previous, new_value, actor)
        subscription.usage[resource] = new_value
        plan = self.catalog.get_plan(subscription.plan_slug)
        return check_resource_limit(plan, subscription, resource, 0, now=self.now_provider())

    async def set_usage(
        self,
        tenant_id: str,
        resource: ResourceKind,
        value: int,
        actor: Actor | None = None,
    ) -> FeatureCheck:
        """Overwrite a counter, e.g. after recounting the records behind it."""
        subscription = await self._load(tenant_id)
        previous = subscription.usage_of(resource)
        new_value = await self.repository.set_usage(tenant_id, resource, value)
        self._invalidate(tenant_id)
        logger.info(
            "usage_reconciled",
            tenant_id=tenant_id,
            resource=resource.value,
            previous=previous,
            value=new_value,
        )
        await self._record("usage.set", subscription, resource, previous, new_value, actor)
        subscription.usage[resource] = new_value
        plan = self.catalog.get_plan(subscription.plan_slug)
        return check_resource_limit(plan, subscription, resource, 0, now=self.now_provider())
