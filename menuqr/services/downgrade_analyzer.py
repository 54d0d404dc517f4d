"""Plan change analysis and application.

``DowngradeAnalyzer`` works on subscription objects in memory: it computes
what a plan change would cost and applies it (archival, counters, history,
grace window). Persisting the result is the caller's job.
"""

from datetime import datetime, timedelta
from typing import Protocol

import structlog

from menuqr.config import SubscriptionConfig
from menuqr.constants import FEATURE_LABELS, FEATURE_LOSS_WARNINGS
from menuqr.errors import BlockedError
from menuqr.models.downgrade import (
    Blocker,
    BlockReason,
    DowngradeImpact,
    ExcessResource,
    UpgradePreview,
)
from menuqr.models.plans import UNLIMITED, FeatureKey, Plan, PlanChangeKind, ResourceKind
from menuqr.models.subscription import DowngradeRecord, GracePeriod, GraceReason, Subscription
from menuqr.services.archival import (
    ArchivableResourceSource,
    select_for_archival,
    select_for_restore,
)
from menuqr.services.entitlements import effective_limit
from menuqr.services.plan_catalog import PlanCatalog, compare_tiers, features_gained, features_lost

logger = structlog.get_logger(__name__)


class ActiveDeliveryCounter(Protocol):
    async def count_active(self, tenant_id: str) -> int:
        """Number of non-terminal deliveries for a tenant."""


class DowngradeAnalyzer:
    """Computes and applies the effects of moving a subscription to another plan."""

    def __init__(
        self,
        catalog: PlanCatalog,
        config: SubscriptionConfig,
        sources: dict[ResourceKind, ArchivableResourceSource] | None = None,
        deliveries: ActiveDeliveryCounter | None = None,
    ) -> None:
        self.catalog = catalog
        self.config = config
        self.sources = sources or {}
        self.deliveries = deliveries

    async def _excess(
        self,
        subscription: Subscription,
        target: Plan,
        selection: dict[ResourceKind, list[str]] | None = None,
    ) -> list[ExcessResource]:
        excess = []
        for resource in ResourceKind:
            new_limit = effective_limit(target, subscription, resource)
            current = subscription.usage_of(resource)
            if new_limit == UNLIMITED or current <= new_limit:
                continue

            affected: list[str] = []
            resolvable = False
            source = self.sources.get(resource)
            if source is not None and not resource.is_metered:
                live = await source.list_live(subscription.tenant_id)
                if selection and resource in selection:
                    live_ids = {item.id for item in live}
                    affected = [item_id for item_id in selection[resource] if item_id in live_ids]
                else:
                    affected = select_for_archival(live, keep=new_limit)
                resolvable = len(live) - len(affected) <= new_limit

            excess.append(
                ExcessResource(
                    resource=resource,
                    current_count=current,
                    new_limit=new_limit,
                    excess_count=current - new_limit,
                    affected_ids=affected,
                    resolvable=resolvable,
                )
            )
        return excess

    async def _blockers(self, subscription: Subscription, target: Plan) -> list[Blocker]:
        if self.deliveries is None or target.has_feature(FeatureKey.DELIVERY_MODULE):
            return []
        if FeatureKey.DELIVERY_MODULE in subscription.custom_permissions:
            return []
        active = await self.deliveries.count_active(subscription.tenant_id)
        if active == 0:
            return []
        return [
            Blocker(
                reason=BlockReason.ACTIVE_DELIVERIES,
                count=active,
                message=f"{active} deliveries are still in progress",
            )
        ]

    async def analyze(
        self,
        subscription: Subscription,
        target: Plan,
        selection: dict[ResourceKind, list[str]] | None = None,
    ) -> DowngradeImpact:
        current = self.catalog.get_plan(subscription.plan_slug)
        lost = features_lost(current, target)
        warnings = [FEATURE_LOSS_WARNINGS[f] for f in lost if f in FEATURE_LOSS_WARNINGS]
        excess = await self._excess(subscription, target, selection)
        for item in excess:
            warnings.append(
                f"{item.excess_count} {item.resource.value} over the new limit of {item.new_limit}"
            )
        return DowngradeImpact(
            from_plan_slug=current.slug,
            to_plan_slug=target.slug,
            change_kind=compare_tiers(current, target),
            excess=excess,
            lost_features=lost,
            blocking=await self._blockers(subscription, target),
            warnings=warnings,
        )

    def preview_upgrade(self, subscription: Subscription, target: Plan) -> UpgradePreview:
        current = self.catalog.get_plan(subscription.plan_slug)
        cycle = subscription.billing_cycle
        return UpgradePreview(
            from_plan_slug=current.slug,
            to_plan_slug=target.slug,
            change_kind=compare_tiers(current, target),
            gained_features=features_gained(current, target),
            new_limits=dict(target.limits),
            price_difference=target.pricing.for_cycle(cycle) - current.pricing.for_cycle(cycle),
            currency=target.pricing.currency,
        )

    async def apply_plan_change(
        self,
        subscription: Subscription,
        target: Plan,
        now: datetime,
        *,
        enforce_blockers: bool = True,
        allow_over_limit: bool = True,
        selection: dict[ResourceKind, list[str]] | None = None,
        reason: str = "downgrade",
        archived: dict[ResourceKind, list[str]] | None = None,
    ) -> DowngradeImpact:
        """Move ``subscription`` to ``target`` in place.

        Excess stock records are archived (newest first) and their counters
        recounted from the records left live. Whatever stays over the new
        limit opens a downgrade grace window so the tenant can clean up
        manually; with ``allow_over_limit=False`` the change is refused
        instead, before anything is archived.

        ``archived`` collects the archived IDs. Callers that retry the change
        pass the same dict to every attempt so records archived by an attempt
        whose write was lost still end up in the downgrade history.
        """
        impact = await self.analyze(subscription, target, selection)
        if enforce_blockers and impact.blocking:
            blocker = impact.blocking[0]
            raise BlockedError(
                blocker.reason.value,
                blocker.message,
                context={"count": blocker.count, "target_plan": target.slug},
            )
        stuck = [item for item in impact.excess if not item.resolvable]
        if stuck and not allow_over_limit:
            raise BlockedError(
                "unresolved_excess",
                "Usage over the new plan limits cannot be archived automatically",
                context={
                    "target_plan": target.slug,
                    "resources": {
                        item.resource.value: {
                            "current": item.current_count,
                            "limit": item.new_limit,
                        }
                        for item in stuck
                    },
                },
            )

        archived = archived if archived is not None else {}
        for item in impact.excess:
            source = self.sources.get(item.resource)
            if source is None or item.resource.is_metered:
                continue
            if item.affected_ids:
                await source.archive(subscription.tenant_id, item.affected_ids, reason)
                done = archived.setdefault(item.resource, [])
                done.extend(i for i in item.affected_ids if i not in done)
            live = await source.list_live(subscription.tenant_id)
            subscription.usage[item.resource] = len(live)

        unresolved = [
            r.value
            for r in ResourceKind
            if effective_limit(target, subscription, r) != UNLIMITED
            and subscription.usage_of(r) > effective_limit(target, subscription, r)
        ]

        if impact.change_kind == PlanChangeKind.DOWNGRADE:
            subscription.downgrade_history.append(
                DowngradeRecord(
                    from_plan_slug=subscription.plan_slug,
                    to_plan_slug=target.slug,
                    effective_at=now,
                    archived={r: list(ids) for r, ids in archived.items() if ids},
                )
            )
        subscription.previous_plan_slug = subscription.plan_slug
        subscription.plan_slug = target.slug
        subscription.pending_change = None

        if unresolved:
            if subscription.grace_period is None or not subscription.in_grace(now):
                subscription.grace_period = GracePeriod(
                    started_at=now,
                    ends_at=now + timedelta(days=self.config.grace_period_days),
                    reason=GraceReason.DOWNGRADE,
                )
        elif subscription.grace_period and subscription.grace_period.reason == GraceReason.DOWNGRADE:
            subscription.grace_period = None

        logger.info(
            "plan_change_applied",
            tenant_id=subscription.tenant_id,
            from_plan=impact.from_plan_slug,
            to_plan=target.slug,
            change_kind=impact.change_kind.value,
            archived={r.value: len(ids) for r, ids in archived.items()},
            over_limit=unresolved,
            features_lost=[FEATURE_LABELS[f] for f in impact.lost_features],
        )
        return impact

    async def restore_archived(
        self,
        subscription: Subscription,
        target: Plan,
        restored: dict[ResourceKind, int] | None = None,
    ) -> dict[ResourceKind, int]:
        """Bring archived records back as far as ``target`` limits allow.

        Room is measured against the live records as well as the counter, so
        a retried restore does not bring back more than the limit holds.
        ``restored`` accumulates across retries like ``archived`` above.
        """
        restored = restored if restored is not None else {}
        for resource, source in self.sources.items():
            archived = await source.list_archived(subscription.tenant_id)
            if archived:
                live = await source.list_live(subscription.tenant_id)
                limit = effective_limit(target, subscription, resource)
                in_use = max(subscription.usage_of(resource), len(live))
                room = None if limit == UNLIMITED else limit - in_use
                ids = select_for_restore(archived, room)
                if ids:
                    changed = await source.restore(subscription.tenant_id, ids)
                    restored[resource] = restored.get(resource, 0) + changed
            if resource in restored:
                live = await source.list_live(subscription.tenant_id)
                subscription.usage[resource] = len(live)
        return restored
