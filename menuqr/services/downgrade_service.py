"""Scheduling of plan downgrades and upgrades for a tenant."""

from datetime import datetime

import structlog

from menuqr.errors import InvalidTransitionError, NoPendingChangeError
from menuqr.models.delivery import Actor
from menuqr.models.downgrade import DowngradeImpact, EffectiveWhen, UpgradePreview
from menuqr.models.plans import PlanChangeKind, ResourceKind
from menuqr.models.subscription import PendingChange, Subscription
from menuqr.services.downgrade_analyzer import DowngradeAnalyzer
from menuqr.services.plan_catalog import PlanCatalog, compare_tiers
from menuqr.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)


class DowngradeService:
    """Previews and applies plan changes requested by a tenant."""

    def __init__(
        self,
        subscriptions: SubscriptionService,
        analyzer: DowngradeAnalyzer,
        catalog: PlanCatalog,
    ) -> None:
        self.subscriptions = subscriptions
        self.analyzer = analyzer
        self.catalog = catalog

    async def analyze_downgrade(
        self,
        tenant_id: str,
        target_slug: str,
        selection: dict[ResourceKind, list[str]] | None = None,
    ) -> DowngradeImpact:
        subscription = await self.subscriptions.get_active_subscription(tenant_id)
        return await self.analyzer.analyze(subscription, self.catalog.get_plan(target_slug), selection)

    async def preview_upgrade(self, tenant_id: str, target_slug: str) -> UpgradePreview:
        subscription = await self.subscriptions.get_active_subscription(tenant_id)
        return self.analyzer.preview_upgrade(subscription, self.catalog.get_plan(target_slug))

    async def schedule_downgrade(
        self,
        tenant_id: str,
        target_slug: str,
        effective: EffectiveWhen = EffectiveWhen.END_OF_CYCLE,
        reason: str | None = None,
        selection: dict[ResourceKind, list[str]] | None = None,
        actor: Actor | None = None,
    ) -> Subscription:
        """Downgrade now or at the end of the current period.

        Immediate downgrades refuse to run while blockers exist, and also when
        some usage over the new limits has no records to archive (users,
        storage, metered counters). Those tenants can clean up first or
        downgrade at the end of the cycle. End-of-cycle downgrades only
        record the pending change; archival happens when the period rolls
        over.
        """
        target = self.catalog.get_plan(target_slug)
        archived: dict[ResourceKind, list[str]] = {}

        async def _schedule(subscription: Subscription, now: datetime) -> bool:
            current = self.catalog.get_plan(subscription.plan_slug)
            if compare_tiers(current, target) != PlanChangeKind.DOWNGRADE:
                raise InvalidTransitionError(
                    current.slug, target.slug, message="Target plan is not a downgrade"
                )
            if effective == EffectiveWhen.IMMEDIATE:
                await self.analyzer.apply_plan_change(
                    subscription,
                    target,
                    now,
                    enforce_blockers=True,
                    allow_over_limit=False,
                    selection=selection,
                    reason=reason or "downgrade",
                    archived=archived,
                )
            else:
                subscription.pending_change = PendingChange(
                    kind=PlanChangeKind.DOWNGRADE,
                    target_plan_slug=target.slug,
                    effective_at=subscription.current_period_end,
                    requested_at=now,
                    reason=reason,
                )
            return True

        action = (
            "subscription.downgrade"
            if effective == EffectiveWhen.IMMEDIATE
            else "subscription.downgrade_scheduled"
        )
        subscription = await self.subscriptions.mutate(tenant_id, _schedule, action=action, actor=actor)
        logger.info(
            "downgrade_scheduled",
            tenant_id=tenant_id,
            target_plan=target.slug,
            effective=effective.value,
        )
        return subscription

    async def cancel_scheduled_downgrade(self, tenant_id: str, actor: Actor | None = None) -> Subscription:
        async def _cancel(subscription: Subscription, now: datetime) -> bool:
            if subscription.pending_change is None:
                raise NoPendingChangeError(tenant_id)
            subscription.pending_change = None
            return True

        subscription = await self.subscriptions.mutate(
            tenant_id, _cancel, action="subscription.downgrade_cancelled", actor=actor
        )
        logger.info("downgrade_cancelled", tenant_id=tenant_id)
        return subscription

    async def upgrade(self, tenant_id: str, target_slug: str, actor: Actor | None = None) -> Subscription:
        """Switch to a higher tier right away and bring archived records back."""
        target = self.catalog.get_plan(target_slug)
        restored: dict[ResourceKind, int] = {}

        async def _upgrade(subscription: Subscription, now: datetime) -> bool:
            current = self.catalog.get_plan(subscription.plan_slug)
            if compare_tiers(current, target) != PlanChangeKind.UPGRADE:
                raise InvalidTransitionError(
                    current.slug, target.slug, message="Target plan is not an upgrade"
                )
            await self.analyzer.apply_plan_change(
                subscription, target, now, enforce_blockers=False, reason="upgrade"
            )
            await self.analyzer.restore_archived(subscription, target, restored=restored)
            return True

        subscription = await self.subscriptions.mutate(
            tenant_id, _upgrade, action="subscription.upgrade", actor=actor
        )
        logger.info(
            "subscription_upgraded",
            tenant_id=tenant_id,
            target_plan=target.slug,
            restored={r.value: n for r, n in restored.items()},
        )
        return subscription
