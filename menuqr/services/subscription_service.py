"""Subscription lifecycle: creation, rollover, cancellation and grace windows."""

import calendar
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import structlog

from menuqr.config import SubscriptionConfig
from menuqr.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NoSubscriptionError,
)
from menuqr.models.delivery import SYSTEM_ACTOR, Actor
from menuqr.models.events import AuditEntry, SubscriptionNotice
from menuqr.models.plans import BillingCycle, FeatureKey, ResourceKind
from menuqr.models.subscription import (
    GracePeriod,
    GraceReason,
    Subscription,
    SubscriptionStatus,
)
from menuqr.services.downgrade_analyzer import DowngradeAnalyzer
from menuqr.services.events import (
    AuditSink,
    LoggingAuditSink,
    LoggingSubscriptionNotifier,
    SubscriptionNotifier,
)
from menuqr.services.plan_catalog import PlanCatalog
from menuqr.services.repositories import SubscriptionRepository
from menuqr.services.ttl_cache import SubscriptionCache

logger = structlog.get_logger(__name__)

# Returns True when the subscription was changed and must be written
Mutation = Callable[[Subscription, datetime], Awaitable[bool]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def add_billing_cycle(moment: datetime, cycle: BillingCycle) -> datetime:
    """Add one month or one year, clamping the day to the target month's length."""
    if cycle == BillingCycle.YEARLY:
        year, month = moment.year + 1, moment.month
    else:
        year, month = moment.year + (moment.month // 12), moment.month % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def reset_metered_usage(subscription: Subscription, now: datetime) -> None:
    for resource in ResourceKind:
        if resource.is_metered:
            subscription.usage[resource] = 0
    subscription.usage_reset_at = now


def audit_view(subscription: Subscription) -> dict:
    pending = subscription.pending_change
    grace = subscription.grace_period
    return {
        "plan_slug": subscription.plan_slug,
        "status": subscription.status.value,
        "current_period_end": subscription.current_period_end.isoformat(),
        "pending_plan_slug": pending.target_plan_slug if pending else None,
        "grace_reason": grace.reason.value if grace else None,
        "usage": {resource.value: count for resource, count in subscription.usage.items()},
        "version": subscription.version,
    }


class SubscriptionService:
    """Owns every write to a tenant's subscription record.

    Writes are read-modify-write cycles guarded by the record version; a
    conflicting concurrent write makes the cycle start over from a fresh read.
    Every write that lands is audited with the record before and after it.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        catalog: PlanCatalog,
        analyzer: DowngradeAnalyzer,
        config: SubscriptionConfig,
        cache: SubscriptionCache | None = None,
        notifier: SubscriptionNotifier | None = None,
        audit: AuditSink | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.catalog = catalog
        self.analyzer = analyzer
        self.config = config
        self.cache = cache
        self.notifier = notifier or LoggingSubscriptionNotifier()
        self.audit = audit or LoggingAuditSink()
        self.now_provider = now_provider

    async def get_active_subscription(self, tenant_id: str) -> Subscription:
        subscription = await self.repository.get_by_tenant(tenant_id)
        if subscription is None:
            raise NoSubscriptionError(tenant_id)
        return subscription

    async def _record(
        self,
        action: str,
        actor: Actor,
        before: dict | None,
        after: Subscription,
        at: datetime,
    ) -> None:
        await self.audit.record(
            AuditEntry(
                actor_kind=actor.kind,
                actor_id=actor.id,
                action=action,
                entity="subscription",
                entity_id=after.id,
                tenant_id=after.tenant_id,
                before=before,
                after=audit_view(after),
                at=at,
            )
        )

    async def mutate(
        self,
        tenant_id: str,
        mutation: Mutation,
        action: str = "subscription.update",
        actor: Actor | None = None,
    ) -> Subscription:
        """Apply ``mutation`` to a fresh copy and write it back, retrying on conflict."""
        for attempt in range(self.config.max_write_attempts):
            subscription = await self.get_active_subscription(tenant_id)
            expected_version = subscription.version
            before = audit_view(subscription)
            now = self.now_provider()
            if not await mutation(subscription, now):
                return subscription
            subscription.updated_at = now
            try:
                saved = await self.repository.save(subscription, expected_version)
            except ConcurrencyConflictError:
                logger.info(
                    "subscription_write_conflict",
                    tenant_id=tenant_id,
                    attempt=attempt + 1,
                    expected_version=expected_version,
                )
                continue
            if self.cache is not None:
                self.cache.invalidate(tenant_id)
            await self._record(action, actor or SYSTEM_ACTOR, before, saved, now)
            return saved

        logger.warning(
            "subscription_write_gave_up",
            tenant_id=tenant_id,
            attempts=self.config.max_write_attempts,
        )
        raise ConcurrencyConflictError("subscription", tenant_id, -1)

    async def _notify(self, tenant_id: str, kind: str, **details) -> None:
        await self.notifier.notify(
            SubscriptionNotice(
                tenant_id=tenant_id,
                kind=kind,
                occurred_at=self.now_provider(),
                details=details,
            )
        )

    async def create_subscription(
        self,
        tenant_id: str,
        plan_slug: str,
        trial: bool = False,
        billing_cycle: BillingCycle | None = None,
        actor: Actor | None = None,
    ) -> Subscription:
        plan = self.catalog.get_plan(plan_slug)
        cycle = billing_cycle or BillingCycle(self.config.default_billing_cycle)
        now = self.now_provider()

        status = SubscriptionStatus.ACTIVE
        trial_ends_at = None
        if trial and plan.trial_days > 0:
            status = SubscriptionStatus.TRIALING
            trial_ends_at = now + timedelta(days=plan.trial_days)

        subscription = Subscription(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            plan_slug=plan.slug,
            status=status,
            billing_cycle=cycle,
            current_period_start=now,
            current_period_end=add_billing_cycle(now, cycle),
            trial_ends_at=trial_ends_at,
            usage={resource: 0 for resource in ResourceKind},
            usage_reset_at=now,
            created_at=now,
            updated_at=now,
        )
        stored = await self.repository.insert(subscription)
        if self.cache is not None:
            self.cache.invalidate(tenant_id)
        await self._record("subscription.create", actor or SYSTEM_ACTOR, None, stored, now)
        logger.info(
            "subscription_created",
            tenant_id=tenant_id,
            plan_slug=plan.slug,
            status=status.value,
            billing_cycle=cycle.value,
        )
        return stored

    async def rollover_period(self, tenant_id: str) -> Subscription:
        """Advance an elapsed billing period.

        Idempotent: a call before the period end leaves the record untouched.
        Metered counters reset; stock counters carry over. A due pending plan
        change is applied in the same write.

        Cancelled subscriptions keep their last period: it anchors the
        reactivation window.
        """
        rolled = {}
        archived: dict[ResourceKind, list[str]] = {}

        async def _rollover(subscription: Subscription, now: datetime) -> bool:
            rolled.clear()
            if subscription.status == SubscriptionStatus.CANCELLED:
                return False
            changed = False
            if now >= subscription.current_period_end:
                start, end = subscription.current_period_start, subscription.current_period_end
                while end <= now:
                    start, end = end, add_billing_cycle(end, subscription.billing_cycle)
                subscription.current_period_start = start
                subscription.current_period_end = end
                reset_metered_usage(subscription, now)
                rolled["period_end"] = end
                changed = True

            pending = subscription.pending_change
            if pending is not None and pending.effective_at <= now:
                target = self.catalog.get_plan(pending.target_plan_slug)
                impact = await self.analyzer.analyze(subscription, target)
                if impact.blocking:
                    logger.warning(
                        "pending_change_blocked",
                        tenant_id=subscription.tenant_id,
                        target_plan=target.slug,
                        blockers=[b.reason.value for b in impact.blocking],
                    )
                else:
                    await self.analyzer.apply_plan_change(
                        subscription,
                        target,
                        now,
                        reason=pending.reason or "scheduled_downgrade",
                        archived=archived,
                    )
                    rolled["applied_plan"] = target.slug
                    changed = True
            return changed

        subscription = await self.mutate(tenant_id, _rollover, action="subscription.rollover")
        if rolled:
            logger.info(
                "subscription_rolled_over",
                tenant_id=tenant_id,
                period_end=subscription.current_period_end.isoformat(),
                applied_plan=rolled.get("applied_plan"),
            )
        if "applied_plan" in rolled:
            await self._notify(tenant_id, "plan_changed", plan_slug=rolled["applied_plan"])
        return subscription

    async def cancel(
        self, tenant_id: str, reason: str | None = None, actor: Actor | None = None
    ) -> Subscription:
        async def _cancel(subscription: Subscription, now: datetime) -> bool:
            if subscription.status == SubscriptionStatus.CANCELLED:
                raise InvalidTransitionError(
                    SubscriptionStatus.CANCELLED.value, SubscriptionStatus.CANCELLED.value
                )
            subscription.status = SubscriptionStatus.CANCELLED
            subscription.cancelled_at = now
            subscription.cancel_reason = reason
            return True

        subscription = await self.mutate(tenant_id, _cancel, action="subscription.cancel", actor=actor)
        logger.info("subscription_cancelled", tenant_id=tenant_id, reason=reason)
        return subscription

    async def reactivate(self, tenant_id: str, actor: Actor | None = None) -> Subscription:
        """Undo a cancellation up to ``reactivation_window_days`` after the last period ended."""

        async def _reactivate(subscription: Subscription, now: datetime) -> bool:
            deadline = subscription.current_period_end + timedelta(
                days=self.config.reactivation_window_days
            )
            if subscription.status != SubscriptionStatus.CANCELLED or now >= deadline:
                raise InvalidTransitionError(
                    subscription.status.value,
                    SubscriptionStatus.ACTIVE.value,
                    message="Subscription cannot be reactivated",
                )
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.cancelled_at = None
            subscription.cancel_reason = None
            subscription.current_period_start = now
            subscription.current_period_end = add_billing_cycle(now, subscription.billing_cycle)
            reset_metered_usage(subscription, now)
            return True

        subscription = await self.mutate(
            tenant_id, _reactivate, action="subscription.reactivate", actor=actor
        )
        logger.info("subscription_reactivated", tenant_id=tenant_id)
        return subscription

    async def start_grace_period(self, tenant_id: str, reason: GraceReason) -> Subscription:
        async def _start(subscription: Subscription, now: datetime) -> bool:
            if subscription.in_grace(now) and subscription.grace_period.reason == reason:
                return False
            subscription.grace_period = GracePeriod(
                started_at=now,
                ends_at=now + timedelta(days=self.config.grace_period_days),
                reason=reason,
            )
            return True

        subscription = await self.mutate(tenant_id, _start, action="subscription.grace_started")
        logger.info(
            "grace_period_started",
            tenant_id=tenant_id,
            reason=reason.value,
            ends_at=subscription.grace_period.ends_at.isoformat(),
        )
        return subscription

    async def end_grace_period(self, tenant_id: str) -> Subscription:
        """Close the grace window and settle what it was waiting for.

        Unpaid and ended-trial windows fall back to the free plan, archiving
        anything it cannot hold. The delivery block does not apply here since
        the tenant is no longer paying for the module. A cancelled
        subscription only loses the window; it stays cancelled.
        """
        ended = {}
        archived: dict[ResourceKind, list[str]] = {}

        async def _end(subscription: Subscription, now: datetime) -> bool:
            grace = subscription.grace_period
            if grace is None:
                return False
            ended["reason"] = grace.reason
            subscription.grace_period = None
            if subscription.status == SubscriptionStatus.CANCELLED:
                return True
            if grace.reason in (GraceReason.PAYMENT_FAILED, GraceReason.TRIAL_ENDED):
                fallback = self.catalog.get_plan(self.config.fallback_plan_slug)
                subscription.status = SubscriptionStatus.ACTIVE
                if subscription.plan_slug != fallback.slug:
                    await self.analyzer.apply_plan_change(
                        subscription,
                        fallback,
                        now,
                        enforce_blockers=False,
                        reason=grace.reason.value,
                        archived=archived,
                    )
            return True

        subscription = await self.mutate(tenant_id, _end, action="subscription.grace_ended")
        if ended:
            logger.info("grace_period_ended", tenant_id=tenant_id, reason=ended["reason"].value)
            await self._notify(
                tenant_id,
                "grace_period_ended",
                reason=ended["reason"].value,
                plan_slug=subscription.plan_slug,
            )
        return subscription

    async def mark_past_due(self, tenant_id: str) -> Subscription:
        """Payment failed: suspend paid access and open a payment grace window."""

        async def _past_due(subscription: Subscription, now: datetime) -> bool:
            if subscription.status == SubscriptionStatus.PAST_DUE:
                return False
            if subscription.status == SubscriptionStatus.CANCELLED:
                raise InvalidTransitionError(
                    subscription.status.value, SubscriptionStatus.PAST_DUE.value
                )
            subscription.status = SubscriptionStatus.PAST_DUE
            subscription.grace_period = GracePeriod(
                started_at=now,
                ends_at=now + timedelta(days=self.config.grace_period_days),
                reason=GraceReason.PAYMENT_FAILED,
            )
            return True

        subscription = await self.mutate(tenant_id, _past_due, action="subscription.past_due")
        logger.warning("subscription_past_due", tenant_id=tenant_id)
        return subscription

    async def settle_payment(self, tenant_id: str) -> Subscription:
        """Payment received: lift a past-due state or convert an ended trial."""

        async def _settle(subscription: Subscription, now: datetime) -> bool:
            grace = subscription.grace_period
            paid_grace = grace is not None and grace.reason in (
                GraceReason.PAYMENT_FAILED,
                GraceReason.TRIAL_ENDED,
            )
            if subscription.status != SubscriptionStatus.PAST_DUE and not paid_grace:
                return False
            subscription.status = SubscriptionStatus.ACTIVE
            if paid_grace:
                subscription.grace_period = None
            return True

        subscription = await self.mutate(tenant_id, _settle, action="subscription.payment_settled")
        logger.info("subscription_payment_settled", tenant_id=tenant_id)
        return subscription

    async def expire_trial(self, tenant_id: str) -> Subscription:
        """End a lapsed trial; the tenant keeps read access for one grace window."""

        async def _expire(subscription: Subscription, now: datetime) -> bool:
            if subscription.status != SubscriptionStatus.TRIALING:
                return False
            if subscription.trial_ends_at is None or now < subscription.trial_ends_at:
                return False
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.grace_period = GracePeriod(
                started_at=now,
                ends_at=now + timedelta(days=self.config.grace_period_days),
                reason=GraceReason.TRIAL_ENDED,
            )
            return True

        subscription = await self.mutate(tenant_id, _expire, action="subscription.trial_expired")
        if subscription.grace_period and subscription.grace_period.reason == GraceReason.TRIAL_ENDED:
            logger.info("trial_expired", tenant_id=tenant_id)
        return subscription

    async def process_grace_period(self, tenant_id: str) -> Subscription:
        """Send the expiry reminder or close the window once it has elapsed."""
        subscription = await self.get_active_subscription(tenant_id)
        grace = subscription.grace_period
        now = self.now_provider()
        if grace is None:
            return subscription
        if now >= grace.ends_at:
            return await self.end_grace_period(tenant_id)

        reminder_from = grace.ends_at - timedelta(days=self.config.grace_reminder_days_before)
        if now < reminder_from or grace.notifications_sent >= self.config.max_grace_notifications:
            return subscription
        if grace.last_notified_at and now - grace.last_notified_at < timedelta(days=1):
            return subscription

        async def _mark_notified(sub: Subscription, at: datetime) -> bool:
            if sub.grace_period is None:
                return False
            sub.grace_period.notifications_sent += 1
            sub.grace_period.last_notified_at = at
            return True

        subscription = await self.mutate(
            tenant_id, _mark_notified, action="subscription.grace_reminder"
        )
        await self._notify(
            tenant_id,
            "grace_period_reminder",
            reason=grace.reason.value,
            ends_at=grace.ends_at.isoformat(),
        )
        return subscription

    async def set_custom_permissions(
        self, tenant_id: str, features: set[FeatureKey], actor: Actor | None = None
    ) -> Subscription:
        async def _set(subscription: Subscription, now: datetime) -> bool:
            subscription.custom_permissions = set(features)
            return True

        return await self.mutate(
            tenant_id, _set, action="subscription.custom_permissions", actor=actor
        )
