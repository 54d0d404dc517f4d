"""Unit tests for the subscription lifecycle."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from menuqr.config import SubscriptionConfig
from menuqr.errors import (
    ConcurrencyConflictError,
    DuplicateSubscriptionError,
    InvalidTransitionError,
    NoSubscriptionError,
    PlanNotFoundError,
)
from menuqr.models.delivery import Actor, ActorKind
from menuqr.models.plans import BillingCycle, FeatureKey, ResourceKind
from menuqr.models.subscription import GraceReason, SubscriptionStatus
from menuqr.services.subscription_service import add_billing_cycle

OWNER = Actor(kind=ActorKind.RESTAURANT, id="owner-1")


class TestAddBillingCycle:
    def test_monthly_keeps_day(self):
        start = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

        assert add_billing_cycle(start, BillingCycle.MONTHLY) == datetime(2026, 4, 10, 12, 0, tzinfo=UTC)

    def test_monthly_clamps_to_month_end(self):
        start = datetime(2026, 1, 31, tzinfo=UTC)

        assert add_billing_cycle(start, BillingCycle.MONTHLY) == datetime(2026, 2, 28, tzinfo=UTC)

    def test_december_rolls_into_next_year(self):
        start = datetime(2026, 12, 15, tzinfo=UTC)

        assert add_billing_cycle(start, BillingCycle.MONTHLY) == datetime(2027, 1, 15, tzinfo=UTC)

    def test_yearly_from_leap_day(self):
        start = datetime(2028, 2, 29, tzinfo=UTC)

        assert add_billing_cycle(start, BillingCycle.YEARLY) == datetime(2029, 2, 28, tzinfo=UTC)


class TestCreateSubscription:
    async def test_creates_active_subscription_with_zero_usage(self, services):
        subscription = await services.subscriptions.create_subscription("rest-1", "starter")

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.plan_slug == "starter"
        assert subscription.current_period_start == services.clock.now()
        assert subscription.current_period_end == datetime(2026, 4, 10, 12, 0, tzinfo=UTC)
        assert all(subscription.usage_of(r) == 0 for r in ResourceKind)
        assert subscription.version == 0

    async def test_trial_sets_trialing_and_end(self, services):
        subscription = await services.subscriptions.create_subscription("rest-1", "professional", trial=True)

        assert subscription.status == SubscriptionStatus.TRIALING
        assert subscription.trial_ends_at == services.clock.now() + timedelta(days=14)

    async def test_trial_on_free_plan_is_ignored(self, services):
        subscription = await services.subscriptions.create_subscription("rest-1", "free", trial=True)

        assert subscription.status == SubscriptionStatus.ACTIVE
        assert subscription.trial_ends_at is None

    async def test_yearly_cycle(self, services):
        subscription = await services.subscriptions.create_subscription(
            "rest-1", "starter", billing_cycle=BillingCycle.YEARLY
        )

        assert subscription.current_period_end == datetime(2027, 3, 10, 12, 0, tzinfo=UTC)

    async def test_one_subscription_per_tenant(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")

        with pytest.raises(DuplicateSubscriptionError):
            await services.subscriptions.create_subscription("rest-1", "business")

    async def test_unknown_plan_raises(self, services):
        with pytest.raises(PlanNotFoundError):
            await services.subscriptions.create_subscription("rest-1", "platinum")

    async def test_missing_subscription_raises(self, services):
        with pytest.raises(NoSubscriptionError):
            await services.subscriptions.get_active_subscription("rest-ghost")


class TestRollover:
    async def test_rollover_before_period_end_is_a_noop(self, services):
        created = await services.subscriptions.create_subscription("rest-1", "starter")

        after = await services.subscriptions.rollover_period("rest-1")

        assert after.version == created.version
        assert after.current_period_end == created.current_period_end

    async def test_rollover_resets_metered_and_keeps_stock_usage(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")
        await services.usage.consume("rest-1", ResourceKind.ORDERS, 120)
        await services.usage.consume("rest-1", ResourceKind.DISHES, 30)
        await services.usage.consume("rest-1", ResourceKind.CAMPAIGNS, 1)

        services.clock.advance(timedelta(days=31))
        rolled = await services.subscriptions.rollover_period("rest-1")

        assert rolled.usage_of(ResourceKind.ORDERS) == 0
        assert rolled.usage_of(ResourceKind.CAMPAIGNS) == 0
        assert rolled.usage_of(ResourceKind.DISHES) == 30
        assert rolled.current_period_start == datetime(2026, 4, 10, 12, 0, tzinfo=UTC)
        assert rolled.current_period_end == datetime(2026, 5, 10, 12, 0, tzinfo=UTC)
        assert rolled.usage_reset_at == services.clock.now()

    async def test_rollover_is_idempotent(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")
        services.clock.advance(timedelta(days=31))

        first = await services.subscriptions.rollover_period("rest-1")
        await services.usage.consume("rest-1", ResourceKind.ORDERS, 5)
        second = await services.subscriptions.rollover_period("rest-1")

        assert second.current_period_end == first.current_period_end
        assert second.usage_of(ResourceKind.ORDERS) == 5

    async def test_rollover_skips_missed_periods(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")
        services.clock.advance(timedelta(days=95))

        rolled = await services.subscriptions.rollover_period("rest-1")

        assert rolled.current_period_start <= services.clock.now() < rolled.current_period_end
        assert rolled.current_period_end == datetime(2026, 7, 10, 12, 0, tzinfo=UTC)


class TestCancelReactivate:
    async def test_cancel_records_reason(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")

        cancelled = await services.subscriptions.cancel("rest-1", "closing for winter")

        assert cancelled.status == SubscriptionStatus.CANCELLED
        assert cancelled.cancelled_at == services.clock.now()
        assert cancelled.cancel_reason == "closing for winter"

    async def test_cancel_twice_raises(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")
        await services.subscriptions.cancel("rest-1")

        with pytest.raises(InvalidTransitionError):
            await services.subscriptions.cancel("rest-1")

    async def test_reactivate_within_window_starts_new_period(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")
        await services.usage.consume("rest-1", ResourceKind.ORDERS, 10)
        await services.subscriptions.cancel("rest-1")
        services.clock.advance(timedelta(days=40))

        reactivated = await services.subscriptions.reactivate("rest-1")

        assert reactivated.status == SubscriptionStatus.ACTIVE
        assert reactivated.cancelled_at is None
        assert reactivated.current_period_start == services.clock.now()
        assert reactivated.usage_of(ResourceKind.ORDERS) == 0

    async def test_reactivate_after_window_raises(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")
        await services.subscriptions.cancel("rest-1")
        # period ends after 31 days; window is 30 more
        services.clock.advance(timedelta(days=62))

        with pytest.raises(InvalidTransitionError):
            await services.subscriptions.reactivate("rest-1")

    async def test_reactivate_active_subscription_raises(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")

        with pytest.raises(InvalidTransitionError):
            await services.subscriptions.reactivate("rest-1")

    async def test_rollover_leaves_cancelled_period_alone(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")
        cancelled = await services.subscriptions.cancel("rest-1")
        services.clock.advance(timedelta(days=45))

        rolled = await services.subscriptions.rollover_period("rest-1")

        assert rolled.version == cancelled.version
        assert rolled.current_period_end == cancelled.current_period_end
        assert rolled.status == SubscriptionStatus.CANCELLED


class TestPaymentAndTrial:
    async def test_past_due_suspends_access_and_opens_grace(self, services):
        await services.subscriptions.create_subscription("rest-1", "business")

        past_due = await services.subscriptions.mark_past_due("rest-1")

        assert past_due.status == SubscriptionStatus.PAST_DUE
        assert past_due.grace_period.reason == GraceReason.PAYMENT_FAILED
        assert await services.entitlements.check_feature("rest-1", FeatureKey.LOYALTY_PROGRAM) is False

    async def test_settle_payment_restores_access(self, services):
        await services.subscriptions.create_subscription("rest-1", "business")
        await services.subscriptions.mark_past_due("rest-1")

        settled = await services.subscriptions.settle_payment("rest-1")

        assert settled.status == SubscriptionStatus.ACTIVE
        assert settled.grace_period is None
        assert await services.entitlements.check_feature("rest-1", FeatureKey.LOYALTY_PROGRAM) is True

    async def test_unpaid_grace_end_falls_back_to_free(self, services):
        await services.subscriptions.create_subscription("rest-1", "business")
        await services.subscriptions.mark_past_due("rest-1")
        services.clock.advance(timedelta(days=8))

        ended = await services.subscriptions.process_grace_period("rest-1")

        assert ended.status == SubscriptionStatus.ACTIVE
        assert ended.plan_slug == "free"
        assert ended.previous_plan_slug == "business"
        assert ended.downgrade_history[-1].to_plan_slug == "free"

    async def test_trial_expiry_opens_grace_then_falls_back(self, services):
        await services.subscriptions.create_subscription("rest-1", "professional", trial=True)
        services.clock.advance(timedelta(days=15))

        expired = await services.subscriptions.expire_trial("rest-1")

        assert expired.status == SubscriptionStatus.ACTIVE
        assert expired.grace_period.reason == GraceReason.TRIAL_ENDED

        services.clock.advance(timedelta(days=8))
        ended = await services.subscriptions.process_grace_period("rest-1")

        assert ended.plan_slug == "free"
        assert ended.grace_period is None

    async def test_paying_after_trial_keeps_the_plan(self, services):
        await services.subscriptions.create_subscription("rest-1", "professional", trial=True)
        services.clock.advance(timedelta(days=15))
        await services.subscriptions.expire_trial("rest-1")

        converted = await services.subscriptions.settle_payment("rest-1")

        assert converted.plan_slug == "professional"
        assert converted.grace_period is None

    async def test_expire_trial_before_end_is_a_noop(self, services):
        await services.subscriptions.create_subscription("rest-1", "professional", trial=True)

        same = await services.subscriptions.expire_trial("rest-1")

        assert same.status == SubscriptionStatus.TRIALING


class TestGraceReminders:
    async def test_reminders_are_capped(self, make_services):
        notifier = AsyncMock()
        services = make_services(notifier=notifier)
        await services.subscriptions.create_subscription("rest-1", "starter")
        await services.subscriptions.start_grace_period("rest-1", GraceReason.DOWNGRADE)

        # Outside the reminder window
        services.clock.advance(timedelta(days=2))
        await services.subscriptions.process_grace_period("rest-1")
        assert notifier.notify.await_count == 0

        for _ in range(4):
            services.clock.advance(timedelta(days=1, hours=1))
            await services.subscriptions.process_grace_period("rest-1")

        reminders = [c.args[0] for c in notifier.notify.await_args_list]
        assert [n.kind for n in reminders] == ["grace_period_reminder", "grace_period_reminder"]
        stored = await services.subscriptions.get_active_subscription("rest-1")
        assert stored.grace_period.notifications_sent == 2

    async def test_one_reminder_per_day(self, make_services):
        notifier = AsyncMock()
        services = make_services(notifier=notifier)
        await services.subscriptions.create_subscription("rest-1", "starter")
        await services.subscriptions.start_grace_period("rest-1", GraceReason.DOWNGRADE)
        services.clock.advance(timedelta(days=5))

        await services.subscriptions.process_grace_period("rest-1")
        services.clock.advance(timedelta(hours=2))
        await services.subscriptions.process_grace_period("rest-1")

        assert notifier.notify.await_count == 1

    async def test_starting_same_grace_twice_keeps_first_window(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")
        first = await services.subscriptions.start_grace_period("rest-1", GraceReason.DOWNGRADE)
        services.clock.advance(timedelta(days=1))

        second = await services.subscriptions.start_grace_period("rest-1", GraceReason.DOWNGRADE)

        assert second.grace_period.ends_at == first.grace_period.ends_at


class TestOptimisticConcurrency:
    async def test_conflicting_write_is_retried(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")
        interfered = []

        async def _mutation(subscription, now):
            if not interfered:
                # Another writer sneaks in between read and write
                await services.usage.consume("rest-1", ResourceKind.ORDERS)
                interfered.append(True)
            subscription.custom_permissions.add(FeatureKey.KDS)
            return True

        saved = await services.subscriptions.mutate("rest-1", _mutation)

        assert FeatureKey.KDS in saved.custom_permissions
        assert saved.usage_of(ResourceKind.ORDERS) == 1

    async def test_gives_up_after_max_attempts(self, make_services):
        services = make_services(config=SubscriptionConfig(max_write_attempts=2))
        await services.subscriptions.create_subscription("rest-1", "starter")

        async def _always_conflicting(subscription, now):
            await services.usage.consume("rest-1", ResourceKind.ORDERS)
            return True

        with pytest.raises(ConcurrencyConflictError):
            await services.subscriptions.mutate("rest-1", _always_conflicting)


class TestAuditTrail:
    @pytest.fixture
    def audit(self) -> AsyncMock:
        return AsyncMock()

    async def test_lifecycle_writes_are_audited(self, make_services, audit):
        services = make_services(audit=audit)
        await services.subscriptions.create_subscription("rest-1", "starter")
        await services.subscriptions.cancel("rest-1", "closing", actor=OWNER)
        await services.subscriptions.reactivate("rest-1", actor=OWNER)

        entries = [call.args[0] for call in audit.record.await_args_list]
        assert [e.action for e in entries] == [
            "subscription.create",
            "subscription.cancel",
            "subscription.reactivate",
        ]
        assert entries[0].before is None
        assert entries[0].actor_kind == ActorKind.SYSTEM
        assert entries[1].before["status"] == "active"
        assert entries[1].after["status"] == "cancelled"
        assert entries[1].actor_kind == ActorKind.RESTAURANT
        assert entries[1].actor_id == "owner-1"
        assert all(e.entity == "subscription" and e.tenant_id == "rest-1" for e in entries)

    async def test_noop_and_refused_writes_are_not_audited(self, make_services, audit):
        services = make_services(audit=audit)
        await services.subscriptions.create_subscription("rest-1", "starter")
        audit.reset_mock()

        await services.subscriptions.rollover_period("rest-1")
        with pytest.raises(InvalidTransitionError):
            await services.subscriptions.reactivate("rest-1")

        audit.record.assert_not_awaited()

    async def test_plan_changes_and_rollover_are_audited(self, make_services, audit):
        services = make_services(audit=audit)
        await services.subscriptions.create_subscription("rest-1", "business")
        await services.downgrades.schedule_downgrade("rest-1", "starter", actor=OWNER)
        await services.downgrades.cancel_scheduled_downgrade("rest-1", actor=OWNER)
        await services.downgrades.upgrade("rest-1", "enterprise", actor=OWNER)
        services.clock.advance(timedelta(days=31))
        await services.subscriptions.rollover_period("rest-1")

        entries = [call.args[0] for call in audit.record.await_args_list]
        assert [e.action for e in entries] == [
            "subscription.create",
            "subscription.downgrade_scheduled",
            "subscription.downgrade_cancelled",
            "subscription.upgrade",
            "subscription.rollover",
        ]
        assert entries[1].after["pending_plan_slug"] == "starter"
        assert entries[3].before["plan_slug"] == "business"
        assert entries[3].after["plan_slug"] == "enterprise"
        assert entries[4].actor_kind == ActorKind.SYSTEM

    async def test_retried_write_is_audited_once(self, make_services, audit):
        services = make_services(audit=audit)
        await services.subscriptions.create_subscription("rest-1", "starter")
        interfered = []

        async def _mutation(subscription, now):
            if not interfered:
                await services.usage.consume("rest-1", ResourceKind.ORDERS)
                interfered.append(True)
            subscription.custom_permissions.add(FeatureKey.KDS)
            return True

        await services.subscriptions.mutate("rest-1", _mutation)

        actions = [call.args[0].action for call in audit.record.await_args_list]
        assert actions == ["subscription.create", "usage.consume", "subscription.update"]
        update = audit.record.await_args_list[-1].args[0]
        assert update.before["usage"]["orders"] == 1
        assert update.after["version"] == update.before["version"] + 1
