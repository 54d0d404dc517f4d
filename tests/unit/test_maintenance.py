"""Unit tests for the periodic subscription and dispatch jobs."""

from datetime import timedelta

import pytest

from menuqr.errors import InvalidTransitionError
from menuqr.models.plans import PlanChangeKind, ResourceKind
from menuqr.models.subscription import PendingChange, SubscriptionStatus
from menuqr.services.maintenance import run_dispatch_tick, run_subscription_tick


class TestSubscriptionTick:
    async def test_nothing_due_examines_nothing(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")

        report = await run_subscription_tick(services.subscription_repository, services.subscriptions)

        assert report.examined == 0

    async def test_rolls_over_elapsed_periods(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")
        await services.subscriptions.create_subscription("rest-2", "business")
        await services.usage.consume("rest-1", ResourceKind.ORDERS, 40)
        services.clock.advance(timedelta(days=31))

        report = await run_subscription_tick(services.subscription_repository, services.subscriptions)

        assert sorted(report.rolled_over) == ["rest-1", "rest-2"]
        rolled = await services.subscriptions.get_active_subscription("rest-1")
        assert rolled.usage_of(ResourceKind.ORDERS) == 0

    async def test_second_tick_is_a_noop(self, services):
        await services.subscriptions.create_subscription("rest-1", "starter")
        services.clock.advance(timedelta(days=31))

        await run_subscription_tick(services.subscription_repository, services.subscriptions)
        before = await services.subscriptions.get_active_subscription("rest-1")
        report = await run_subscription_tick(services.subscription_repository, services.subscriptions)
        after = await services.subscriptions.get_active_subscription("rest-1")

        assert report.examined == 0
        assert after.version == before.version

    async def test_trial_runs_through_grace_to_free(self, services):
        await services.subscriptions.create_subscription("rest-1", "professional", trial=True)

        services.clock.advance(timedelta(days=14))
        first = await run_subscription_tick(services.subscription_repository, services.subscriptions)
        services.clock.advance(timedelta(days=7))
        second = await run_subscription_tick(services.subscription_repository, services.subscriptions)

        assert first.trials_expired == ["rest-1"]
        assert second.grace_processed == ["rest-1"]
        final = await services.subscriptions.get_active_subscription("rest-1")
        assert final.status == SubscriptionStatus.ACTIVE
        assert final.plan_slug == "free"

    async def test_failure_on_one_tenant_does_not_stop_others(self, services):
        await services.subscriptions.create_subscription("rest-1", "enterprise")
        await services.subscriptions.create_subscription("rest-2", "starter")
        await services.dispatch.create_delivery("rest-1", "order-1")
        await services.downgrades.schedule_downgrade("rest-1", "business")

        async def _broken(subscription, now):
            # Plan retired from the catalog after the change was scheduled
            subscription.pending_change = PendingChange(
                kind=PlanChangeKind.DOWNGRADE,
                target_plan_slug="platinum",
                effective_at=subscription.current_period_end,
                requested_at=now,
            )
            return True

        await services.subscriptions.mutate("rest-2", _broken)
        services.clock.advance(timedelta(days=31))

        report = await run_subscription_tick(services.subscription_repository, services.subscriptions)

        assert report.failed == ["rest-2"]
        assert "rest-1" in report.rolled_over
        # Blocked by the open delivery, retried on a later tick
        pending = await services.subscriptions.get_active_subscription("rest-1")
        assert pending.plan_slug == "enterprise"
        assert pending.pending_change is not None

    async def test_cancelled_subscription_keeps_its_reactivation_deadline(self, services):
        created = await services.subscriptions.create_subscription("rest-1", "starter")
        await services.subscriptions.cancel("rest-1")

        for _ in range(3):
            services.clock.advance(timedelta(days=31))
            report = await run_subscription_tick(services.subscription_repository, services.subscriptions)
            assert report.rolled_over == []

        stored = await services.subscriptions.get_active_subscription("rest-1")
        assert stored.current_period_end == created.current_period_end
        with pytest.raises(InvalidTransitionError):
            await services.subscriptions.reactivate("rest-1")

    async def test_cancelled_subscription_grace_closes_without_reviving_it(self, services):
        await services.subscriptions.create_subscription("rest-1", "business")
        await services.subscriptions.mark_past_due("rest-1")
        await services.subscriptions.cancel("rest-1", "card declined")
        services.clock.advance(timedelta(days=7))

        report = await run_subscription_tick(services.subscription_repository, services.subscriptions)

        assert report.grace_processed == ["rest-1"]
        stored = await services.subscriptions.get_active_subscription("rest-1")
        assert stored.status == SubscriptionStatus.CANCELLED
        assert stored.grace_period is None
        assert stored.plan_slug == "business"


class TestDispatchTick:
    async def test_releases_expired_offers(self, services):
        await services.subscriptions.create_subscription("rest-1", "enterprise")
        delivery = await services.dispatch.create_delivery("rest-1", "order-1")
        await services.dispatch.assign_driver(delivery.id, "driver-1")
        services.clock.advance(timedelta(minutes=3))

        assert await run_dispatch_tick(services.dispatch) == 1
        assert await run_dispatch_tick(services.dispatch) == 0
