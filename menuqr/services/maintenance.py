"""Periodic jobs, meant to be driven by an external scheduler (cron, worker).

Each tick is safe to run repeatedly: work that is not due is skipped, and a
failure on one tenant is logged and left for the next tick.
"""

from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from menuqr.errors import MenuQRError
from menuqr.models.subscription import SubscriptionStatus
from menuqr.services.delivery_service import DeliveryDispatchService
from menuqr.services.repositories import SubscriptionRepository
from menuqr.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)


class TickReport(BaseModel):
    examined: int = 0
    rolled_over: list[str] = Field(default_factory=list)
    trials_expired: list[str] = Field(default_factory=list)
    grace_processed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


async def run_subscription_tick(
    repository: SubscriptionRepository,
    subscriptions: SubscriptionService,
    now: datetime | None = None,
) -> TickReport:
    """Roll over elapsed periods, expire trials and advance grace windows."""
    now = now or subscriptions.now_provider()
    report = TickReport()
    for subscription in await repository.list_needing_attention(now):
        report.examined += 1
        tenant_id = subscription.tenant_id
        try:
            if (
                subscription.status == SubscriptionStatus.TRIALING
                and subscription.trial_ends_at is not None
                and subscription.trial_ends_at <= now
            ):
                await subscriptions.expire_trial(tenant_id)
                report.trials_expired.append(tenant_id)
            period_due = subscription.current_period_end <= now or subscription.pending_change is not None
            if period_due and subscription.status != SubscriptionStatus.CANCELLED:
                await subscriptions.rollover_period(tenant_id)
                report.rolled_over.append(tenant_id)
            refreshed = await subscriptions.get_active_subscription(tenant_id)
            if refreshed.grace_period is not None:
                await subscriptions.process_grace_period(tenant_id)
                report.grace_processed.append(tenant_id)
        except MenuQRError as e:
            logger.warning(
                "subscription_tick_failed",
                tenant_id=tenant_id,
                error_code=e.error_code,
                error=e.message,
            )
            report.failed.append(tenant_id)

    logger.info(
        "subscription_tick_completed",
        examined=report.examined,
        rolled_over=len(report.rolled_over),
        trials_expired=len(report.trials_expired),
        grace_processed=len(report.grace_processed),
        failed=len(report.failed),
    )
    return report


async def run_dispatch_tick(dispatch_service: DeliveryDispatchService) -> int:
    """Release driver offers nobody accepted in time."""
    expired = await dispatch_service.expire_stale_assignments()
    return len(expired)
