"""Subscription record and entitlement decision models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from menuqr.models.plans import BillingCycle, FeatureKey, PlanChangeKind, ResourceKind


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    PAUSED = "paused"


ACTIVE_SUBSCRIPTION_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}


class GraceReason(str, Enum):
    PAYMENT_FAILED = "payment_failed"
    DOWNGRADE = "downgrade"
    TRIAL_ENDED = "trial_ended"


class CheckReason(str, Enum):
    """Reason for an entitlement decision."""

    OK = "ok"
    PLAN_LACKS_FEATURE = "plan_lacks_feature"
    LIMIT_EXCEEDED = "limit_exceeded"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"


class PendingChange(BaseModel):
    """Plan change scheduled for the end of the current period."""

    kind: PlanChangeKind
    target_plan_slug: str
    effective_at: datetime
    requested_at: datetime
    reason: str | None = None


class GracePeriod(BaseModel):
    """Window during which over-limit data is tolerated read-only."""

    started_at: datetime
    ends_at: datetime
    reason: GraceReason
    notifications_sent: int = Field(default=0, ge=0)
    last_notified_at: datetime | None = None


class DowngradeRecord(BaseModel):
    from_plan_slug: str
    to_plan_slug: str
    effective_at: datetime
    archived: dict[ResourceKind, list[str]] = Field(default_factory=dict)


class Subscription(BaseModel):
    """Persisted subscription state for a tenant."""

    id: str
    tenant_id: str
    plan_slug: str
    previous_plan_slug: str | None = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    current_period_start: datetime
    current_period_end: datetime
    trial_ends_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    usage: dict[ResourceKind, int] = Field(default_factory=dict)
    usage_reset_at: datetime | None = None
    pending_change: PendingChange | None = None
    grace_period: GracePeriod | None = None
    custom_permissions: set[FeatureKey] = Field(default_factory=set)
    limit_overrides: dict[ResourceKind, int] = Field(default_factory=dict)
    downgrade_history: list[DowngradeRecord] = Field(default_factory=list)
    version: int = Field(default=0, ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def usage_of(self, resource: ResourceKind) -> int:
        return self.usage.get(resource, 0)

    def in_grace(self, now: datetime) -> bool:
        return self.grace_period is not None and now < self.grace_period.ends_at

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SUBSCRIPTION_STATUSES


class FeatureCheck(BaseModel):
    """Outcome of an entitlement check."""

    allowed: bool
    reason: CheckReason
    feature: FeatureKey | None = None
    resource: ResourceKind | None = None
    current_usage: int | None = None
    limit: int | None = None
    remaining: int | None = None
    percent_used: float | None = None
