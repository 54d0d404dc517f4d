"""Storage contracts and implementations for subscriptions and deliveries.

Writes are compare-and-swap on the ``version`` field: ``save`` succeeds only
when the stored version equals ``expected_version`` and bumps it by one.
Usage counters have their own conditional update so the check against the
limit and the write happen in one store operation.
"""

from datetime import date, datetime
from typing import Protocol

from menuqr.constants import DELIVERY_NUMBER_PREFIX
from menuqr.errors import ConcurrencyConflictError, DuplicateSubscriptionError
from menuqr.models.delivery import TERMINAL_STATUSES, Delivery, DeliveryStatus
from menuqr.models.plans import UNLIMITED, ResourceKind
from menuqr.models.subscription import Subscription, SubscriptionStatus


class SubscriptionRepository(Protocol):
    """Storage contract for subscription state."""

    async def get_by_tenant(self, tenant_id: str) -> Subscription | None:
        """Fetch the tenant's subscription."""

    async def insert(self, subscription: Subscription) -> Subscription:
        """Persist a new subscription; raises DuplicateSubscriptionError."""

    async def save(self, subscription: Subscription, expected_version: int) -> Subscription:
        """Compare-and-swap write; raises ConcurrencyConflictError."""

    async def increment_usage(
        self, tenant_id: str, resource: ResourceKind, delta: int, limit: int
    ) -> int | None:
        """Add ``delta`` only if the result stays within ``limit``.

        Returns the new usage, or None when the increment was refused.
        """

    async def decrement_usage(self, tenant_id: str, resource: ResourceKind, delta: int) -> int:
        """Subtract ``delta`` with a floor of zero and return the new usage."""

    async def set_usage(self, tenant_id: str, resource: ResourceKind, value: int) -> int:
        """Overwrite a counter during reconciliation."""

    async def list_needing_attention(self, now: datetime) -> list[Subscription]:
        """Subscriptions with an elapsed period, a grace window or an ended trial.

        Cancelled subscriptions are only listed while they hold a grace window.
        """


class DeliveryRepository(Protocol):
    """Storage contract for deliveries."""

    async def get(self, delivery_id: str) -> Delivery | None:
        """Fetch a delivery by id."""

    async def get_by_tracking_code(self, tracking_code: str) -> Delivery | None:
        """Fetch a delivery by its public tracking code."""

    async def insert(self, delivery: Delivery) -> Delivery:
        """Persist a new delivery."""

    async def save(self, delivery: Delivery, expected_version: int) -> Delivery:
        """Compare-and-swap write; raises ConcurrencyConflictError."""

    async def count_active(self, tenant_id: str) -> int:
        """Number of non-terminal deliveries for a tenant."""

    async def list_active(self, tenant_id: str) -> list[Delivery]:
        """Non-terminal deliveries for a tenant, oldest first."""

    async def list_expired_assignments(self, now: datetime) -> list[Delivery]:
        """Assigned deliveries whose acceptance window has lapsed."""

    async def next_sequence(self, day: date) -> int:
        """Next per-day sequence number for delivery numbers."""


class InMemorySubscriptionRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.subscriptions: dict[str, Subscription] = {}

    async def get_by_tenant(self, tenant_id: str) -> Subscription | None:
        subscription = self.subscriptions.get(tenant_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def insert(self, subscription: Subscription) -> Subscription:
        if subscription.tenant_id in self.subscriptions:
            raise DuplicateSubscriptionError(subscription.tenant_id)
        stored = subscription.model_copy(deep=True)
        self.subscriptions[stored.tenant_id] = stored
        return stored.model_copy(deep=True)

    async def save(self, subscription: Subscription, expected_version: int) -> Subscription:
        current = self.subscriptions.get(subscription.tenant_id)
        if current is None or current.version != expected_version:
            raise ConcurrencyConflictError("subscription", subscription.tenant_id, expected_version)
        stored = subscription.model_copy(deep=True, update={"version": expected_version + 1})
        self.subscriptions[stored.tenant_id] = stored
        return stored.model_copy(deep=True)

    async def increment_usage(
        self, tenant_id: str, resource: ResourceKind, delta: int, limit: int
    ) -> int | None:
        current = self.subscriptions.get(tenant_id)
        if current is None:
            return None
        new_value = current.usage_of(resource) + delta
        if limit != UNLIMITED and new_value > limit:
            return None
        current.usage[resource] = new_value
        current.version += 1
        return new_value

    async def decrement_usage(self, tenant_id: str, resource: ResourceKind, delta: int) -> int:
        current = self.subscriptions[tenant_id]
        new_value = max(0, current.usage_of(resource) - delta)
        current.usage[resource] = new_value
        current.version += 1
        return new_value

    async def set_usage(self, tenant_id: str, resource: ResourceKind, value: int) -> int:
        current = self.subscriptions[tenant_id]
        current.usage[resource] = max(0, value)
        current.version += 1
        return current.usage[resource]

    async def list_needing_attention(self, now: datetime) -> list[Subscription]:
        due = []
        for subscription in self.subscriptions.values():
            trial_over = (
                subscription.status == SubscriptionStatus.TRIALING
                and subscription.trial_ends_at is not None
                and subscription.trial_ends_at <= now
            )
            period_over = (
                subscription.status != SubscriptionStatus.CANCELLED
                and subscription.current_period_end <= now
            )
            if period_over or subscription.grace_period is not None or trial_over:
                due.append(subscription.model_copy(deep=True))
        return due


class InMemoryDeliveryRepository:
    """In-memory repository used for tests and local fallback."""

    def __init__(self) -> None:
        self.deliveries: dict[str, Delivery] = {}
        self._sequences: dict[date, int] = {}

    async def get(self, delivery_id: str) -> Delivery | None:
        delivery = self.deliveries.get(delivery_id)
        return delivery.model_copy(deep=True) if delivery else None

    async def get_by_tracking_code(self, tracking_code: str) -> Delivery | None:
        for delivery in self.deliveries.values():
            if delivery.tracking_code == tracking_code:
                return delivery.model_copy(deep=True)
        return None

    async def insert(self, delivery: Delivery) -> Delivery:
        stored = delivery.model_copy(deep=True)
        self.deliveries[stored.id] = stored
        return stored.model_copy(deep=True)

    async def save(self, delivery: Delivery, expected_version: int) -> Delivery:
        current = self.deliveries.get(delivery.id)
        if current is None or current.version != expected_version:
            raise ConcurrencyConflictError("delivery", delivery.id, expected_version)
        stored = delivery.model_copy(deep=True, update={"version": expected_version + 1})
        self.deliveries[stored.id] = stored
        return stored.model_copy(deep=True)

    async def count_active(self, tenant_id: str) -> int:
        return len(await self.list_active(tenant_id))

    async def list_active(self, tenant_id: str) -> list[Delivery]:
        active = [
            d.model_copy(deep=True)
            for d in self.deliveries.values()
            if d.tenant_id == tenant_id and d.status not in TERMINAL_STATUSES
        ]
        return sorted(active, key=lambda d: d.created_at)

    async def list_expired_assignments(self, now: datetime) -> list[Delivery]:
        return [
            d.model_copy(deep=True)
            for d in self.deliveries.values()
            if d.status == DeliveryStatus.ASSIGNED
            and d.assignment_expires_at is not None
            and d.assignment_expires_at <= now
        ]

    async def next_sequence(self, day: date) -> int:
        self._sequences[day] = self._sequences.get(day, 0) + 1
        return self._sequences[day]


def _subscription_payload(subscription: Subscription) -> dict:
    return subscription.model_dump(mode="json")


class SupabaseSubscriptionRepository:
    """Supabase-backed repository for subscription state.

    Usage counters are updated through Postgres functions defined in
    ``supabase/migrations/20260310120000_subscription_usage_functions.sql``.
    Each locks the tenant row, writes the counter and bumps ``version``:

    - ``increment_subscription_usage(p_tenant_id, p_resource, p_delta, p_limit)``
      returns the new value, or NULL when it would pass ``p_limit`` (-1 is
      unlimited).
    - ``decrement_subscription_usage(p_tenant_id, p_resource, p_delta)`` floors
      at zero and returns the new value.
    - ``set_subscription_usage(p_tenant_id, p_resource, p_value)`` overwrites
      the counter and returns it.
    """

    def __init__(self, client, table: str):
        self.client = client
        self.table = table

    async def get_by_tenant(self, tenant_id: str) -> Subscription | None:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return Subscription.model_validate(rows[0])

    async def insert(self, subscription: Subscription) -> Subscription:
        if await self.get_by_tenant(subscription.tenant_id) is not None:
            raise DuplicateSubscriptionError(subscription.tenant_id)
        response = await self.client.table(self.table).insert(_subscription_payload(subscription)).execute()
        rows = response.data or []
        if not rows:
            return subscription
        return Subscription.model_validate(rows[0])

    async def save(self, subscription: Subscription, expected_version: int) -> Subscription:
        payload = _subscription_payload(subscription)
        payload["version"] = expected_version + 1
        response = (
            await self.client.table(self.table)
            .update(payload)
            .eq("tenant_id", subscription.tenant_id)
            .eq("version", expected_version)
            .execute()
        )
        rows = response.data or []
        if not rows:
            raise ConcurrencyConflictError("subscription", subscription.tenant_id, expected_version)
        return Subscription.model_validate(rows[0])

    async def increment_usage(
        self, tenant_id: str, resource: ResourceKind, delta: int, limit: int
    ) -> int | None:
        response = await self.client.rpc(
            "increment_subscription_usage",
            {
                "p_tenant_id": tenant_id,
                "p_resource": resource.value,
                "p_delta": delta,
                "p_limit": limit,
            },
        ).execute()
        return response.data

    async def decrement_usage(self, tenant_id: str, resource: ResourceKind, delta: int) -> int:
        response = await self.client.rpc(
            "decrement_subscription_usage",
            {"p_tenant_id": tenant_id, "p_resource": resource.value, "p_delta": delta},
        ).execute()
        return response.data or 0

    async def set_usage(self, tenant_id: str, resource: ResourceKind, value: int) -> int:
        response = await self.client.rpc(
            "set_subscription_usage",
            {"p_tenant_id": tenant_id, "p_resource": resource.value, "p_value": max(0, value)},
        ).execute()
        return response.data or 0

    async def list_needing_attention(self, now: datetime) -> list[Subscription]:
        stamp = now.isoformat()
        response = (
            await self.client.table(self.table)
            .select("*")
            .or_(
                f"and(status.neq.cancelled,current_period_end.lte.{stamp}),"
                "grace_period.not.is.null,"
                f"and(status.eq.trialing,trial_ends_at.lte.{stamp})"
            )
            .execute()
        )
        return [Subscription.model_validate(row) for row in response.data or []]


class SupabaseDeliveryRepository:
    """Supabase-backed repository for deliveries."""

    def __init__(self, client, table: str):
        self.client = client
        self.table = table

    async def _one(self, column: str, value: str) -> Delivery | None:
        response = (
            await self.client.table(self.table).select("*").eq(column, value).limit(1).execute()
        )
        rows = response.data or []
        if not rows:
            return None
        return Delivery.model_validate(rows[0])

    async def get(self, delivery_id: str) -> Delivery | None:
        return await self._one("id", delivery_id)

    async def get_by_tracking_code(self, tracking_code: str) -> Delivery | None:
        return await self._one("tracking_code", tracking_code)

    async def insert(self, delivery: Delivery) -> Delivery:
        response = (
            await self.client.table(self.table).insert(delivery.model_dump(mode="json")).execute()
        )
        rows = response.data or []
        if not rows:
            return delivery
        return Delivery.model_validate(rows[0])

    async def save(self, delivery: Delivery, expected_version: int) -> Delivery:
        payload = delivery.model_dump(mode="json")
        payload["version"] = expected_version + 1
        response = (
            await self.client.table(self.table)
            .update(payload)
            .eq("id", delivery.id)
            .eq("version", expected_version)
            .execute()
        )
        rows = response.data or []
        if not rows:
            raise ConcurrencyConflictError("delivery", delivery.id, expected_version)
        return Delivery.model_validate(rows[0])

    async def count_active(self, tenant_id: str) -> int:
        response = (
            await self.client.table(self.table)
            .select("id", count="exact")
            .eq("tenant_id", tenant_id)
            .not_.in_("status", [s.value for s in TERMINAL_STATUSES])
            .execute()
        )
        return response.count or 0

    async def list_active(self, tenant_id: str) -> list[Delivery]:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("tenant_id", tenant_id)
            .not_.in_("status", [s.value for s in TERMINAL_STATUSES])
            .order("created_at")
            .execute()
        )
        return [Delivery.model_validate(row) for row in response.data or []]

    async def list_expired_assignments(self, now: datetime) -> list[Delivery]:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("status", DeliveryStatus.ASSIGNED.value)
            .lte("assignment_expires_at", now.isoformat())
            .execute()
        )
        return [Delivery.model_validate(row) for row in response.data or []]

    async def next_sequence(self, day: date) -> int:
        response = (
            await self.client.table(self.table)
            .select("id", count="exact")
            .like("delivery_number", f"{DELIVERY_NUMBER_PREFIX}-{day:%Y%m%d}-%")
            .execute()
        )
        return (response.count or 0) + 1
