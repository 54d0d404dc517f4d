"""Collaborator ports for notifications and audit records."""

from typing import Protocol

import structlog

from menuqr.models.events import AuditEntry, DeliveryStatusChanged, SubscriptionNotice

logger = structlog.get_logger(__name__)


class DeliveryEventPublisher(Protocol):
    async def publish(self, event: DeliveryStatusChanged) -> None:
        """Fan a delivery status change out to customers, drivers and staff."""


class SubscriptionNotifier(Protocol):
    async def notify(self, notice: SubscriptionNotice) -> None:
        """Tell the tenant about a lifecycle change (grace reminder, downgrade)."""


class AuditSink(Protocol):
    async def record(self, entry: AuditEntry) -> None:
        """Persist an audit entry."""


class LoggingEventPublisher:
    """Publishes delivery events to the structured log."""

    async def publish(self, event: DeliveryStatusChanged) -> None:
        logger.info(
            "delivery_event_published",
            delivery_id=event.delivery_id,
            order_id=event.order_id,
            tenant_id=event.tenant_id,
            driver_id=event.driver_id,
            previous_status=event.previous_status.value if event.previous_status else None,
            status=event.status.value,
        )


class LoggingSubscriptionNotifier:
    async def notify(self, notice: SubscriptionNotice) -> None:
        logger.info(
            "subscription_notice",
            tenant_id=notice.tenant_id,
            kind=notice.kind,
            **notice.details,
        )


class LoggingAuditSink:
    async def record(self, entry: AuditEntry) -> None:
        logger.info(
            "audit_recorded",
            action=entry.action,
            entity=entry.entity,
            entity_id=entry.entity_id,
            tenant_id=entry.tenant_id,
            actor_kind=entry.actor_kind.value,
            actor_id=entry.actor_id,
        )


class SupabaseAuditSink:
    """Writes audit entries to a Supabase table."""

    def __init__(self, client, table: str):
        self.client = client
        self.table = table

    async def record(self, entry: AuditEntry) -> None:
        await self.client.table(self.table).insert(entry.model_dump(mode="json")).execute()
