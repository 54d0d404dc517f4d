"""Payloads handed to the notification and audit collaborators."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from menuqr.models.delivery import ActorKind, DeliveryStatus


class DeliveryStatusChanged(BaseModel):
    delivery_id: str
    order_id: str
    tenant_id: str
    driver_id: str | None = None
    customer_id: str | None = None
    tracking_code: str
    previous_status: DeliveryStatus | None = None
    status: DeliveryStatus
    occurred_at: datetime


class SubscriptionNotice(BaseModel):
    """Tenant-facing notice about the subscription lifecycle."""

    tenant_id: str
    kind: str
    occurred_at: datetime
    details: dict[str, Any] = Field(default_factory=dict)


class AuditEntry(BaseModel):
    actor_kind: ActorKind
    actor_id: str | None = None
    action: str
    entity: str
    entity_id: str
    tenant_id: str | None = None
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    at: datetime
