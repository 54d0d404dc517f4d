"""Delivery dispatch service: persistence, events and audit around the state machine."""

import secrets
import string
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog

from menuqr.config import DispatchConfig
from menuqr.constants import DELIVERY_NUMBER_PREFIX, OTP_DIGITS
from menuqr.errors import ConcurrencyConflictError, DeliveryNotFoundError
from menuqr.models.delivery import (
    SYSTEM_ACTOR,
    Actor,
    ActorKind,
    Delivery,
    DeliveryStatus,
    GeoPoint,
    PodRequirements,
    ProofOfDelivery,
    StatusChange,
)
from menuqr.models.events import AuditEntry, DeliveryStatusChanged
from menuqr.models.plans import FeatureKey
from menuqr.services import dispatch
from menuqr.services.entitlements import EntitlementService
from menuqr.services.events import (
    AuditSink,
    DeliveryEventPublisher,
    LoggingAuditSink,
    LoggingEventPublisher,
)
from menuqr.services.repositories import DeliveryRepository

logger = structlog.get_logger(__name__)

_TRACKING_ALPHABET = string.ascii_uppercase + string.digits

# Applies a command to a delivery at a given time; returns None when there is nothing to do
Command = Callable[[Delivery, datetime], Delivery | None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _audit_view(delivery: Delivery) -> dict:
    return {
        "status": delivery.status.value,
        "driver_id": delivery.driver_id,
        "version": delivery.version,
    }


class DeliveryDispatchService:
    """Runs dispatch commands against stored deliveries."""

    def __init__(
        self,
        repository: DeliveryRepository,
        entitlements: EntitlementService,
        config: DispatchConfig,
        publisher: DeliveryEventPublisher | None = None,
        audit: AuditSink | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.entitlements = entitlements
        self.config = config
        self.publisher = publisher or LoggingEventPublisher()
        self.audit = audit or LoggingAuditSink()
        self.now_provider = now_provider

    def _tracking_code(self) -> str:
        return "".join(
            secrets.choice(_TRACKING_ALPHABET) for _ in range(self.config.tracking_code_length)
        )

    async def create_delivery(
        self,
        tenant_id: str,
        order_id: str,
        customer_id: str | None = None,
        pod_required: PodRequirements | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Delivery:
        await self.entitlements.require_feature(tenant_id, FeatureKey.DELIVERY_MODULE)
        now = self.now_provider()
        sequence = await self.repository.next_sequence(now.date())
        delivery = Delivery(
            id=str(uuid.uuid4()),
            order_id=order_id,
            tenant_id=tenant_id,
            customer_id=customer_id,
            delivery_number=f"{DELIVERY_NUMBER_PREFIX}-{now:%Y%m%d}-{sequence:05d}",
            tracking_code=self._tracking_code(),
            otp_code=f"{secrets.randbelow(10**OTP_DIGITS):0{OTP_DIGITS}d}",
            pod_required=pod_required or PodRequirements(),
            status_history=[StatusChange(status=DeliveryStatus.PENDING, at=now, actor=actor)],
            created_at=now,
            updated_at=now,
        )
        stored = await self.repository.insert(delivery)
        logger.info(
            "delivery_created",
            delivery_id=stored.id,
            delivery_number=stored.delivery_number,
            tenant_id=tenant_id,
            order_id=order_id,
        )
        await self._emit(None, stored, actor, "delivery.create")
        return stored

    async def get(self, delivery_id: str) -> Delivery:
        delivery = await self.repository.get(delivery_id)
        if delivery is None:
            raise DeliveryNotFoundError(delivery_id)
        return delivery

    async def get_by_tracking_code(self, tracking_code: str) -> Delivery:
        delivery = await self.repository.get_by_tracking_code(tracking_code)
        if delivery is None:
            raise DeliveryNotFoundError(tracking_code)
        return delivery

    async def count_active(self, tenant_id: str) -> int:
        return await self.repository.count_active(tenant_id)

    async def _emit(
        self, before: Delivery | None, after: Delivery, actor: Actor, action: str
    ) -> None:
        if before is None or before.status != after.status:
            await self.publisher.publish(
                DeliveryStatusChanged(
                    delivery_id=after.id,
                    order_id=after.order_id,
                    tenant_id=after.tenant_id,
                    driver_id=after.driver_id,
                    customer_id=after.customer_id,
                    tracking_code=after.tracking_code,
                    previous_status=before.status if before else None,
                    status=after.status,
                    occurred_at=after.updated_at or self.now_provider(),
                )
            )
        await self.audit.record(
            AuditEntry(
                actor_kind=actor.kind,
                actor_id=actor.id,
                action=action,
                entity="delivery",
                entity_id=after.id,
                tenant_id=after.tenant_id,
                before=_audit_view(before) if before else None,
                after=_audit_view(after),
                at=after.updated_at or self.now_provider(),
            )
        )

    async def _run(
        self,
        delivery_id: str,
        actor: Actor,
        action: str,
        command: Command,
        audited: bool = True,
    ) -> Delivery:
        """Load, apply and compare-and-swap; a concurrent write restarts the cycle."""
        for attempt in range(self.config.max_write_attempts):
            current = await self.get(delivery_id)
            updated = command(current, self.now_provider())
            if updated is None:
                return current
            try:
                saved = await self.repository.save(updated, current.version)
            except ConcurrencyConflictError:
                logger.info(
                    "delivery_write_conflict",
                    delivery_id=delivery_id,
                    action=action,
                    attempt=attempt + 1,
                )
                continue

            if current.status != saved.status:
                logger.info(
                    "delivery_status_changed",
                    delivery_id=delivery_id,
                    tenant_id=saved.tenant_id,
                    previous_status=current.status.value,
                    status=saved.status.value,
                    actor_kind=actor.kind.value,
                    actor_id=actor.id,
                )
            if audited or current.status != saved.status:
                await self._emit(current, saved, actor, action)
            return saved

        logger.warning("delivery_write_gave_up", delivery_id=delivery_id, action=action)
        raise ConcurrencyConflictError("delivery", delivery_id, -1)

    async def assign_driver(
        self, delivery_id: str, driver_id: str, actor: Actor = SYSTEM_ACTOR
    ) -> Delivery:
        timeout = timedelta(seconds=self.config.assignment_timeout_seconds)
        return await self._run(
            delivery_id,
            actor,
            "delivery.assign",
            lambda d, now: dispatch.assign_driver(d, driver_id, now, timeout, actor),
        )

    async def driver_accept(self, delivery_id: str, driver_id: str) -> Delivery:
        return await self._run(
            delivery_id,
            Actor(kind=ActorKind.DRIVER, id=driver_id),
            "delivery.accept",
            lambda d, now: dispatch.driver_accept(d, driver_id, now),
        )

    async def driver_reject(self, delivery_id: str, driver_id: str, reason: str | None = None) -> Delivery:
        return await self._run(
            delivery_id,
            Actor(kind=ActorKind.DRIVER, id=driver_id),
            "delivery.reject",
            lambda d, now: dispatch.driver_reject(d, driver_id, now, reason),
        )

    async def update_status(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        actor: Actor,
        note: str | None = None,
    ) -> Delivery:
        return await self._run(
            delivery_id,
            actor,
            f"delivery.status.{status.value}",
            lambda d, now: dispatch.update_status(d, status, actor, now, note),
        )

    async def submit_proof_of_delivery(
        self, delivery_id: str, proof: ProofOfDelivery, actor: Actor
    ) -> Delivery:
        return await self._run(
            delivery_id,
            actor,
            "delivery.proof",
            lambda d, now: dispatch.submit_proof_of_delivery(d, proof, now, actor),
        )

    async def cancel(self, delivery_id: str, reason: str | None, actor: Actor) -> Delivery:
        return await self._run(
            delivery_id,
            actor,
            "delivery.cancel",
            lambda d, now: dispatch.cancel(d, reason, actor, now),
        )

    async def mark_failed(self, delivery_id: str, reason: str | None, actor: Actor) -> Delivery:
        return await self._run(
            delivery_id,
            actor,
            "delivery.fail",
            lambda d, now: dispatch.mark_failed(d, reason, actor, now),
        )

    async def update_location(self, delivery_id: str, point: GeoPoint, actor: Actor) -> Delivery:
        interval = timedelta(seconds=self.config.location_history_interval_seconds)
        return await self._run(
            delivery_id,
            actor,
            "delivery.location",
            lambda d, now: dispatch.update_location(
                d, point, now, interval, self.config.max_location_history
            ),
            audited=False,
        )

    async def expire_stale_assignments(self) -> list[Delivery]:
        """Return lapsed driver offers to the pending pool."""
        now = self.now_provider()
        expired = []
        for delivery in await self.repository.list_expired_assignments(now):
            released = await self._run(
                delivery.id,
                SYSTEM_ACTOR,
                "delivery.assignment_expired",
                dispatch.expire_assignment,
            )
            if released.status == DeliveryStatus.PENDING:
                expired.append(released)
        if expired:
            logger.info("delivery_assignments_expired", count=len(expired))
        return expired
