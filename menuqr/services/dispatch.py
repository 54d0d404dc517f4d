"""Delivery dispatch state machine.

Every command takes a delivery and returns a new one; the input is never
modified, so a refused command leaves the caller's state exactly as it was.
"""

from datetime import datetime, timedelta

from menuqr.errors import (
    BlockedError,
    InvalidTransitionError,
    NotAssignedDriverError,
    ProofOfDeliveryRequiredError,
)
from menuqr.models.delivery import (
    DRIVER_BOUND_STATUSES,
    SYSTEM_ACTOR,
    TERMINAL_STATUSES,
    Actor,
    ActorKind,
    Delivery,
    DeliveryStatus,
    GeoPoint,
    ProofKind,
    ProofOfDelivery,
    StatusChange,
)

ALLOWED_TRANSITIONS: dict[DeliveryStatus, frozenset[DeliveryStatus]] = {
    DeliveryStatus.PENDING: frozenset({DeliveryStatus.ASSIGNED, DeliveryStatus.CANCELLED}),
    DeliveryStatus.ASSIGNED: frozenset(
        {DeliveryStatus.ACCEPTED, DeliveryStatus.PENDING, DeliveryStatus.CANCELLED}
    ),
    DeliveryStatus.ACCEPTED: frozenset({DeliveryStatus.PICKED_UP, DeliveryStatus.CANCELLED}),
    DeliveryStatus.PICKED_UP: frozenset(
        {DeliveryStatus.IN_TRANSIT, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED}
    ),
    DeliveryStatus.IN_TRANSIT: frozenset(
        {DeliveryStatus.ARRIVED, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED}
    ),
    DeliveryStatus.ARRIVED: frozenset(
        {DeliveryStatus.DELIVERED, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED}
    ),
    DeliveryStatus.DELIVERED: frozenset(),
    DeliveryStatus.CANCELLED: frozenset(),
    DeliveryStatus.FAILED: frozenset(),
}

# Targets that carry extra data and are reachable only through their own command
COMMAND_ONLY_TARGETS: dict[DeliveryStatus, str] = {
    DeliveryStatus.ASSIGNED: "assign_driver",
    DeliveryStatus.ACCEPTED: "driver_accept",
    DeliveryStatus.PENDING: "driver_reject",
    DeliveryStatus.DELIVERED: "submit_proof_of_delivery",
}

_TIMESTAMP_FIELDS: dict[DeliveryStatus, str] = {
    DeliveryStatus.ASSIGNED: "assigned_at",
    DeliveryStatus.ACCEPTED: "accepted_at",
    DeliveryStatus.PICKED_UP: "picked_up_at",
    DeliveryStatus.IN_TRANSIT: "in_transit_at",
    DeliveryStatus.ARRIVED: "arrived_at",
    DeliveryStatus.DELIVERED: "delivered_at",
    DeliveryStatus.CANCELLED: "cancelled_at",
    DeliveryStatus.FAILED: "failed_at",
}


def can_transition(current: DeliveryStatus, target: DeliveryStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def driver_binding_holds(delivery: Delivery) -> bool:
    """Driver is attached on the happy path from assignment onwards and absent while pending."""
    if delivery.status in (DeliveryStatus.CANCELLED, DeliveryStatus.FAILED):
        return True
    return (delivery.driver_id is not None) == (delivery.status in DRIVER_BOUND_STATUSES)


def _ensure(delivery: Delivery, target: DeliveryStatus) -> None:
    if not can_transition(delivery.status, target):
        raise InvalidTransitionError(delivery.status.value, target.value)


def _ensure_driver(delivery: Delivery, actor: Actor) -> None:
    if actor.kind == ActorKind.DRIVER and actor.id != delivery.driver_id:
        raise NotAssignedDriverError(delivery.id, actor.id or "")


def _transition(
    delivery: Delivery,
    target: DeliveryStatus,
    actor: Actor,
    now: datetime,
    note: str | None = None,
    **changes,
) -> Delivery:
    updated = delivery.model_copy(deep=True)
    for field, value in changes.items():
        setattr(updated, field, value)
    updated.previous_status = delivery.status
    updated.status = target
    stamp = _TIMESTAMP_FIELDS.get(target)
    if stamp:
        setattr(updated, stamp, now)
    updated.status_history.append(
        StatusChange(
            status=target,
            at=now,
            actor=actor,
            note=note,
            location=updated.current_location,
        )
    )
    updated.updated_at = now
    return updated


def assign_driver(
    delivery: Delivery,
    driver_id: str,
    now: datetime,
    timeout: timedelta,
    actor: Actor = SYSTEM_ACTOR,
) -> Delivery:
    _ensure(delivery, DeliveryStatus.ASSIGNED)
    if driver_id in delivery.rejected_driver_ids:
        raise BlockedError(
            "driver_already_rejected",
            "Driver already declined this delivery",
            context={"delivery_id": delivery.id, "driver_id": driver_id},
        )
    return _transition(
        delivery,
        DeliveryStatus.ASSIGNED,
        actor,
        now,
        driver_id=driver_id,
        assignment_attempts=delivery.assignment_attempts + 1,
        assignment_expires_at=now + timeout,
    )


def driver_accept(delivery: Delivery, driver_id: str, now: datetime) -> Delivery:
    _ensure(delivery, DeliveryStatus.ACCEPTED)
    if delivery.driver_id != driver_id:
        raise NotAssignedDriverError(delivery.id, driver_id)
    return _transition(
        delivery,
        DeliveryStatus.ACCEPTED,
        Actor(kind=ActorKind.DRIVER, id=driver_id),
        now,
        assignment_expires_at=None,
    )


def driver_reject(
    delivery: Delivery,
    driver_id: str,
    now: datetime,
    reason: str | None = None,
    actor: Actor | None = None,
) -> Delivery:
    """Driver declines the offer; the delivery goes back to the pending pool."""
    _ensure(delivery, DeliveryStatus.PENDING)
    if delivery.driver_id != driver_id:
        raise NotAssignedDriverError(delivery.id, driver_id)
    return _transition(
        delivery,
        DeliveryStatus.PENDING,
        actor or Actor(kind=ActorKind.DRIVER, id=driver_id),
        now,
        note=reason,
        driver_id=None,
        assignment_expires_at=None,
        rejected_driver_ids=[*delivery.rejected_driver_ids, driver_id],
    )


def expire_assignment(delivery: Delivery, now: datetime) -> Delivery | None:
    """Treat a lapsed offer as a rejection. Returns None when nothing lapsed."""
    if delivery.status != DeliveryStatus.ASSIGNED or delivery.assignment_expires_at is None:
        return None
    if now < delivery.assignment_expires_at:
        return None
    return driver_reject(
        delivery, delivery.driver_id, now, reason="assignment_timeout", actor=SYSTEM_ACTOR
    )


def update_status(
    delivery: Delivery,
    target: DeliveryStatus,
    actor: Actor,
    now: datetime,
    note: str | None = None,
) -> Delivery:
    _ensure(delivery, target)
    if target in COMMAND_ONLY_TARGETS:
        raise InvalidTransitionError(
            delivery.status.value,
            target.value,
            message=f"Use {COMMAND_ONLY_TARGETS[target]} to move to '{target.value}'",
        )
    if target == DeliveryStatus.CANCELLED:
        return cancel(delivery, note, actor, now)
    if target == DeliveryStatus.FAILED:
        return mark_failed(delivery, note, actor, now)
    _ensure_driver(delivery, actor)
    return _transition(delivery, target, actor, now, note=note)


def _missing_proof(delivery: Delivery, proof: ProofOfDelivery) -> list[str]:
    missing = []
    if delivery.pod_required.photo and not proof.photo_url:
        missing.append("photo_url")
    if delivery.pod_required.signature and not proof.signature_url:
        missing.append("signature_url")
    if proof.kind == ProofKind.PHOTO and not proof.photo_url:
        missing.append("photo_url")
    if proof.kind == ProofKind.SIGNATURE and not proof.signature_url:
        missing.append("signature_url")
    if proof.kind == ProofKind.OTP and (not proof.otp_code or proof.otp_code != delivery.otp_code):
        missing.append("otp_code")
    if proof.kind == ProofKind.GPS and proof.location is None and delivery.current_location is None:
        missing.append("location")
    return sorted(set(missing))


def submit_proof_of_delivery(
    delivery: Delivery,
    proof: ProofOfDelivery,
    now: datetime,
    actor: Actor | None = None,
) -> Delivery:
    _ensure(delivery, DeliveryStatus.DELIVERED)
    actor = actor or Actor(kind=ActorKind.DRIVER, id=delivery.driver_id)
    _ensure_driver(delivery, actor)
    missing = _missing_proof(delivery, proof)
    if missing:
        raise ProofOfDeliveryRequiredError(missing)
    stored_proof = proof.model_copy(
        update={
            "submitted_at": now,
            "location": proof.location or delivery.current_location,
        }
    )
    return _transition(
        delivery,
        DeliveryStatus.DELIVERED,
        actor,
        now,
        note=proof.notes,
        proof_of_delivery=stored_proof,
    )


def cancel(delivery: Delivery, reason: str | None, actor: Actor, now: datetime) -> Delivery:
    _ensure(delivery, DeliveryStatus.CANCELLED)
    return _transition(
        delivery,
        DeliveryStatus.CANCELLED,
        actor,
        now,
        note=reason,
        cancelled_by=actor.kind,
        cancellation_reason=reason,
        assignment_expires_at=None,
    )


def mark_failed(delivery: Delivery, reason: str | None, actor: Actor, now: datetime) -> Delivery:
    _ensure(delivery, DeliveryStatus.FAILED)
    _ensure_driver(delivery, actor)
    return _transition(
        delivery,
        DeliveryStatus.FAILED,
        actor,
        now,
        note=reason,
        failure_reason=reason,
    )


def update_location(
    delivery: Delivery,
    point: GeoPoint,
    now: datetime,
    history_interval: timedelta = timedelta(seconds=30),
    max_history: int = 500,
) -> Delivery:
    """Record the driver position. History keeps at most one point per interval."""
    if delivery.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            delivery.status.value,
            delivery.status.value,
            message="Location cannot change on a finished delivery",
        )
    stamped = point.model_copy(update={"recorded_at": point.recorded_at or now})
    updated = delivery.model_copy(deep=True)
    updated.current_location = stamped
    history = updated.location_history
    last_at = history[-1].recorded_at if history else None
    if last_at is None or stamped.recorded_at - last_at >= history_interval:
        history.append(stamped)
        if len(history) > max_history:
            del history[: len(history) - max_history]
    updated.updated_at = now
    return updated
