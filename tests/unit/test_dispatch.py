"""Unit tests for the pure delivery state machine."""

from datetime import UTC, datetime, timedelta

import pytest

from menuqr.errors import (
    BlockedError,
    InvalidTransitionError,
    NotAssignedDriverError,
    ProofOfDeliveryRequiredError,
)
from menuqr.models.delivery import (
    SYSTEM_ACTOR,
    TERMINAL_STATUSES,
    Actor,
    ActorKind,
    Delivery,
    DeliveryStatus,
    GeoPoint,
    PodRequirements,
    ProofKind,
    ProofOfDelivery,
)
from menuqr.services import dispatch

NOW = datetime(2026, 3, 10, 19, 30, tzinfo=UTC)
TIMEOUT = timedelta(seconds=120)
DRIVER = Actor(kind=ActorKind.DRIVER, id="driver-1")
STAFF = Actor(kind=ActorKind.RESTAURANT, id="staff-1")
CUSTOMER = Actor(kind=ActorKind.CUSTOMER, id="cust-1")


def make_delivery(**overrides) -> Delivery:
    fields = {
        "id": "del-1",
        "order_id": "order-1",
        "tenant_id": "rest-1",
        "customer_id": "cust-1",
        "delivery_number": "DLV-20260310-00001",
        "tracking_code": "ABCDEF1234",
        "otp_code": "0420",
        "created_at": NOW,
    }
    fields.update(overrides)
    return Delivery(**fields)


def advance_to(status: DeliveryStatus) -> Delivery:
    """Drive a fresh delivery along the happy path up to ``status``."""
    delivery = make_delivery()
    path = [
        DeliveryStatus.ASSIGNED,
        DeliveryStatus.ACCEPTED,
        DeliveryStatus.PICKED_UP,
        DeliveryStatus.IN_TRANSIT,
        DeliveryStatus.ARRIVED,
        DeliveryStatus.DELIVERED,
    ]
    if status == DeliveryStatus.PENDING:
        return delivery
    if status == DeliveryStatus.CANCELLED:
        return dispatch.cancel(delivery, "test", STAFF, NOW)
    if status == DeliveryStatus.FAILED:
        delivery = advance_to(DeliveryStatus.PICKED_UP)
        return dispatch.mark_failed(delivery, "no answer", DRIVER, NOW)
    for step in path:
        if step == DeliveryStatus.ASSIGNED:
            delivery = dispatch.assign_driver(delivery, "driver-1", NOW, TIMEOUT)
        elif step == DeliveryStatus.ACCEPTED:
            delivery = dispatch.driver_accept(delivery, "driver-1", NOW)
        elif step == DeliveryStatus.DELIVERED:
            delivery = dispatch.submit_proof_of_delivery(
                delivery, ProofOfDelivery(kind=ProofKind.OTP, otp_code="0420"), NOW, DRIVER
            )
        else:
            delivery = dispatch.update_status(delivery, step, DRIVER, NOW)
        if step == status:
            return delivery
    raise AssertionError(f"unreachable status {status}")


def run_command(delivery: Delivery, target: DeliveryStatus) -> Delivery:
    """Issue the command that leads to ``target``."""
    if target == DeliveryStatus.ASSIGNED:
        return dispatch.assign_driver(delivery, "driver-2", NOW, TIMEOUT)
    if target == DeliveryStatus.ACCEPTED:
        return dispatch.driver_accept(delivery, delivery.driver_id or "driver-1", NOW)
    if target == DeliveryStatus.PENDING:
        return dispatch.driver_reject(delivery, delivery.driver_id or "driver-1", NOW)
    if target == DeliveryStatus.DELIVERED:
        return dispatch.submit_proof_of_delivery(
            delivery, ProofOfDelivery(kind=ProofKind.OTP, otp_code="0420"), NOW, DRIVER
        )
    if target == DeliveryStatus.CANCELLED:
        return dispatch.cancel(delivery, None, STAFF, NOW)
    if target == DeliveryStatus.FAILED:
        return dispatch.mark_failed(delivery, None, STAFF, NOW)
    return dispatch.update_status(delivery, target, DRIVER, NOW)


class TestTransitionTable:
    @pytest.mark.parametrize("current", list(DeliveryStatus))
    @pytest.mark.parametrize("target", list(DeliveryStatus))
    def test_only_listed_transitions_succeed(self, current, target):
        delivery = advance_to(current)
        snapshot = delivery.model_copy(deep=True)

        if dispatch.can_transition(current, target):
            updated = run_command(delivery, target)
            assert updated.status == target
            assert updated.previous_status == current
            assert updated.status_history[-1].status == target
            assert dispatch.driver_binding_holds(updated)
        else:
            with pytest.raises(InvalidTransitionError):
                run_command(delivery, target)
        # Commands never modify their input
        assert delivery == snapshot

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATUSES, key=lambda s: s.value))
    def test_terminal_states_are_absorbing(self, terminal):
        assert dispatch.ALLOWED_TRANSITIONS[terminal] == frozenset()


class TestAssignment:
    def test_assign_sets_driver_deadline_and_timestamp(self):
        delivery = dispatch.assign_driver(make_delivery(), "driver-1", NOW, TIMEOUT, STAFF)

        assert delivery.status == DeliveryStatus.ASSIGNED
        assert delivery.driver_id == "driver-1"
        assert delivery.assigned_at == NOW
        assert delivery.assignment_expires_at == NOW + TIMEOUT
        assert delivery.assignment_attempts == 1
        assert delivery.status_history[-1].actor == STAFF

    def test_assigning_an_assigned_delivery_keeps_first_driver(self):
        assigned = dispatch.assign_driver(make_delivery(), "driver-1", NOW, TIMEOUT)

        with pytest.raises(InvalidTransitionError) as exc_info:
            dispatch.assign_driver(assigned, "driver-2", NOW, TIMEOUT)

        assert exc_info.value.current == "assigned"
        assert exc_info.value.attempted == "assigned"
        assert assigned.driver_id == "driver-1"

    def test_only_the_assigned_driver_can_accept(self):
        assigned = dispatch.assign_driver(make_delivery(), "driver-1", NOW, TIMEOUT)

        with pytest.raises(NotAssignedDriverError):
            dispatch.driver_accept(assigned, "driver-9", NOW)

    def test_accept_clears_the_deadline(self):
        assigned = dispatch.assign_driver(make_delivery(), "driver-1", NOW, TIMEOUT)

        accepted = dispatch.driver_accept(assigned, "driver-1", NOW + timedelta(seconds=30))

        assert accepted.accepted_at == NOW + timedelta(seconds=30)
        assert accepted.assignment_expires_at is None

    def test_reject_returns_to_pending_and_remembers_driver(self):
        assigned = dispatch.assign_driver(make_delivery(), "driver-1", NOW, TIMEOUT)

        rejected = dispatch.driver_reject(assigned, "driver-1", NOW, "too far")

        assert rejected.status == DeliveryStatus.PENDING
        assert rejected.driver_id is None
        assert rejected.rejected_driver_ids == ["driver-1"]
        assert rejected.status_history[-1].note == "too far"

    def test_rejecting_driver_cannot_be_offered_again(self):
        assigned = dispatch.assign_driver(make_delivery(), "driver-1", NOW, TIMEOUT)
        rejected = dispatch.driver_reject(assigned, "driver-1", NOW)

        with pytest.raises(BlockedError):
            dispatch.assign_driver(rejected, "driver-1", NOW, TIMEOUT)

        reassigned = dispatch.assign_driver(rejected, "driver-2", NOW, TIMEOUT)
        assert reassigned.assignment_attempts == 2

    def test_expire_assignment_after_timeout(self):
        assigned = dispatch.assign_driver(make_delivery(), "driver-1", NOW, TIMEOUT)

        assert dispatch.expire_assignment(assigned, NOW + timedelta(seconds=60)) is None
        expired = dispatch.expire_assignment(assigned, NOW + TIMEOUT)

        assert expired.status == DeliveryStatus.PENDING
        assert expired.rejected_driver_ids == ["driver-1"]
        assert expired.status_history[-1].actor == SYSTEM_ACTOR
        assert expired.status_history[-1].note == "assignment_timeout"

    def test_expire_ignores_accepted_delivery(self):
        accepted = advance_to(DeliveryStatus.ACCEPTED)

        assert dispatch.expire_assignment(accepted, NOW + timedelta(hours=1)) is None


class TestStatusUpdates:
    @pytest.mark.parametrize(
        "target",
        [
            DeliveryStatus.ASSIGNED,
            DeliveryStatus.ACCEPTED,
            DeliveryStatus.PENDING,
            DeliveryStatus.DELIVERED,
        ],
    )
    def test_command_only_targets_are_refused(self, target):
        delivery = {
            DeliveryStatus.ASSIGNED: make_delivery(),
            DeliveryStatus.ACCEPTED: advance_to(DeliveryStatus.ASSIGNED),
            DeliveryStatus.PENDING: advance_to(DeliveryStatus.ASSIGNED),
            DeliveryStatus.DELIVERED: advance_to(DeliveryStatus.ARRIVED),
        }[target]

        with pytest.raises(InvalidTransitionError):
            dispatch.update_status(delivery, target, STAFF, NOW)

    def test_staff_cannot_accept_on_behalf_of_the_driver(self):
        assigned = advance_to(DeliveryStatus.ASSIGNED)

        with pytest.raises(InvalidTransitionError) as exc_info:
            dispatch.update_status(assigned, DeliveryStatus.ACCEPTED, STAFF, NOW)

        assert "driver_accept" in exc_info.value.message
        assert assigned.assignment_expires_at == NOW + TIMEOUT
        # The offer still lapses on schedule
        assert dispatch.expire_assignment(assigned, NOW + TIMEOUT).status == DeliveryStatus.PENDING

    def test_other_driver_cannot_move_delivery(self):
        accepted = advance_to(DeliveryStatus.ACCEPTED)
        intruder = Actor(kind=ActorKind.DRIVER, id="driver-9")

        with pytest.raises(NotAssignedDriverError):
            dispatch.update_status(accepted, DeliveryStatus.PICKED_UP, intruder, NOW)

    def test_each_step_sets_its_timestamp(self):
        later = NOW + timedelta(minutes=10)
        accepted = advance_to(DeliveryStatus.ACCEPTED)

        picked = dispatch.update_status(accepted, DeliveryStatus.PICKED_UP, DRIVER, later)

        assert picked.picked_up_at == later
        assert picked.updated_at == later

    def test_update_status_to_cancelled_records_canceller(self):
        delivery = dispatch.update_status(make_delivery(), DeliveryStatus.CANCELLED, CUSTOMER, NOW, "changed mind")

        assert delivery.cancelled_by == ActorKind.CUSTOMER
        assert delivery.cancellation_reason == "changed mind"
        assert delivery.cancelled_at == NOW

    def test_cancel_keeps_driver_attached(self):
        accepted = advance_to(DeliveryStatus.ACCEPTED)

        cancelled = dispatch.cancel(accepted, "kitchen closed", STAFF, NOW)

        assert cancelled.driver_id == "driver-1"
        assert dispatch.driver_binding_holds(cancelled)

    def test_mark_failed_records_reason(self):
        in_transit = advance_to(DeliveryStatus.IN_TRANSIT)

        failed = dispatch.mark_failed(in_transit, "address not found", DRIVER, NOW)

        assert failed.status == DeliveryStatus.FAILED
        assert failed.failure_reason == "address not found"
        assert failed.failed_at == NOW


class TestProofOfDelivery:
    def test_proof_from_pending_is_invalid(self):
        with pytest.raises(InvalidTransitionError):
            dispatch.submit_proof_of_delivery(
                make_delivery(), ProofOfDelivery(kind=ProofKind.PHOTO, photo_url="https://x/p.jpg"), NOW
            )

    def test_wrong_otp_is_refused(self):
        arrived = advance_to(DeliveryStatus.ARRIVED)

        with pytest.raises(ProofOfDeliveryRequiredError) as exc_info:
            dispatch.submit_proof_of_delivery(
                arrived, ProofOfDelivery(kind=ProofKind.OTP, otp_code="9999"), NOW, DRIVER
            )

        assert exc_info.value.context["missing"] == ["otp_code"]
        assert exc_info.value.status_code == 422

    def test_required_artifacts_must_be_present(self):
        arrived = advance_to(DeliveryStatus.ARRIVED).model_copy(
            update={"pod_required": PodRequirements(photo=True, signature=True)}
        )

        with pytest.raises(ProofOfDeliveryRequiredError) as exc_info:
            dispatch.submit_proof_of_delivery(
                arrived,
                ProofOfDelivery(kind=ProofKind.PHOTO, photo_url="https://cdn/p.jpg"),
                NOW,
                DRIVER,
            )

        assert exc_info.value.context["missing"] == ["signature_url"]

    def test_accepted_proof_is_stamped_and_located(self):
        arrived = advance_to(DeliveryStatus.ARRIVED)
        arrived = dispatch.update_location(arrived, GeoPoint(lat=38.72, lng=-9.14), NOW)
        later = NOW + timedelta(minutes=2)

        delivered = dispatch.submit_proof_of_delivery(
            arrived,
            ProofOfDelivery(kind=ProofKind.PHOTO, photo_url="https://cdn/p.jpg", recipient_name="Ana"),
            later,
            DRIVER,
        )

        assert delivered.status == DeliveryStatus.DELIVERED
        assert delivered.delivered_at == later
        assert delivered.proof_of_delivery.submitted_at == later
        assert delivered.proof_of_delivery.location.lat == 38.72

    def test_other_driver_cannot_submit_proof(self):
        arrived = advance_to(DeliveryStatus.ARRIVED)

        with pytest.raises(NotAssignedDriverError):
            dispatch.submit_proof_of_delivery(
                arrived,
                ProofOfDelivery(kind=ProofKind.OTP, otp_code="0420"),
                NOW,
                Actor(kind=ActorKind.DRIVER, id="driver-9"),
            )


class TestLocation:
    def test_location_updates_current_position(self):
        in_transit = advance_to(DeliveryStatus.IN_TRANSIT)

        moved = dispatch.update_location(in_transit, GeoPoint(lat=38.7, lng=-9.1), NOW)

        assert moved.current_location.recorded_at == NOW
        assert moved.status == DeliveryStatus.IN_TRANSIT
        assert len(moved.location_history) == 1

    def test_history_is_throttled(self):
        delivery = advance_to(DeliveryStatus.IN_TRANSIT)
        interval = timedelta(seconds=30)

        for seconds in (0, 10, 20, 30, 45, 61):
            delivery = dispatch.update_location(
                delivery, GeoPoint(lat=38.7, lng=-9.1), NOW + timedelta(seconds=seconds), interval
            )

        recorded = [p.recorded_at - NOW for p in delivery.location_history]
        assert recorded == [timedelta(0), timedelta(seconds=30), timedelta(seconds=61)]
        assert delivery.current_location.recorded_at == NOW + timedelta(seconds=61)

    def test_history_is_capped(self):
        delivery = advance_to(DeliveryStatus.IN_TRANSIT)

        for minute in range(5):
            delivery = dispatch.update_location(
                delivery, GeoPoint(lat=38.7, lng=-9.1), NOW + timedelta(minutes=minute), max_history=3
            )

        assert len(delivery.location_history) == 3
        assert delivery.location_history[0].recorded_at == NOW + timedelta(minutes=2)

    def test_location_on_finished_delivery_is_refused(self):
        delivered = advance_to(DeliveryStatus.DELIVERED)

        with pytest.raises(InvalidTransitionError):
            dispatch.update_location(delivered, GeoPoint(lat=0, lng=0), NOW)
