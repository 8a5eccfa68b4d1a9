from decimal import Decimal

import pytest

from coursepay.entities import (
    EnrollmentPaymentStatus,
    EnrollmentStatus,
    GatewayOutcome,
    PaymentStatus,
)
from coursepay.errors import (
    ConsistencyError,
    DuplicateEnrollmentError,
    IllegalTransitionError,
    InvalidModuleError,
    NotFoundError,
    OfferInvalidError,
    TerminalStateError,
    ValidationError,
)

from conftest import COURSE, MODULES


@pytest.fixture
def enrollment(service):
    return service.create_enrollment("stu-1", COURSE)


class TestEnrollmentLifecycle:
    def test_create_enrollment_snapshots_modules(self, service, enrollment, publisher):
        assert enrollment.course_module_snapshot == tuple(MODULES)
        assert enrollment.status is EnrollmentStatus.ENROLLED
        assert enrollment.overall_progress == 0
        assert enrollment.payment_status is None
        assert enrollment.version == 1
        assert publisher.keys == ["enrollment.events.created"]

    def test_snapshot_is_not_affected_by_later_catalog_changes(self, service, catalog, enrollment):
        catalog.courses[COURSE].append("m5")
        progress = service.get_enrollment_progress(enrollment.id)
        assert progress.total_modules == 4

    def test_unknown_course(self, service):
        with pytest.raises(NotFoundError):
            service.create_enrollment("stu-1", "course-missing")

    def test_one_enrollment_per_student_and_course(self, service, enrollment):
        with pytest.raises(DuplicateEnrollmentError):
            service.create_enrollment("stu-1", COURSE)

    def test_first_module_puts_enrollment_in_progress(self, service, enrollment):
        updated = service.record_module_completion(enrollment.id, "m1")
        assert updated.overall_progress == 25
        assert updated.status is EnrollmentStatus.IN_PROGRESS

    def test_completing_every_module(self, service, enrollment, publisher):
        service.record_module_completion(enrollment.id, "m1")
        for module_id in ("m2", "m3", "m4"):
            updated = service.record_module_completion(enrollment.id, module_id)
        assert updated.overall_progress == 100
        assert updated.status is EnrollmentStatus.COMPLETED
        assert publisher.keys.count("enrollment.events.completed") == 1

    def test_completion_is_idempotent(self, service, enrollment):
        first = service.record_module_completion(enrollment.id, "m3")
        second = service.record_module_completion(enrollment.id, "m3")
        assert second.completed_modules == first.completed_modules == ("m3",)
        assert second.overall_progress == first.overall_progress == 25
        assert second.last_accessed_at >= first.last_accessed_at

    def test_completed_modules_keep_snapshot_order(self, service, enrollment):
        service.record_module_completion(enrollment.id, "m4")
        updated = service.record_module_completion(enrollment.id, "m2")
        assert updated.completed_modules == ("m2", "m4")

    def test_unknown_module_is_rejected(self, service, enrollment):
        with pytest.raises(InvalidModuleError):
            service.record_module_completion(enrollment.id, "m42")
        assert service.get_enrollment_progress(enrollment.id).completed_modules == []

    def test_dropped_enrollment_is_terminal(self, service, enrollment):
        service.record_module_completion(enrollment.id, "m1")
        dropped = service.drop_enrollment(enrollment.id)
        assert dropped.status is EnrollmentStatus.DROPPED
        with pytest.raises(TerminalStateError):
            service.record_module_completion(enrollment.id, "m2")
        progress = service.get_enrollment_progress(enrollment.id)
        assert progress.completed_modules == ["m1"]
        assert progress.status is EnrollmentStatus.DROPPED

    def test_empty_course(self, service):
        enrollment = service.create_enrollment("stu-1", "course-empty")
        assert service.get_enrollment_progress(enrollment.id).overall_progress == 0

    def test_missing_enrollment(self, service):
        with pytest.raises(NotFoundError):
            service.record_module_completion("nope", "m1")

    def test_waive_payment(self, service, enrollment):
        waived = service.waive_payment(enrollment.id)
        assert waived.payment_status is EnrollmentPaymentStatus.WAIVED
        assert waived.payment_ref is None


class TestOffers:
    def test_enrollment_with_offer_takes_a_seat(self, service, offers):
        enrollment = service.create_enrollment("stu-1", COURSE, offer_id="offer-live")
        assert enrollment.offer_ref == "offer-live"
        assert enrollment.is_enrolled_with_offer
        assert offers.get_offer("offer-live").seats_available == 4

    def test_last_seat_closes_the_offer(self, service, offers):
        service.create_enrollment("stu-1", COURSE, offer_id="offer-last-seat")
        assert not offers.get_offer("offer-last-seat").is_active
        with pytest.raises(OfferInvalidError):
            service.create_enrollment("stu-2", COURSE, offer_id="offer-last-seat")
        assert service.count_course_enrollments(COURSE) == 1

    @pytest.mark.parametrize("offer_id", ["offer-expired", "offer-go", "offer-unknown"])
    def test_unusable_offers(self, service, offers, offer_id):
        with pytest.raises(OfferInvalidError):
            service.create_enrollment("stu-1", COURSE, offer_id=offer_id)
        with pytest.raises(NotFoundError):
            service.get_student_progress("stu-1", COURSE)

    def test_seat_is_released_when_commit_fails(self, service, offers, repository, monkeypatch):
        def fail(*args):
            raise ConsistencyError("forced")

        monkeypatch.setattr("coursepay.repository.validate_unit", fail)
        with pytest.raises(ConsistencyError):
            service.create_enrollment("stu-1", COURSE, offer_id="offer-live")
        assert offers.get_offer("offer-live").seats_available == 5
        assert repository.enrollments == {}


class TestPaymentReconciliation:
    def test_payment_attached_to_enrollment(self, service, enrollment, checkout):
        payment = checkout(service, enrollment_id=enrollment.id)
        progress = service.get_enrollment_progress(enrollment.id)
        assert payment.payment_status is PaymentStatus.PENDING
        assert progress.payment_status is EnrollmentPaymentStatus.PENDING
        assert progress.payment_ref == payment.id

    def test_gateway_confirmation_marks_enrollment_paid(self, service, enrollment, checkout, publisher):
        payment = checkout(service, enrollment_id=enrollment.id)
        confirmed = service.apply_gateway_result("txn-1", GatewayOutcome.CONFIRMED)
        assert confirmed.payment_status is PaymentStatus.PAID
        assert service.get_enrollment_progress(enrollment.id).payment_status is EnrollmentPaymentStatus.PAID
        assert "payment.events.confirmed" in publisher.keys
        assert publisher.events[-1][1]["payload"]["enrollment_id"] == enrollment.id
        assert payment.id == confirmed.id

    def test_duplicate_webhook_is_silent(self, service, enrollment, checkout, publisher):
        checkout(service, enrollment_id=enrollment.id)
        first = service.apply_gateway_result("txn-1", "confirmed")
        service.verify_payment(first.id)
        published = len(publisher.events)
        again = service.apply_gateway_result("txn-1", "confirmed")
        assert again.is_verified_by_admin
        assert again.version == first.version + 1
        assert len(publisher.events) == published

    def test_gateway_failure_detaches_payment(self, service, enrollment, checkout):
        checkout(service, enrollment_id=enrollment.id)
        failed = service.apply_gateway_result("txn-1", GatewayOutcome.FAILED, failure_reason="insufficient funds")
        assert failed.payment_status is PaymentStatus.FAILED
        assert failed.failure_reason == "insufficient funds"
        progress = service.get_enrollment_progress(enrollment.id)
        assert progress.payment_status is None
        assert progress.payment_ref is None
        retry = checkout(service, txn="txn-2", enrollment_id=enrollment.id)
        assert service.get_enrollment_progress(enrollment.id).payment_ref == retry.id

    def test_late_failure_after_confirmation_is_rejected(self, service, enrollment, checkout):
        checkout(service, enrollment_id=enrollment.id)
        service.apply_gateway_result("txn-1", GatewayOutcome.CONFIRMED)
        with pytest.raises(IllegalTransitionError):
            service.apply_gateway_result("txn-1", GatewayOutcome.FAILED)
        assert service.get_enrollment_progress(enrollment.id).payment_status is EnrollmentPaymentStatus.PAID

    def test_unknown_transaction(self, service):
        with pytest.raises(NotFoundError):
            service.apply_gateway_result("txn-unknown", GatewayOutcome.CONFIRMED)

    def test_second_payment_for_same_enrollment_is_rejected(self, service, enrollment, checkout):
        checkout(service, enrollment_id=enrollment.id)
        with pytest.raises(ConsistencyError):
            checkout(service, txn="txn-2", enrollment_id=enrollment.id)
        assert len(service.list_payments_by_student("stu-1")) == 1

    def test_payment_for_other_student_cannot_attach(self, service, enrollment, checkout):
        with pytest.raises(ConsistencyError):
            checkout(service, student="stu-2", enrollment_id=enrollment.id)
        assert service.list_payments_by_student("stu-2") == []

    def test_waived_enrollment_cannot_take_a_payment(self, service, enrollment, checkout):
        service.waive_payment(enrollment.id)
        with pytest.raises(ConsistencyError):
            checkout(service, enrollment_id=enrollment.id)

    def test_transaction_ids_are_unique(self, service, checkout):
        checkout(service)
        with pytest.raises(ValidationError):
            checkout(service)

    def test_malformed_payment_input(self, service, checkout):
        with pytest.raises(ValidationError):
            checkout(service, amount="-10")

    def test_refund_keeps_enrollment_paid(self, service, enrollment, checkout):
        payment = checkout(service, enrollment_id=enrollment.id)
        service.apply_gateway_result("txn-1", GatewayOutcome.CONFIRMED)
        service.verify_payment(payment.id)
        refunded = service.refund_payment(payment.id, 1000)
        assert refunded.payment_status is PaymentStatus.REFUNDED
        assert service.get_enrollment_progress(enrollment.id).payment_status is EnrollmentPaymentStatus.PAID


class TestVerificationAndRefunds:
    def test_full_refund(self, service, verified_payment, publisher):
        service.refund_payment(verified_payment.id, Decimal("1000"), "rf-1")
        summary = service.get_payment_summary(verified_payment.id)
        assert summary.status is PaymentStatus.REFUNDED
        assert summary.total_paid == 0
        assert summary.verified
        assert publisher.keys[-1] == "payment.events.refunded"

    def test_partial_refund(self, service, verified_payment):
        service.refund_payment(verified_payment.id, 400)
        summary = service.get_payment_summary(verified_payment.id)
        assert summary.status is PaymentStatus.PARTIALLY_PAID
        assert summary.total_paid == 600
        assert summary.refund_amount == 400

    def test_verify_pending_payment(self, service, checkout):
        payment = checkout(service)
        with pytest.raises(IllegalTransitionError):
            service.verify_payment(payment.id)
        summary = service.get_payment_summary(payment.id)
        assert summary.status is PaymentStatus.PENDING
        assert not summary.verified

    def test_refund_over_amount_leaves_payment_untouched(self, service, verified_payment):
        with pytest.raises(ValidationError):
            service.refund_payment(verified_payment.id, 1500)
        assert service.get_payment_summary(verified_payment.id).total_paid == 1000

    def test_missing_payment(self, service):
        with pytest.raises(NotFoundError):
            service.get_payment_summary("nope")


class TestQueries:
    def test_active_enrollments_most_recent_first(self, service):
        py = service.create_enrollment("stu-1", COURSE)
        go = service.create_enrollment("stu-1", "course-go")
        service.record_module_completion(py.id, "m1")
        dropped = service.create_enrollment("stu-1", "course-empty")
        service.drop_enrollment(dropped.id)
        active = service.list_active_enrollments("stu-1")
        assert [p.id for p in active] == [py.id, go.id]

    def test_counts_and_status_listing(self, service):
        for n in range(3):
            service.create_enrollment(f"stu-{n}", COURSE)
        service.drop_enrollment(service.get_student_progress("stu-0", COURSE).id)
        assert service.count_course_enrollments(COURSE) == 2
        assert len(service.list_enrollments_by_status(EnrollmentStatus.ENROLLED)) == 2
        assert len(service.list_enrollments_by_status("Enrolled", limit=1)) == 1
        assert len(service.list_enrollments_by_status(EnrollmentStatus.ENROLLED, skip=2)) == 0

    def test_payment_listings_and_revenue(self, service, checkout):
        first = checkout(service, amount="100", txn="a")
        checkout(service, amount="250", txn="b")
        third = checkout(service, amount="75", txn="c", student="stu-2")
        service.apply_gateway_result("a", GatewayOutcome.CONFIRMED)
        service.apply_gateway_result("c", GatewayOutcome.CONFIRMED)
        service.verify_payment(first.id)

        assert [p.id for p in service.list_unverified_payments()] == [third.id]
        assert [p.transaction_id for p in service.list_pending_payments()] == ["b"]
        assert len(service.list_payments_by_gateway("stripe")) == 3
        assert service.list_payments_by_gateway("paypal") == []
        assert service.total_revenue() == Decimal("100")
