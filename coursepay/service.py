"""
Enrollment/payment service.

Each public operation is one unit of work: read, apply a pure transition,
stage the result, commit. The consistency validator runs inside ``commit``,
so an enrollment and its payment are written together or not at all.
Domain events are published only after a successful commit.
"""
import logging
import time
from decimal import Decimal
from typing import Callable, List, Optional

from pydantic import ValidationError as SchemaError

from coursepay import enrollment as lifecycle
from coursepay import payment_state
from coursepay.collaborators import CatalogService, OfferService
from coursepay.consistency import ensure_offer_usable
from coursepay.entities import (
    Enrollment,
    EnrollmentStatus,
    GatewayOutcome,
    Payment,
    PaymentStatus,
    utcnow,
)
from coursepay.errors import (
    ConflictError,
    CoursePayError,
    DuplicateEnrollmentError,
    NotFoundError,
    OfferInvalidError,
    ValidationError,
)
from coursepay.events import NullPublisher, enrollment_event, payment_event
from coursepay.repository import Repository
from coursepay.schemas import EnrollmentProgress, PaymentCreate, PaymentOut, PaymentSummary

logger = logging.getLogger("coursepay.service")

ACTIVE_STATUSES = (EnrollmentStatus.ENROLLED, EnrollmentStatus.IN_PROGRESS)


def run_with_conflict_retry(fn: Callable, attempts: int = 3, backoff: float = 0.05):
    """Call ``fn`` until it stops losing optimistic-concurrency races.

    Only ``ConflictError`` is retried; anything else goes straight to the caller.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConflictError:
            if attempt == attempts:
                raise
            logger.warning("write conflict, retrying (%s/%s)", attempt, attempts)
            time.sleep(backoff * attempt)


class EnrollmentPaymentService:
    def __init__(
        self,
        repository: Repository,
        catalog: CatalogService,
        offers: OfferService,
        publisher=None,
        clock: Callable = utcnow,
        conflict_retries: int = 3,
        conflict_backoff: float = 0.05,
    ):
        self.repository = repository
        self.catalog = catalog
        self.offers = offers
        self.publisher = publisher or NullPublisher()
        self.clock = clock
        self.conflict_retries = conflict_retries
        self.conflict_backoff = conflict_backoff

    def retry(self, fn: Callable):
        """Run ``fn`` with this service's conflict retry policy."""
        return run_with_conflict_retry(fn, self.conflict_retries, self.conflict_backoff)

    # ------------------------------------------------------------------
    # enrollments
    # ------------------------------------------------------------------

    def create_enrollment(self, student_id: str, course_id: str, offer_id: Optional[str] = None) -> Enrollment:
        modules = self.catalog.get_course_modules(course_id)
        now = self.clock()
        with self.repository.begin() as uow:
            if uow.find_enrollment_for(student_id, course_id) is not None:
                logger.warning("student %s already enrolled in %s", student_id, course_id)
                raise DuplicateEnrollmentError(f"student {student_id} is already enrolled in {course_id}")
            enrollment = lifecycle.new_enrollment(
                self.repository.new_id(), student_id, course_id, modules, offer_id=offer_id, now=now
            )
            uow.add_enrollment(enrollment)
            if offer_id is None:
                uow.commit()
            else:
                self._commit_with_offer_seat(uow, offer_id, course_id, now)
        saved = uow.saved[enrollment.id]
        logger.info(
            "Created enrollment id=%s student=%s course=%s modules=%s offer=%s",
            saved.id, student_id, course_id, len(saved.course_module_snapshot), offer_id,
        )
        self.publisher.publish("enrollment.events.created", enrollment_event("EnrollmentCreated", saved))
        return saved

    def _commit_with_offer_seat(self, uow, offer_id, course_id, now):
        # re-read right before taking the seat; the offer may have changed
        try:
            offer = self.offers.get_offer(offer_id)
        except NotFoundError as exc:
            raise OfferInvalidError(f"offer {offer_id} does not exist") from exc
        ensure_offer_usable(offer, course_id, now)
        if not self.offers.decrement_offer_seat(offer_id):
            logger.warning("offer %s ran out of seats", offer_id)
            raise OfferInvalidError(f"offer {offer.offer_code} has no seats left")
        try:
            uow.commit()
        except Exception:
            self.offers.release_offer_seat(offer_id)
            raise

    def record_module_completion(self, enrollment_id: str, module_id: str) -> Enrollment:
        with self.repository.begin() as uow:
            current = uow.get_enrollment(enrollment_id)
            try:
                updated = lifecycle.complete_module(current, module_id, now=self.clock())
            except CoursePayError as exc:
                logger.warning("module %s rejected for enrollment %s: %s", module_id, enrollment_id, exc)
                raise
            uow.save_enrollment(updated)
            uow.commit()
        saved = uow.saved[enrollment_id]
        logger.info(
            "Recorded module %s for enrollment %s progress=%s status=%s",
            module_id, enrollment_id, saved.overall_progress, saved.status.value,
        )
        if saved.status is EnrollmentStatus.COMPLETED and current.status is not EnrollmentStatus.COMPLETED:
            self.publisher.publish("enrollment.events.completed", enrollment_event("EnrollmentCompleted", saved))
        return saved

    def drop_enrollment(self, enrollment_id: str) -> Enrollment:
        with self.repository.begin() as uow:
            uow.save_enrollment(lifecycle.drop(uow.get_enrollment(enrollment_id), now=self.clock()))
            uow.commit()
        saved = uow.saved[enrollment_id]
        logger.info("Dropped enrollment id=%s", enrollment_id)
        self.publisher.publish("enrollment.events.dropped", enrollment_event("EnrollmentDropped", saved))
        return saved

    def waive_payment(self, enrollment_id: str) -> Enrollment:
        with self.repository.begin() as uow:
            uow.save_enrollment(lifecycle.waive(uow.get_enrollment(enrollment_id), now=self.clock()))
            uow.commit()
        logger.info("Waived payment for enrollment id=%s", enrollment_id)
        return uow.saved[enrollment_id]

    # ------------------------------------------------------------------
    # payments
    # ------------------------------------------------------------------

    def create_payment(self, payment_in) -> Payment:
        if not isinstance(payment_in, PaymentCreate):
            try:
                payment_in = PaymentCreate.model_validate(payment_in)
            except SchemaError as exc:
                raise ValidationError(str(exc)) from exc
        now = self.clock()
        with self.repository.begin() as uow:
            if payment_in.transaction_id and uow.find_payment_by_transaction(payment_in.transaction_id):
                raise ValidationError(f"transaction {payment_in.transaction_id} already recorded")
            payment = payment_state.new_payment(
                self.repository.new_id(),
                payment_in.student_id,
                payment_in.course_id,
                payment_in.amount,
                payment_in.payment_method,
                payment_in.payment_gateway,
                currency=payment_in.currency,
                transaction_id=payment_in.transaction_id,
                notes=payment_in.notes,
                now=now,
            )
            uow.add_payment(payment)
            if payment_in.enrollment_id:
                enrollment = uow.get_enrollment(payment_in.enrollment_id)
                uow.save_enrollment(lifecycle.attach_payment(enrollment, payment.id, now=now))
            uow.commit()
        saved = uow.saved[payment.id]
        logger.info(
            "Created payment id=%s student=%s course=%s enrollment=%s status=%s",
            saved.id, saved.student_id, saved.course_id, payment_in.enrollment_id, saved.payment_status.value,
        )
        self.publisher.publish(
            "payment.events.created", payment_event("PaymentCreated", saved, payment_in.enrollment_id)
        )
        return saved

    def apply_gateway_result(
        self, transaction_id: str, outcome, failure_reason: Optional[str] = None
    ) -> Payment:
        try:
            outcome = GatewayOutcome(outcome)
        except ValueError as exc:
            raise ValidationError(f"unknown gateway outcome: {outcome!r}") from exc
        now = self.clock()
        with self.repository.begin() as uow:
            payment = uow.find_payment_by_transaction(transaction_id)
            if payment is None:
                raise NotFoundError("transaction", transaction_id)
            try:
                updated, applied = payment_state.apply_gateway_outcome(payment, outcome, failure_reason, now=now)
            except CoursePayError as exc:
                logger.warning("gateway %s for transaction %s rejected: %s", outcome.value, transaction_id, exc)
                raise
            if not applied:
                logger.info("Duplicate gateway %s for transaction %s ignored", outcome.value, transaction_id)
                return payment
            uow.save_payment(updated)
            linked = uow.enrollments_for_payment(payment.id)
            for enrollment in linked:
                if outcome is GatewayOutcome.CONFIRMED:
                    uow.save_enrollment(lifecycle.mark_paid(enrollment, now=now))
                elif outcome is GatewayOutcome.FAILED:
                    uow.save_enrollment(lifecycle.detach_payment(enrollment, now=now))
            uow.commit()
        saved = uow.saved[payment.id]
        logger.info(
            "Applied gateway %s to payment id=%s status=%s", outcome.value, saved.id, saved.payment_status.value
        )
        kind = {
            GatewayOutcome.CONFIRMED: "PaymentConfirmed",
            GatewayOutcome.FAILED: "PaymentFailed",
            GatewayOutcome.DISPUTED: "PaymentDisputed",
        }[outcome]
        enrollment_id = linked[0].id if linked else None
        self.publisher.publish(f"payment.events.{outcome.value}", payment_event(kind, saved, enrollment_id))
        return saved

    def verify_payment(self, payment_id: str) -> Payment:
        saved = self._mutate_payment(payment_id, lambda p: payment_state.verify(p, now=self.clock()))
        logger.info("Verified payment id=%s", payment_id)
        self.publisher.publish("payment.events.verified", payment_event("PaymentVerified", saved))
        return saved

    def refund_payment(self, payment_id: str, refund_amount, refund_transaction_id: Optional[str] = None) -> Payment:
        saved = self._mutate_payment(
            payment_id,
            lambda p: payment_state.refund(p, refund_amount, refund_transaction_id, now=self.clock()),
        )
        logger.info(
            "Refunded %s on payment id=%s status=%s", saved.refund_amount, payment_id, saved.payment_status.value
        )
        self.publisher.publish("payment.events.refunded", payment_event("PaymentRefunded", saved))
        return saved

    def _mutate_payment(self, payment_id, change) -> Payment:
        with self.repository.begin() as uow:
            payment = uow.get_payment(payment_id)
            try:
                updated = change(payment)
            except CoursePayError as exc:
                logger.warning("payment %s: %s", payment_id, exc)
                raise
            uow.save_payment(updated)
            uow.commit()
        return uow.saved[payment_id]

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def _progress(self, enrollment: Enrollment) -> EnrollmentProgress:
        return EnrollmentProgress(
            id=enrollment.id,
            student_id=enrollment.student_id,
            course_id=enrollment.course_id,
            status=enrollment.status,
            overall_progress=enrollment.overall_progress,
            completed_modules=list(enrollment.completed_modules),
            total_modules=len(enrollment.course_module_snapshot),
            payment_status=enrollment.payment_status,
            payment_ref=enrollment.payment_ref,
            offer_ref=enrollment.offer_ref,
            enrolled_at=enrollment.enrolled_at,
            last_accessed_at=enrollment.last_accessed_at,
            days_since_enrollment=enrollment.days_since_enrollment(self.clock()),
        )

    def get_enrollment_progress(self, enrollment_id: str) -> EnrollmentProgress:
        with self.repository.begin() as uow:
            return self._progress(uow.get_enrollment(enrollment_id))

    def get_student_progress(self, student_id: str, course_id: str) -> EnrollmentProgress:
        with self.repository.begin() as uow:
            enrollment = uow.find_enrollment_for(student_id, course_id)
        if enrollment is None:
            raise NotFoundError("enrollment", f"{student_id}/{course_id}")
        return self._progress(enrollment)

    def get_payment_summary(self, payment_id: str) -> PaymentSummary:
        with self.repository.begin() as uow:
            payment = uow.get_payment(payment_id)
        return PaymentSummary(
            payment_id=payment.id,
            total_paid=payment.total_paid(),
            status=payment.payment_status,
            verified=payment.is_verified_by_admin,
            amount=payment.amount,
            currency=payment.currency,
            refund_amount=payment.refund_amount,
        )

    def list_active_enrollments(self, student_id: str) -> List[EnrollmentProgress]:
        found = self.repository.list_enrollments(student_id=student_id, statuses=ACTIVE_STATUSES)
        found.sort(key=lambda e: e.last_accessed_at, reverse=True)
        return [self._progress(e) for e in found]

    def count_course_enrollments(self, course_id: str) -> int:
        return sum(1 for e in self.repository.list_enrollments(course_id=course_id) if not e.is_dropped)

    def list_enrollments_by_status(self, status, limit: int = 10, skip: int = 0) -> List[EnrollmentProgress]:
        if limit < 0 or skip < 0:
            raise ValidationError("limit and skip cannot be negative")
        try:
            status = EnrollmentStatus(status)
        except ValueError as exc:
            raise ValidationError(f"unknown enrollment status: {status!r}") from exc
        found = self.repository.list_enrollments(statuses=[status])
        found.sort(key=lambda e: e.enrolled_at, reverse=True)
        return [self._progress(e) for e in found[skip:skip + limit]]

    def _payments_out(self, payments) -> List[PaymentOut]:
        payments = sorted(payments, key=lambda p: p.created_at, reverse=True)
        return [PaymentOut.model_validate(p) for p in payments]

    def list_payments_by_student(self, student_id: str) -> List[PaymentOut]:
        return self._payments_out(self.repository.list_payments(student_id=student_id))

    def list_unverified_payments(self) -> List[PaymentOut]:
        return self._payments_out(self.repository.list_payments(statuses=[PaymentStatus.PAID], verified=False))

    def list_pending_payments(self) -> List[PaymentOut]:
        return self._payments_out(self.repository.list_payments(statuses=[PaymentStatus.PENDING]))

    def list_payments_by_gateway(self, gateway: str) -> List[PaymentOut]:
        return self._payments_out(self.repository.list_payments(gateway=gateway))

    def total_revenue(self) -> Decimal:
        verified = self.repository.list_payments(statuses=[PaymentStatus.PAID], verified=True)
        return sum((p.amount for p in verified), Decimal(0))
