"""
Consistency validator.

Runs over everything staged in a unit of work before it commits. Any failure
raises ``ConsistencyError`` and the whole unit of work is discarded.
"""
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from coursepay.entities import (
    REFERENCED_PAYMENT_STATES,
    Enrollment,
    EnrollmentPaymentStatus,
    Offer,
    Payment,
    PaymentStatus,
)
from coursepay.errors import ConsistencyError, OfferInvalidError
from coursepay.progress import derive_status, progress_matches

# payment states an enrollment marked PAID may point at
PAID_DERIVED_STATES = frozenset(
    {
        PaymentStatus.PAID,
        PaymentStatus.PARTIALLY_PAID,
        PaymentStatus.REFUNDED,
        PaymentStatus.DISPUTED,
    }
)


def enrollment_violations(enrollment: Enrollment) -> List[str]:
    problems = []
    snapshot = enrollment.course_module_snapshot
    if not set(enrollment.completed_modules) <= set(snapshot):
        problems.append("completed modules must be a subset of course modules")
    if len(set(enrollment.completed_modules)) != len(enrollment.completed_modules):
        problems.append("completed modules contain duplicates")
    if not progress_matches(enrollment.overall_progress, len(enrollment.completed_modules), len(snapshot)):
        problems.append("progress must align with completed modules")
    if enrollment.status is not derive_status(enrollment.overall_progress, enrollment.is_dropped):
        problems.append(
            f"status {enrollment.status.value} does not match progress {enrollment.overall_progress}"
        )
    has_ref = enrollment.payment_ref is not None
    if has_ref != (enrollment.payment_status in REFERENCED_PAYMENT_STATES):
        problems.append("payment status and payment reference must be consistent")
    if enrollment.is_enrolled_with_offer != (enrollment.offer_ref is not None):
        problems.append("offer reference must be set only when enrolled with an offer")
    return problems


def payment_violations(payment: Payment) -> List[str]:
    problems = []
    status = payment.payment_status
    refund = payment.refund_amount
    if payment.amount < 0:
        problems.append("payment amount cannot be negative")
    if refund is not None:
        if refund > payment.amount:
            problems.append("refund amount cannot exceed payment amount")
        if not payment.is_verified_by_admin:
            problems.append("refund recorded on an unverified payment")
    if (status is PaymentStatus.REFUNDED) != (refund is not None and refund == payment.amount):
        problems.append("status Refunded requires a full refund")
    partial = refund is not None and 0 < refund < payment.amount
    if status is PaymentStatus.PARTIALLY_PAID and not partial:
        problems.append("status PartiallyPaid requires a partial refund")
    if partial and status not in (PaymentStatus.PARTIALLY_PAID, PaymentStatus.DISPUTED):
        problems.append(f"partial refund recorded on a {status.value} payment")
    if payment.is_verified_by_admin and status not in PAID_DERIVED_STATES:
        problems.append(f"verified payment cannot be {status.value}")
    return problems


def pairing_violations(enrollment: Enrollment, payment: Optional[Payment]) -> List[str]:
    if enrollment.payment_status not in REFERENCED_PAYMENT_STATES:
        return []
    if payment is None:
        return [f"referenced payment {enrollment.payment_ref} does not exist"]
    problems = []
    if payment.id != enrollment.payment_ref:
        problems.append(f"payment {payment.id} is not the referenced {enrollment.payment_ref}")
    if (payment.student_id, payment.course_id) != (enrollment.student_id, enrollment.course_id):
        problems.append("payment belongs to a different student or course")
    if enrollment.payment_status is EnrollmentPaymentStatus.PENDING:
        if payment.payment_status is not PaymentStatus.PENDING:
            problems.append(
                f"enrollment is Pending but payment is {payment.payment_status.value}"
            )
    elif payment.payment_status not in PAID_DERIVED_STATES:
        problems.append(f"enrollment is Paid but payment is {payment.payment_status.value}")
    return problems


def validate_unit(
    enrollments: Iterable[Enrollment],
    payments: Iterable[Payment],
    load_payment: Callable[[str], Optional[Payment]],
    enrollments_for_payment: Callable[[str], Iterable[Enrollment]],
) -> None:
    """Check staged entities and every pairing they take part in.

    ``load_payment`` and ``enrollments_for_payment`` must see the staged
    values layered over the stored ones.
    """
    problems = []
    checked = set()
    for enrollment in enrollments:
        checked.add(enrollment.id)
        for problem in enrollment_violations(enrollment):
            problems.append(f"enrollment {enrollment.id}: {problem}")
        payment = load_payment(enrollment.payment_ref) if enrollment.payment_ref else None
        for problem in pairing_violations(enrollment, payment):
            problems.append(f"enrollment {enrollment.id}: {problem}")
    for payment in payments:
        for problem in payment_violations(payment):
            problems.append(f"payment {payment.id}: {problem}")
        for enrollment in enrollments_for_payment(payment.id):
            if enrollment.id in checked:
                continue
            for problem in pairing_violations(enrollment, payment):
                problems.append(f"enrollment {enrollment.id}: {problem}")
    if problems:
        raise ConsistencyError("; ".join(problems))


def ensure_offer_usable(offer: Offer, course_id: str, now: Optional[datetime] = None) -> None:
    if offer.course_id != course_id:
        raise OfferInvalidError(f"offer {offer.offer_code} is not valid for course {course_id}")
    if not offer.is_valid(now):
        raise OfferInvalidError(f"offer {offer.offer_code} is expired or has no seats left")
