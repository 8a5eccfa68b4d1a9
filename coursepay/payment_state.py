"""
Payment state machine.

Only the edges in ``PAYMENT_TRANSITIONS`` are legal. Verification does not
change ``payment_status``; it is guarded separately because it only flips the
admin flag on a PAID payment.
"""
from dataclasses import replace
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional, Tuple

from coursepay.entities import (
    GatewayOutcome,
    Payment,
    PaymentMethod,
    PaymentStatus,
    utcnow,
)
from coursepay.errors import (
    AlreadyVerifiedError,
    IllegalTransitionError,
    NotVerifiedError,
    RefundRangeError,
    ValidationError,
)


class PaymentEvent(str, Enum):
    GATEWAY_CONFIRMED = "gateway_confirmed"
    GATEWAY_FAILED = "gateway_failed"
    FULL_REFUND = "full_refund"
    PARTIAL_REFUND = "partial_refund"
    DISPUTE_RAISED = "dispute_raised"


PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentEvent.GATEWAY_CONFIRMED: PaymentStatus.PAID,
        PaymentEvent.GATEWAY_FAILED: PaymentStatus.FAILED,
    },
    PaymentStatus.PAID: {
        PaymentEvent.FULL_REFUND: PaymentStatus.REFUNDED,
        PaymentEvent.PARTIAL_REFUND: PaymentStatus.PARTIALLY_PAID,
        PaymentEvent.DISPUTE_RAISED: PaymentStatus.DISPUTED,
    },
    PaymentStatus.PARTIALLY_PAID: {
        PaymentEvent.DISPUTE_RAISED: PaymentStatus.DISPUTED,
    },
    PaymentStatus.FAILED: {},
    PaymentStatus.DISPUTED: {},
    PaymentStatus.REFUNDED: {},
}

_OUTCOME_EVENTS = {
    GatewayOutcome.CONFIRMED: PaymentEvent.GATEWAY_CONFIRMED,
    GatewayOutcome.FAILED: PaymentEvent.GATEWAY_FAILED,
    GatewayOutcome.DISPUTED: PaymentEvent.DISPUTE_RAISED,
}


def next_status(current: PaymentStatus, event: PaymentEvent) -> PaymentStatus:
    target = PAYMENT_TRANSITIONS[current].get(event)
    if target is None:
        raise IllegalTransitionError(
            f"Invalid payment transition: {current.value} on {event.value}"
        )
    return target


CENT = Decimal("0.01")


def to_amount(value) -> Decimal:
    """Parse a money value. Amounts are stored to the cent, so finer values are rejected."""
    try:
        amount = Decimal(str(value))
        if not amount.is_finite():
            raise ValidationError(f"not a monetary amount: {value!r}")
        fractional = amount % CENT
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"not a monetary amount: {value!r}") from exc
    if fractional != 0:
        raise ValidationError(f"amount has more than two decimal places: {value!r}")
    return amount


def new_payment(
    payment_id: str,
    student_id: str,
    course_id: str,
    amount,
    payment_method: PaymentMethod,
    payment_gateway: str,
    currency: str = "USD",
    transaction_id: Optional[str] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Payment:
    amount = to_amount(amount)
    if amount < 0:
        raise ValidationError("payment amount cannot be negative")
    currency = (currency or "").strip().upper()
    if len(currency) != 3 or not currency.isalpha():
        raise ValidationError(f"invalid currency code: {currency!r}")
    try:
        payment_method = PaymentMethod(payment_method)
    except ValueError as exc:
        raise ValidationError(f"unknown payment method: {payment_method!r}") from exc
    gateway = (payment_gateway or "").strip()
    if not gateway:
        raise ValidationError("payment_gateway is required")
    return Payment(
        id=payment_id,
        student_id=student_id,
        course_id=course_id,
        amount=amount,
        currency=currency,
        payment_method=payment_method,
        payment_gateway=gateway,
        transaction_id=transaction_id.strip() if transaction_id else None,
        notes=notes,
        created_at=now or utcnow(),
    )


def apply_gateway_outcome(
    payment: Payment,
    outcome: GatewayOutcome,
    failure_reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[Payment, bool]:
    """Apply a webhook outcome. Returns ``(payment, applied)``.

    Webhooks are delivered at least once, so an outcome already applied to
    this payment comes back unchanged with ``applied`` False.
    """
    outcome = GatewayOutcome(outcome)
    if outcome in payment.applied_gateway_outcomes:
        return payment, False

    status = next_status(payment.payment_status, _OUTCOME_EVENTS[outcome])
    now = now or utcnow()
    changes = {
        "payment_status": status,
        "applied_gateway_outcomes": payment.applied_gateway_outcomes + (outcome,),
    }
    if outcome is GatewayOutcome.CONFIRMED:
        changes["paid_at"] = now
    elif outcome is GatewayOutcome.FAILED:
        changes["failure_reason"] = failure_reason
    return replace(payment, **changes), True


def verify(payment: Payment, now: Optional[datetime] = None) -> Payment:
    if payment.is_verified_by_admin:
        raise AlreadyVerifiedError(f"payment {payment.id} is already verified")
    if payment.payment_status is not PaymentStatus.PAID:
        raise IllegalTransitionError(
            f"only paid payments can be verified (payment {payment.id} is "
            f"{payment.payment_status.value})"
        )
    return replace(payment, is_verified_by_admin=True, verified_at=now or utcnow())


def refund(
    payment: Payment,
    refund_amount,
    refund_transaction_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Payment:
    refund_amount = to_amount(refund_amount)
    if refund_amount <= 0:
        raise ValidationError("refund amount must be positive")
    if payment.payment_status is not PaymentStatus.PAID or not payment.is_verified_by_admin:
        raise NotVerifiedError(
            f"only verified paid payments can be refunded (payment {payment.id})"
        )
    if refund_amount > payment.amount:
        raise RefundRangeError(
            f"refund {refund_amount} exceeds payment amount {payment.amount}"
        )

    if refund_amount == payment.amount:
        event = PaymentEvent.FULL_REFUND
    else:
        event = PaymentEvent.PARTIAL_REFUND
    changes = {
        "payment_status": next_status(payment.payment_status, event),
        "refund_amount": refund_amount,
        "refunded_at": now or utcnow(),
    }
    if refund_transaction_id:
        changes["refund_transaction_id"] = refund_transaction_id
    return replace(payment, **changes)
