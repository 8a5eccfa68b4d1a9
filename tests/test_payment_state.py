from dataclasses import replace
from decimal import Decimal

import pytest

from coursepay.entities import GatewayOutcome, PaymentMethod, PaymentStatus
from coursepay.errors import (
    AlreadyVerifiedError,
    IllegalTransitionError,
    NotVerifiedError,
    RefundRangeError,
    ValidationError,
)
from coursepay.payment_state import (
    PaymentEvent,
    apply_gateway_outcome,
    new_payment,
    next_status,
    refund,
    verify,
)


def make_payment(**changes):
    payment = new_payment("pay-1", "stu-1", "course-py", "1000", PaymentMethod.UPI, "razorpay", transaction_id="t-1")
    return replace(payment, **changes)


def paid(verified=True):
    payment, _ = apply_gateway_outcome(make_payment(), GatewayOutcome.CONFIRMED)
    return verify(payment) if verified else payment


@pytest.mark.parametrize(
    "current,event,expected",
    [
        (PaymentStatus.PENDING, PaymentEvent.GATEWAY_CONFIRMED, PaymentStatus.PAID),
        (PaymentStatus.PENDING, PaymentEvent.GATEWAY_FAILED, PaymentStatus.FAILED),
        (PaymentStatus.PAID, PaymentEvent.FULL_REFUND, PaymentStatus.REFUNDED),
        (PaymentStatus.PAID, PaymentEvent.PARTIAL_REFUND, PaymentStatus.PARTIALLY_PAID),
        (PaymentStatus.PAID, PaymentEvent.DISPUTE_RAISED, PaymentStatus.DISPUTED),
        (PaymentStatus.PARTIALLY_PAID, PaymentEvent.DISPUTE_RAISED, PaymentStatus.DISPUTED),
    ],
)
def test_legal_edges(current, event, expected):
    assert next_status(current, event) is expected


@pytest.mark.parametrize(
    "current,event",
    [
        (PaymentStatus.PENDING, PaymentEvent.FULL_REFUND),
        (PaymentStatus.PENDING, PaymentEvent.DISPUTE_RAISED),
        (PaymentStatus.PAID, PaymentEvent.GATEWAY_FAILED),
        (PaymentStatus.FAILED, PaymentEvent.GATEWAY_CONFIRMED),
        (PaymentStatus.REFUNDED, PaymentEvent.DISPUTE_RAISED),
        (PaymentStatus.DISPUTED, PaymentEvent.PARTIAL_REFUND),
        (PaymentStatus.PARTIALLY_PAID, PaymentEvent.FULL_REFUND),
    ],
)
def test_illegal_edges(current, event):
    with pytest.raises(IllegalTransitionError):
        next_status(current, event)


def test_new_payment_normalizes_input():
    payment = new_payment("p", "s", "c", 19.99, "PayPal", " paypal ", currency="inr")
    assert payment.amount == Decimal("19.99")
    assert payment.currency == "INR"
    assert payment.payment_method is PaymentMethod.PAYPAL
    assert payment.payment_gateway == "paypal"
    assert payment.payment_status is PaymentStatus.PENDING
    assert not payment.is_verified_by_admin


@pytest.mark.parametrize(
    "amount,currency", [("-1", "USD"), ("abc", "USD"), ("10.005", "USD"), ("NaN", "USD"), ("10", "US"), ("10", "1$$")]
)
def test_new_payment_rejects_bad_input(amount, currency):
    with pytest.raises(ValidationError):
        new_payment("p", "s", "c", amount, PaymentMethod.CARD, "stripe", currency=currency)


def test_gateway_confirmation_marks_paid():
    payment, applied = apply_gateway_outcome(make_payment(), GatewayOutcome.CONFIRMED)
    assert applied
    assert payment.payment_status is PaymentStatus.PAID
    assert payment.paid_at is not None


def test_gateway_failure_records_reason():
    payment, _ = apply_gateway_outcome(make_payment(), "failed", failure_reason="card declined")
    assert payment.payment_status is PaymentStatus.FAILED
    assert payment.failure_reason == "card declined"


def test_duplicate_webhook_is_a_noop():
    payment, _ = apply_gateway_outcome(make_payment(), GatewayOutcome.CONFIRMED)
    verified = verify(payment)
    again, applied = apply_gateway_outcome(verified, GatewayOutcome.CONFIRMED)
    assert not applied
    assert again is verified


def test_conflicting_webhook_is_rejected():
    payment, _ = apply_gateway_outcome(make_payment(), GatewayOutcome.CONFIRMED)
    with pytest.raises(IllegalTransitionError):
        apply_gateway_outcome(payment, GatewayOutcome.FAILED)


def test_verify_pending_payment_fails_without_change():
    pending = make_payment()
    with pytest.raises(IllegalTransitionError):
        verify(pending)
    assert not pending.is_verified_by_admin
    assert pending.payment_status is PaymentStatus.PENDING


def test_verify_twice():
    with pytest.raises(AlreadyVerifiedError):
        verify(paid())


def test_full_refund():
    refunded = refund(paid(), 1000, "rf-1")
    assert refunded.payment_status is PaymentStatus.REFUNDED
    assert refunded.total_paid() == 0
    assert refunded.refund_transaction_id == "rf-1"
    assert refunded.refunded_at is not None


def test_partial_refund():
    refunded = refund(paid(), "400")
    assert refunded.payment_status is PaymentStatus.PARTIALLY_PAID
    assert refunded.total_paid() == 600
    assert refunded.refund_transaction_id is None


def test_refund_requires_verification():
    with pytest.raises(NotVerifiedError):
        refund(paid(verified=False), 100)


def test_refund_cannot_exceed_amount():
    with pytest.raises(RefundRangeError):
        refund(paid(), "1000.01")


@pytest.mark.parametrize("amount", [0, -5])
def test_refund_amount_must_be_positive(amount):
    with pytest.raises(ValidationError):
        refund(paid(), amount)


def test_partially_refunded_payment_cannot_be_refunded_again():
    with pytest.raises(NotVerifiedError):
        refund(refund(paid(), 100), 100)


def test_dispute_after_partial_refund():
    disputed, applied = apply_gateway_outcome(refund(paid(), 100), GatewayOutcome.DISPUTED)
    assert applied
    assert disputed.payment_status is PaymentStatus.DISPUTED
    assert disputed.total_paid() == 900


def test_refund_amount_is_limited_to_cents():
    with pytest.raises(ValidationError):
        refund(paid(), "999.995")


def test_trailing_zeros_are_accepted():
    payment = new_payment("p", "s", "c", "10.500", PaymentMethod.CARD, "stripe")
    assert payment.amount == Decimal("10.50")
