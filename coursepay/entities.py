"""
Plain entity values for enrollments, payments and offers.

Entities are frozen dataclasses. Lifecycle functions return new values and
the repository decides what gets written, so nothing in here touches storage.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EnrollmentStatus(str, Enum):
    ENROLLED = "Enrolled"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Complete"
    DROPPED = "Dropped"


class EnrollmentPaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    WAIVED = "Waived"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    DISPUTED = "Disputed"
    PARTIALLY_PAID = "PartiallyPaid"
    REFUNDED = "Refunded"


class PaymentMethod(str, Enum):
    CARD = "Card"
    UPI = "UPI"
    NET_BANKING = "NetBanking"
    PAYPAL = "PayPal"
    CRYPTO = "Crypto"
    OTHER = "Other"


class GatewayOutcome(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    DISPUTED = "disputed"


# enrollment payment states that require a payment reference
REFERENCED_PAYMENT_STATES = frozenset(
    {EnrollmentPaymentStatus.PENDING, EnrollmentPaymentStatus.PAID}
)


@dataclass(frozen=True)
class Enrollment:
    id: str
    student_id: str
    course_id: str
    course_module_snapshot: Tuple[str, ...]
    completed_modules: Tuple[str, ...] = ()
    overall_progress: int = 0
    status: EnrollmentStatus = EnrollmentStatus.ENROLLED
    payment_status: Optional[EnrollmentPaymentStatus] = None
    payment_ref: Optional[str] = None
    is_enrolled_with_offer: bool = False
    offer_ref: Optional[str] = None
    enrolled_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)
    version: int = 0

    @property
    def is_dropped(self) -> bool:
        return self.status is EnrollmentStatus.DROPPED

    def days_since_enrollment(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        return abs(now - self.enrolled_at).days


@dataclass(frozen=True)
class Payment:
    id: str
    student_id: str
    course_id: str
    amount: Decimal
    payment_method: PaymentMethod
    payment_gateway: str
    currency: str = "USD"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    is_verified_by_admin: bool = False
    verified_at: Optional[datetime] = None
    refund_amount: Optional[Decimal] = None
    refunded_at: Optional[datetime] = None
    refund_transaction_id: Optional[str] = None
    applied_gateway_outcomes: Tuple[GatewayOutcome, ...] = ()
    notes: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    version: int = 0

    def total_paid(self) -> Decimal:
        if self.payment_status is PaymentStatus.REFUNDED:
            return Decimal(0)
        return self.amount - (self.refund_amount or Decimal(0))


@dataclass(frozen=True)
class Offer:
    id: str
    course_id: str
    offer_code: str
    seats_available: int
    valid_until: datetime
    discount_percentage: int = 0
    is_active: bool = True

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.is_active and self.seats_available > 0 and self.valid_until >= now
