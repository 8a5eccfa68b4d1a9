from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from coursepay.entities import (
    EnrollmentPaymentStatus,
    EnrollmentStatus,
    PaymentMethod,
    PaymentStatus,
)


class PaymentCreate(BaseModel):
    student_id: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    amount: Decimal = Field(ge=0, decimal_places=2)
    currency: str = "USD"
    payment_method: PaymentMethod
    payment_gateway: str = Field(min_length=1)
    transaction_id: Optional[str] = None
    enrollment_id: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, value: str) -> str:
        value = value.strip().upper()
        if len(value) != 3 or not value.isalpha():
            raise ValueError("currency must be a three letter code")
        return value


class EnrollmentProgress(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    course_id: str
    status: EnrollmentStatus
    overall_progress: int
    completed_modules: List[str]
    total_modules: int
    payment_status: Optional[EnrollmentPaymentStatus] = None
    payment_ref: Optional[str] = None
    offer_ref: Optional[str] = None
    enrolled_at: datetime
    last_accessed_at: datetime
    days_since_enrollment: int


class PaymentSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    total_paid: Decimal
    status: PaymentStatus
    verified: bool
    amount: Decimal
    currency: str
    refund_amount: Optional[Decimal] = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    course_id: str
    amount: Decimal
    currency: str
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    payment_gateway: str
    transaction_id: Optional[str] = None
    is_verified_by_admin: bool
    refund_amount: Optional[Decimal] = None
    created_at: Optional[datetime] = None
