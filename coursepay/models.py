from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from coursepay.database import Base


class EnrollmentRow(Base):
    __tablename__ = "enrollments"
    id = Column(String(64), primary_key=True)
    student_id = Column(String(64), nullable=False, index=True)
    course_id = Column(String(64), nullable=False, index=True)
    course_module_snapshot = Column(JSON, nullable=False, default=list)
    completed_modules = Column(JSON, nullable=False, default=list)
    overall_progress = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="Enrolled", index=True)
    payment_status = Column(String(20), nullable=True)
    payment_ref = Column(String(64), nullable=True, index=True)
    is_enrolled_with_offer = Column(Boolean, nullable=False, default=False)
    offer_ref = Column(String(64), nullable=True)
    enrolled_at = Column(DateTime(timezone=True), nullable=False)
    last_accessed_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False)

    __table_args__ = (UniqueConstraint("student_id", "course_id", name="uq_enrollment_student_course"),)
    __mapper_args__ = {"version_id_col": version}


class PaymentRow(Base):
    __tablename__ = "payments"
    id = Column(String(64), primary_key=True)
    student_id = Column(String(64), nullable=False, index=True)
    course_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    payment_status = Column(String(20), nullable=False, default="Pending", index=True)
    payment_method = Column(String(20), nullable=False)
    payment_gateway = Column(String(64), nullable=False, index=True)
    transaction_id = Column(String(128), nullable=True, unique=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    is_verified_by_admin = Column(Boolean, nullable=False, default=False, index=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    refund_amount = Column(Numeric(12, 2), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    refund_transaction_id = Column(String(128), nullable=True)
    applied_gateway_outcomes = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}
