"""SQLAlchemy-backed repository.

Optimistic concurrency comes from the mappers' ``version_id_col``: an UPDATE
whose version no longer matches raises ``StaleDataError``, reported here as
``ConflictError``.
"""
import logging
from datetime import timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from coursepay.entities import (
    Enrollment,
    EnrollmentPaymentStatus,
    EnrollmentStatus,
    GatewayOutcome,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from coursepay.errors import ConflictError, PersistenceError
from coursepay.models import EnrollmentRow, PaymentRow
from coursepay.repository import Repository, UnitOfWork

logger = logging.getLogger("coursepay.sql")


def _aware(value):
    # sqlite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def enrollment_from_row(row: EnrollmentRow) -> Enrollment:
    return Enrollment(
        id=row.id,
        student_id=row.student_id,
        course_id=row.course_id,
        course_module_snapshot=tuple(row.course_module_snapshot or ()),
        completed_modules=tuple(row.completed_modules or ()),
        overall_progress=row.overall_progress,
        status=EnrollmentStatus(row.status),
        payment_status=EnrollmentPaymentStatus(row.payment_status) if row.payment_status else None,
        payment_ref=row.payment_ref,
        is_enrolled_with_offer=row.is_enrolled_with_offer,
        offer_ref=row.offer_ref,
        enrolled_at=_aware(row.enrolled_at),
        last_accessed_at=_aware(row.last_accessed_at),
        version=row.version,
    )


def payment_from_row(row: PaymentRow) -> Payment:
    return Payment(
        id=row.id,
        student_id=row.student_id,
        course_id=row.course_id,
        amount=Decimal(row.amount),
        currency=row.currency,
        payment_status=PaymentStatus(row.payment_status),
        payment_method=PaymentMethod(row.payment_method),
        payment_gateway=row.payment_gateway,
        transaction_id=row.transaction_id,
        paid_at=_aware(row.paid_at),
        failure_reason=row.failure_reason,
        is_verified_by_admin=row.is_verified_by_admin,
        verified_at=_aware(row.verified_at),
        refund_amount=Decimal(row.refund_amount) if row.refund_amount is not None else None,
        refunded_at=_aware(row.refunded_at),
        refund_transaction_id=row.refund_transaction_id,
        applied_gateway_outcomes=tuple(GatewayOutcome(o) for o in row.applied_gateway_outcomes or ()),
        notes=row.notes,
        created_at=_aware(row.created_at),
        version=row.version,
    )


def _fill_enrollment(row: EnrollmentRow, e: Enrollment) -> None:
    row.student_id = e.student_id
    row.course_id = e.course_id
    row.course_module_snapshot = list(e.course_module_snapshot)
    row.completed_modules = list(e.completed_modules)
    row.overall_progress = e.overall_progress
    row.status = e.status.value
    row.payment_status = e.payment_status.value if e.payment_status else None
    row.payment_ref = e.payment_ref
    row.is_enrolled_with_offer = e.is_enrolled_with_offer
    row.offer_ref = e.offer_ref
    row.enrolled_at = e.enrolled_at
    row.last_accessed_at = e.last_accessed_at


def _fill_payment(row: PaymentRow, p: Payment) -> None:
    row.student_id = p.student_id
    row.course_id = p.course_id
    row.amount = p.amount
    row.currency = p.currency
    row.payment_status = p.payment_status.value
    row.payment_method = p.payment_method.value
    row.payment_gateway = p.payment_gateway
    row.transaction_id = p.transaction_id
    row.paid_at = p.paid_at
    row.failure_reason = p.failure_reason
    row.is_verified_by_admin = p.is_verified_by_admin
    row.verified_at = p.verified_at
    row.refund_amount = p.refund_amount
    row.refunded_at = p.refunded_at
    row.refund_transaction_id = p.refund_transaction_id
    row.applied_gateway_outcomes = [o.value for o in p.applied_gateway_outcomes]
    row.notes = p.notes
    row.created_at = p.created_at


class SqlUnitOfWork(UnitOfWork):
    def __init__(self, session):
        super().__init__()
        self.db = session

    def _run(self, fn):
        try:
            return fn()
        except SQLAlchemyError as exc:
            logger.exception("database read failed")
            raise PersistenceError(str(exc)) from exc

    def _load_enrollment(self, enrollment_id):
        row = self._run(lambda: self.db.get(EnrollmentRow, enrollment_id))
        return enrollment_from_row(row) if row else None

    def _load_payment(self, payment_id):
        row = self._run(lambda: self.db.get(PaymentRow, payment_id))
        return payment_from_row(row) if row else None

    def _load_payment_by_transaction(self, transaction_id):
        stmt = select(PaymentRow).where(PaymentRow.transaction_id == transaction_id)
        row = self._run(lambda: self.db.execute(stmt).scalar_one_or_none())
        return payment_from_row(row) if row else None

    def _load_enrollment_for(self, student_id, course_id):
        stmt = select(EnrollmentRow).where(
            EnrollmentRow.student_id == student_id, EnrollmentRow.course_id == course_id
        )
        row = self._run(lambda: self.db.execute(stmt).scalar_one_or_none())
        return enrollment_from_row(row) if row else None

    def _load_enrollments_for_payment(self, payment_id):
        stmt = select(EnrollmentRow).where(EnrollmentRow.payment_ref == payment_id)
        rows = self._run(lambda: self.db.execute(stmt).scalars().all())
        return [enrollment_from_row(r) for r in rows]

    def _stage(self, model, fill, item, new_ids):
        if item.id in new_ids:
            row = model(id=item.id)
            fill(row, item)
            self.db.add(row)
            return
        row = self.db.get(model, item.id)
        if row is None or row.version != item.version:
            raise ConflictError(f"{item.id} was modified concurrently")
        fill(row, item)

    def _write(self, enrollments, payments, new_ids):
        try:
            for enrollment in enrollments:
                self._stage(EnrollmentRow, _fill_enrollment, enrollment, new_ids)
            for payment in payments:
                self._stage(PaymentRow, _fill_payment, payment, new_ids)
            self.db.commit()
        except StaleDataError as exc:
            raise ConflictError(str(exc)) from exc
        except IntegrityError as exc:
            # a unique row was inserted by a concurrent writer
            raise ConflictError(str(exc.orig)) from exc
        except SQLAlchemyError as exc:
            logger.exception("database write failed")
            raise PersistenceError(str(exc)) from exc
        finally:
            self.db.close()

    def _discard(self):
        try:
            self.db.rollback()
        finally:
            self.db.close()


class SqlRepository(Repository):
    def __init__(self, session_factory):
        self.SessionLocal = session_factory

    def begin(self) -> UnitOfWork:
        return SqlUnitOfWork(self.SessionLocal())

    def _query(self, stmt):
        db = self.SessionLocal()
        try:
            return db.execute(stmt).scalars().all()
        except SQLAlchemyError as exc:
            logger.exception("database query failed")
            raise PersistenceError(str(exc)) from exc
        finally:
            db.close()

    def list_enrollments(self, student_id=None, course_id=None, statuses=None):
        q = select(EnrollmentRow)
        if student_id:
            q = q.where(EnrollmentRow.student_id == student_id)
        if course_id:
            q = q.where(EnrollmentRow.course_id == course_id)
        if statuses is not None:
            q = q.where(EnrollmentRow.status.in_([s.value for s in statuses]))
        return [enrollment_from_row(r) for r in self._query(q)]

    def list_payments(self, student_id=None, statuses=None, gateway=None, verified=None):
        q = select(PaymentRow)
        if student_id:
            q = q.where(PaymentRow.student_id == student_id)
        if statuses is not None:
            q = q.where(PaymentRow.payment_status.in_([s.value for s in statuses]))
        if gateway:
            q = q.where(PaymentRow.payment_gateway == gateway)
        if verified is not None:
            q = q.where(PaymentRow.is_verified_by_admin == verified)
        return [payment_from_row(r) for r in self._query(q)]
