"""Enrollment lifecycle transitions.

Every function takes an ``Enrollment`` and returns the next value. Callers
persist the result through a unit of work.
"""
from dataclasses import replace
from datetime import datetime
from typing import Iterable, Optional

from coursepay.entities import (
    Enrollment,
    EnrollmentPaymentStatus,
    EnrollmentStatus,
    utcnow,
)
from coursepay.errors import (
    ConsistencyError,
    InvalidModuleError,
    TerminalStateError,
    ValidationError,
)
from coursepay.progress import compute_progress, derive_status


def new_enrollment(
    enrollment_id: str,
    student_id: str,
    course_id: str,
    module_snapshot: Iterable[str],
    offer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Enrollment:
    if not student_id or not course_id:
        raise ValidationError("student_id and course_id are required")
    snapshot = []
    for module_id in module_snapshot:
        if module_id not in snapshot:
            snapshot.append(module_id)
    now = now or utcnow()
    return Enrollment(
        id=enrollment_id,
        student_id=student_id,
        course_id=course_id,
        course_module_snapshot=tuple(snapshot),
        is_enrolled_with_offer=offer_id is not None,
        offer_ref=offer_id,
        enrolled_at=now,
        last_accessed_at=now,
    )


def complete_module(enrollment: Enrollment, module_id: str, now: Optional[datetime] = None) -> Enrollment:
    """Mark ``module_id`` complete and recompute progress and status.

    Completing a module twice only refreshes ``last_accessed_at``.
    """
    if module_id not in enrollment.course_module_snapshot:
        raise InvalidModuleError(
            f"module {module_id} is not part of course {enrollment.course_id}"
        )
    if enrollment.is_dropped:
        raise TerminalStateError(f"enrollment {enrollment.id} is dropped")
    done = set(enrollment.completed_modules)
    done.add(module_id)
    # snapshot order keeps the stored list deterministic
    completed = tuple(m for m in enrollment.course_module_snapshot if m in done)
    progress = compute_progress(len(completed), len(enrollment.course_module_snapshot))
    return replace(
        enrollment,
        completed_modules=completed,
        overall_progress=progress,
        status=derive_status(progress),
        last_accessed_at=now or utcnow(),
    )


def drop(enrollment: Enrollment, now: Optional[datetime] = None) -> Enrollment:
    return replace(
        enrollment,
        status=EnrollmentStatus.DROPPED,
        last_accessed_at=now or utcnow(),
    )


def attach_payment(enrollment: Enrollment, payment_id: str, now: Optional[datetime] = None) -> Enrollment:
    if enrollment.payment_status is not None or enrollment.payment_ref is not None:
        raise ConsistencyError(
            f"enrollment {enrollment.id} already has payment state "
            f"{enrollment.payment_status} ({enrollment.payment_ref})"
        )
    return replace(
        enrollment,
        payment_status=EnrollmentPaymentStatus.PENDING,
        payment_ref=payment_id,
        last_accessed_at=now or utcnow(),
    )


def mark_paid(enrollment: Enrollment, now: Optional[datetime] = None) -> Enrollment:
    if enrollment.payment_status is EnrollmentPaymentStatus.PAID:
        return enrollment
    return replace(
        enrollment,
        payment_status=EnrollmentPaymentStatus.PAID,
        last_accessed_at=now or utcnow(),
    )


def detach_payment(enrollment: Enrollment, now: Optional[datetime] = None) -> Enrollment:
    return replace(
        enrollment,
        payment_status=None,
        payment_ref=None,
        last_accessed_at=now or utcnow(),
    )


def waive(enrollment: Enrollment, now: Optional[datetime] = None) -> Enrollment:
    if enrollment.payment_ref is not None:
        raise ConsistencyError(
            f"enrollment {enrollment.id} has payment {enrollment.payment_ref} attached"
        )
    return replace(
        enrollment,
        payment_status=EnrollmentPaymentStatus.WAIVED,
        last_accessed_at=now or utcnow(),
    )
