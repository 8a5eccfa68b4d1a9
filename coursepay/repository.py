"""
Repository interface and the in-memory store.

A ``UnitOfWork`` stages enrollment and payment writes, layers them over the
stored values for reads, validates the result and commits all of it or none
of it. Every entity carries a ``version``; a staged write based on an older
version loses with ``ConflictError``.
"""
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from coursepay.consistency import validate_unit
from coursepay.entities import Enrollment, EnrollmentStatus, Payment, PaymentStatus
from coursepay.errors import ConflictError, NotFoundError, PersistenceError

logger = logging.getLogger("coursepay.repository")


class UnitOfWork(ABC):
    def __init__(self):
        self._enrollments: Dict[str, Enrollment] = {}
        self._payments: Dict[str, Payment] = {}
        self._new_ids = set()
        self._closed = False
        # committed values with their new versions, keyed by id
        self.saved: Dict[str, object] = {}

    # -- storage hooks -------------------------------------------------

    @abstractmethod
    def _load_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        ...

    @abstractmethod
    def _load_payment(self, payment_id: str) -> Optional[Payment]:
        ...

    @abstractmethod
    def _load_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        ...

    @abstractmethod
    def _load_enrollment_for(self, student_id: str, course_id: str) -> Optional[Enrollment]:
        ...

    @abstractmethod
    def _load_enrollments_for_payment(self, payment_id: str) -> List[Enrollment]:
        ...

    @abstractmethod
    def _write(self, enrollments: List[Enrollment], payments: List[Payment], new_ids: set) -> None:
        """Persist staged values atomically, enforcing version checks."""

    def _discard(self) -> None:
        pass

    # -- reads ---------------------------------------------------------

    def get_enrollment(self, enrollment_id: str) -> Enrollment:
        enrollment = self._enrollments.get(enrollment_id) or self._load_enrollment(enrollment_id)
        if enrollment is None:
            raise NotFoundError("enrollment", enrollment_id)
        return enrollment

    def get_payment(self, payment_id: str) -> Payment:
        payment = self.find_payment(payment_id)
        if payment is None:
            raise NotFoundError("payment", payment_id)
        return payment

    def find_payment(self, payment_id: str) -> Optional[Payment]:
        return self._payments.get(payment_id) or self._load_payment(payment_id)

    def find_payment_by_transaction(self, transaction_id: str) -> Optional[Payment]:
        for payment in self._payments.values():
            if payment.transaction_id == transaction_id:
                return payment
        payment = self._load_payment_by_transaction(transaction_id)
        if payment is not None and payment.id in self._payments:
            return self._payments[payment.id]
        return payment

    def find_enrollment_for(self, student_id: str, course_id: str) -> Optional[Enrollment]:
        for enrollment in self._enrollments.values():
            if (enrollment.student_id, enrollment.course_id) == (student_id, course_id):
                return enrollment
        return self._load_enrollment_for(student_id, course_id)

    def enrollments_for_payment(self, payment_id: str) -> List[Enrollment]:
        found = {e.id: e for e in self._load_enrollments_for_payment(payment_id)}
        for enrollment in self._enrollments.values():
            if enrollment.payment_ref == payment_id:
                found[enrollment.id] = enrollment
            else:
                found.pop(enrollment.id, None)
        return list(found.values())

    # -- writes --------------------------------------------------------

    def add_enrollment(self, enrollment: Enrollment) -> None:
        self._new_ids.add(enrollment.id)
        self._enrollments[enrollment.id] = enrollment

    def save_enrollment(self, enrollment: Enrollment) -> None:
        self._enrollments[enrollment.id] = enrollment

    def add_payment(self, payment: Payment) -> None:
        self._new_ids.add(payment.id)
        self._payments[payment.id] = payment

    def save_payment(self, payment: Payment) -> None:
        self._payments[payment.id] = payment

    def commit(self) -> None:
        if self._closed:
            raise PersistenceError("unit of work already closed")
        try:
            validate_unit(
                self._enrollments.values(),
                self._payments.values(),
                self.find_payment,
                self.enrollments_for_payment,
            )
            self._write(list(self._enrollments.values()), list(self._payments.values()), self._new_ids)
        except Exception:
            self.rollback()
            raise
        self._closed = True
        for staged in (self._enrollments, self._payments):
            for key, value in staged.items():
                self.saved[key] = replace(value, version=value.version + 1)
        self._enrollments.clear()
        self._payments.clear()

    def rollback(self) -> None:
        if self._closed:
            return
        self._enrollments.clear()
        self._payments.clear()
        self._new_ids.clear()
        self._closed = True
        self._discard()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.rollback()


class Repository(ABC):
    def new_id(self) -> str:
        return uuid.uuid4().hex

    @abstractmethod
    def begin(self) -> UnitOfWork:
        ...

    @abstractmethod
    def list_enrollments(
        self,
        student_id: Optional[str] = None,
        course_id: Optional[str] = None,
        statuses: Optional[Iterable[EnrollmentStatus]] = None,
    ) -> List[Enrollment]:
        ...

    @abstractmethod
    def list_payments(
        self,
        student_id: Optional[str] = None,
        statuses: Optional[Iterable[PaymentStatus]] = None,
        gateway: Optional[str] = None,
        verified: Optional[bool] = None,
    ) -> List[Payment]:
        ...


class _MemoryUnitOfWork(UnitOfWork):
    def __init__(self, store: "InMemoryRepository"):
        super().__init__()
        self.store = store

    def _load_enrollment(self, enrollment_id):
        with self.store.locked():
            return self.store.enrollments.get(enrollment_id)

    def _load_payment(self, payment_id):
        with self.store.locked():
            return self.store.payments.get(payment_id)

    def _load_payment_by_transaction(self, transaction_id):
        with self.store.locked():
            for payment in self.store.payments.values():
                if payment.transaction_id == transaction_id:
                    return payment
        return None

    def _load_enrollment_for(self, student_id, course_id):
        with self.store.locked():
            for enrollment in self.store.enrollments.values():
                if (enrollment.student_id, enrollment.course_id) == (student_id, course_id):
                    return enrollment
        return None

    def _load_enrollments_for_payment(self, payment_id):
        with self.store.locked():
            return [e for e in self.store.enrollments.values() if e.payment_ref == payment_id]

    def _write(self, enrollments, payments, new_ids):
        store = self.store
        with store.locked():
            for table, items in ((store.enrollments, enrollments), (store.payments, payments)):
                for item in items:
                    current = table.get(item.id)
                    if item.id in new_ids:
                        if current is not None:
                            raise ConflictError(f"{item.id} was created concurrently")
                    elif current is None or current.version != item.version:
                        raise ConflictError(f"{item.id} was modified concurrently")
            for enrollment in enrollments:
                if enrollment.id not in new_ids:
                    continue
                for other in store.enrollments.values():
                    if (other.student_id, other.course_id) == (enrollment.student_id, enrollment.course_id):
                        raise ConflictError(
                            f"enrollment for {enrollment.student_id}/{enrollment.course_id} created concurrently"
                        )
            for payment in payments:
                if payment.id not in new_ids or payment.transaction_id is None:
                    continue
                for other in store.payments.values():
                    if other.transaction_id == payment.transaction_id:
                        raise ConflictError(f"transaction {payment.transaction_id} recorded concurrently")
            for enrollment in enrollments:
                store.enrollments[enrollment.id] = replace(enrollment, version=enrollment.version + 1)
            for payment in payments:
                store.payments[payment.id] = replace(payment, version=payment.version + 1)


class InMemoryRepository(Repository):
    """Process-local store guarded by a lock with a bounded wait."""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self.enrollments: Dict[str, Enrollment] = {}
        self.payments: Dict[str, Payment] = {}
        self._lock = threading.RLock()

    def locked(self):
        return _TimedLock(self._lock, self.timeout)

    def begin(self) -> UnitOfWork:
        return _MemoryUnitOfWork(self)

    def list_enrollments(self, student_id=None, course_id=None, statuses=None):
        statuses = set(statuses) if statuses is not None else None
        with self.locked():
            return [
                e
                for e in self.enrollments.values()
                if (student_id is None or e.student_id == student_id)
                and (course_id is None or e.course_id == course_id)
                and (statuses is None or e.status in statuses)
            ]

    def list_payments(self, student_id=None, statuses=None, gateway=None, verified=None):
        statuses = set(statuses) if statuses is not None else None
        with self.locked():
            return [
                p
                for p in self.payments.values()
                if (student_id is None or p.student_id == student_id)
                and (statuses is None or p.payment_status in statuses)
                and (gateway is None or p.payment_gateway == gateway)
                and (verified is None or p.is_verified_by_admin == verified)
            ]


class _TimedLock:
    def __init__(self, lock, timeout):
        self.lock = lock
        self.timeout = timeout

    def __enter__(self):
        if not self.lock.acquire(timeout=self.timeout):
            logger.error("store lock not acquired within %ss", self.timeout)
            raise PersistenceError(f"store lock not acquired within {self.timeout}s")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.lock.release()
