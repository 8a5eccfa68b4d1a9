from datetime import timedelta

import pytest

from coursepay.collaborators import InMemoryCatalog, InMemoryOfferService
from coursepay.database import make_session_factory
from coursepay.entities import GatewayOutcome, Offer, PaymentMethod, utcnow
from coursepay.repository import InMemoryRepository
from coursepay.service import EnrollmentPaymentService
from coursepay.sql_repository import SqlRepository

COURSE = "course-py"
MODULES = ["m1", "m2", "m3", "m4"]


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, routing_key, event):
        self.events.append((routing_key, event))

    @property
    def keys(self):
        return [key for key, _ in self.events]


@pytest.fixture
def catalog():
    return InMemoryCatalog({COURSE: MODULES, "course-empty": [], "course-go": ["g1", "g2", "g3"]})


@pytest.fixture
def offers():
    now = utcnow()
    return InMemoryOfferService(
        [
            Offer(id="offer-live", course_id=COURSE, offer_code="SPRING25", seats_available=5,
                  valid_until=now + timedelta(days=30), discount_percentage=25),
            Offer(id="offer-last-seat", course_id=COURSE, offer_code="LASTONE", seats_available=1,
                  valid_until=now + timedelta(days=30)),
            Offer(id="offer-expired", course_id=COURSE, offer_code="OLD", seats_available=10,
                  valid_until=now - timedelta(days=1)),
            Offer(id="offer-go", course_id="course-go", offer_code="GOFAST", seats_available=3,
                  valid_until=now + timedelta(days=3)),
        ]
    )


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def repository():
    return InMemoryRepository(timeout=2)


@pytest.fixture
def service(repository, catalog, offers, publisher):
    return EnrollmentPaymentService(repository, catalog, offers, publisher=publisher)


@pytest.fixture
def sql_repository(tmp_path):
    return SqlRepository(make_session_factory(f"sqlite:///{tmp_path / 'coursepay.db'}", timeout=2))


@pytest.fixture
def sql_service(sql_repository, catalog, offers, publisher):
    return EnrollmentPaymentService(sql_repository, catalog, offers, publisher=publisher)


def _checkout(service, amount="1000", txn="txn-1", enrollment_id=None, student="stu-1", course=COURSE):
    return service.create_payment(
        {
            "student_id": student,
            "course_id": course,
            "amount": amount,
            "payment_method": PaymentMethod.CARD,
            "payment_gateway": "stripe",
            "transaction_id": txn,
            "enrollment_id": enrollment_id,
        }
    )


@pytest.fixture
def verified_payment(service):
    payment = _checkout(service, amount="1000")
    service.apply_gateway_result("txn-1", GatewayOutcome.CONFIRMED)
    return service.verify_payment(payment.id)


@pytest.fixture
def checkout():
    return _checkout
