"""Catalog and offer collaborators consumed by the service, with in-process implementations."""
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Iterable, List

from coursepay.entities import Offer
from coursepay.errors import NotFoundError


class CatalogService(ABC):
    @abstractmethod
    def get_course_modules(self, course_id: str) -> List[str]:
        """Ordered module ids of the course as it is published right now."""


class OfferService(ABC):
    @abstractmethod
    def get_offer(self, offer_id: str) -> Offer:
        ...

    @abstractmethod
    def decrement_offer_seat(self, offer_id: str) -> bool:
        """Take one seat atomically. False when none are left."""

    @abstractmethod
    def release_offer_seat(self, offer_id: str) -> None:
        """Give back a seat taken for an enrollment that was never committed."""


class InMemoryCatalog(CatalogService):
    def __init__(self, courses: Dict[str, Iterable[str]] = None):
        self.courses = {k: list(v) for k, v in (courses or {}).items()}

    def get_course_modules(self, course_id):
        if course_id not in self.courses:
            raise NotFoundError("course", course_id)
        return list(self.courses[course_id])


class InMemoryOfferService(OfferService):
    def __init__(self, offers: Iterable[Offer] = ()):
        self.offers = {o.id: o for o in offers}
        self._lock = threading.Lock()

    def get_offer(self, offer_id):
        with self._lock:
            offer = self.offers.get(offer_id)
        if offer is None:
            raise NotFoundError("offer", offer_id)
        return offer

    def decrement_offer_seat(self, offer_id):
        with self._lock:
            offer = self.offers.get(offer_id)
            if offer is None:
                raise NotFoundError("offer", offer_id)
            if not offer.is_active or offer.seats_available < 1:
                return False
            seats = offer.seats_available - 1
            # the last seat closes the offer
            self.offers[offer_id] = replace(offer, seats_available=seats, is_active=seats > 0)
            return True

    def release_offer_seat(self, offer_id):
        with self._lock:
            offer = self.offers.get(offer_id)
            if offer is None:
                raise NotFoundError("offer", offer_id)
            reopen = offer.seats_available == 0 and not offer.is_active
            self.offers[offer_id] = replace(
                offer,
                seats_available=offer.seats_available + 1,
                is_active=offer.is_active or reopen,
            )
