"""Error types raised by the enrollment/payment core."""


class CoursePayError(Exception):
    """Base class for every failure the core reports to its caller."""


class ValidationError(CoursePayError):
    """Malformed input rejected before any state is touched."""


class DuplicateEnrollmentError(ValidationError):
    pass


class InvalidModuleError(ValidationError):
    """The module is not part of the enrollment's module snapshot."""


class RefundRangeError(ValidationError):
    """Refund amount is larger than the amount that was paid."""


class ConsistencyError(CoursePayError):
    """A cross-entity invariant would be violated; the unit of work is aborted."""


class StateError(CoursePayError):
    """An edge that the lifecycle does not allow from the current state."""


class IllegalTransitionError(StateError):
    pass


class TerminalStateError(StateError):
    pass


class NotVerifiedError(StateError):
    pass


class AlreadyVerifiedError(StateError):
    pass


class ConflictError(CoursePayError):
    """Optimistic write lost a race. Re-read and retry."""


class OfferInvalidError(CoursePayError):
    """Offer is expired, inactive, for another course or out of seats."""


class NotFoundError(CoursePayError):
    def __init__(self, kind: str, key):
        super().__init__(f"{kind} not found: {key}")
        self.kind = kind
        self.key = key


class PersistenceError(CoursePayError):
    """Store failure (connection loss, lock timeout). Nothing was committed."""
