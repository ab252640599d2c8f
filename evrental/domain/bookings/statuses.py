from enum import Enum

from evrental.domain.errors import InvalidTransitionError


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class ConditionPhase(str, Enum):
    PICKUP = "PICKUP"
    RETURN = "RETURN"

    @classmethod
    def from_any_case(cls, value: "ConditionPhase | str") -> "ConditionPhase":
        if isinstance(value, cls):
            return value
        return cls(value.upper())


class DamageSeverity(str, Enum):
    MINOR = "MINOR"
    MODERATE = "MODERATE"
    MAJOR = "MAJOR"


BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.CANCELLED}
    ),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

# Statuses that hold a vehicle for their scheduled window.
BLOCKING_STATUSES = frozenset(
    {BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS}
)
# A payment webhook arriving in one of these is a retry of an already applied confirmation.
CONFIRMED_OR_LATER = frozenset(
    {BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED}
)


def assert_valid_booking_transition(current: BookingStatus | str, target: BookingStatus | str) -> None:
    current = BookingStatus(current)
    target = BookingStatus(target)
    allowed = BOOKING_TRANSITIONS[current]
    if not allowed:
        raise InvalidTransitionError(f"Booking is already in terminal status: {current.value}")
    if target not in allowed:
        raise InvalidTransitionError(
            f"Cannot transition booking from {current.value} to {target.value}"
        )
