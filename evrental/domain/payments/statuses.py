from enum import Enum

from evrental.domain.errors import InvalidTransitionError


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    VNPAY = "vnpay"
    PAYOS = "payos"


PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    # a late success webhook may still land after a declined attempt
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING, PaymentStatus.COMPLETED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}


def assert_valid_payment_transition(current: PaymentStatus | str, target: PaymentStatus | str) -> None:
    current = PaymentStatus(current)
    target = PaymentStatus(target)
    if target not in PAYMENT_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot transition payment from {current.value} to {target.value}"
        )
