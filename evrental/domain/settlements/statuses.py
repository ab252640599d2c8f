from enum import Enum

from evrental.domain.errors import InvalidTransitionError


class RefundStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    AWAITING_MANUAL_PROOF = "AWAITING_MANUAL_PROOF"
    NOT_REQUIRED = "NOT_REQUIRED"


class RefundMethod(str, Enum):
    AUTOMATIC = "AUTOMATIC"
    MANUAL = "MANUAL"


REFUND_TRANSITIONS: dict[RefundStatus, frozenset[RefundStatus]] = {
    RefundStatus.PENDING: frozenset(
        {
            RefundStatus.PROCESSING,
            RefundStatus.AWAITING_MANUAL_PROOF,
            RefundStatus.PROCESSED,
            RefundStatus.FAILED,
            RefundStatus.NOT_REQUIRED,
        }
    ),
    RefundStatus.PROCESSING: frozenset(
        {RefundStatus.PROCESSED, RefundStatus.FAILED, RefundStatus.AWAITING_MANUAL_PROOF}
    ),
    RefundStatus.FAILED: frozenset(
        {RefundStatus.PROCESSING, RefundStatus.AWAITING_MANUAL_PROOF, RefundStatus.PROCESSED}
    ),
    RefundStatus.AWAITING_MANUAL_PROOF: frozenset({RefundStatus.PROCESSED, RefundStatus.FAILED}),
    RefundStatus.PROCESSED: frozenset(),
    RefundStatus.NOT_REQUIRED: frozenset(),
}


def assert_valid_refund_transition(current: RefundStatus | str, target: RefundStatus | str) -> None:
    current = RefundStatus(current)
    target = RefundStatus(target)
    if target not in REFUND_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot transition refund from {current.value} to {target.value}"
        )
