from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from evrental.domain.errors import ConflictError, InconsistencyError, InvalidTransitionError, NotFoundError
from evrental.domain.payments.db_models import Payment
from evrental.domain.payments.statuses import PaymentMethod, PaymentStatus, assert_valid_payment_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentOutcome:
    payment: Payment
    changed: bool


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


async def get_payment(session: AsyncSession, booking_id: str) -> Payment | None:
    return await session.scalar(select(Payment).where(Payment.booking_id == booking_id))


async def get_payment_by_id(session: AsyncSession, payment_id: int) -> Payment | None:
    return await session.get(Payment, payment_id)


async def lock_payment(session: AsyncSession, booking_id: str) -> Payment:
    result = await session.execute(
        select(Payment).where(Payment.booking_id == booking_id).with_for_update()
    )
    payment = result.scalar_one_or_none()
    if payment is None:
        raise NotFoundError(f"Payment for booking {booking_id} not found")
    return payment


async def create_payment(
    session: AsyncSession,
    *,
    booking_id: str,
    amount: Decimal,
    method: PaymentMethod | str,
) -> Payment:
    if await get_payment(session, booking_id) is not None:
        raise ConflictError(f"Payment already exists for booking {booking_id}")
    payment = Payment(
        booking_id=booking_id,
        amount=amount,
        method=PaymentMethod(method).value,
        status=PaymentStatus.PENDING.value,
        attempts=0,
    )
    session.add(payment)
    await session.flush()
    return payment


async def reopen_for_retry(session: AsyncSession, booking_id: str, checkout_reference: str | None) -> Payment:
    """Point the payment at a fresh gateway session, reviving a failed attempt."""
    payment = await lock_payment(session, booking_id)
    if payment.status == PaymentStatus.FAILED:
        assert_valid_payment_transition(payment.status, PaymentStatus.PENDING)
        payment.status = PaymentStatus.PENDING.value
    elif payment.status != PaymentStatus.PENDING:
        raise InvalidTransitionError(f"Payment is {payment.status}; a new checkout cannot be started")
    payment.checkout_reference = checkout_reference
    payment.attempts = (payment.attempts or 0) + 1
    await session.flush()
    return payment


async def mark_completed(
    session: AsyncSession,
    booking_id: str,
    transaction_id: str,
    gateway_payload: dict[str, Any] | None,
    amount: Decimal | None = None,
) -> PaymentOutcome:
    if not transaction_id:
        raise InconsistencyError(f"Completion for booking {booking_id} carries no transaction id")
    payment = await lock_payment(session, booking_id)

    if payment.status in {PaymentStatus.COMPLETED, PaymentStatus.REFUNDED}:
        if payment.transaction_id == transaction_id:
            logger.info(
                "payment_completion_duplicate",
                extra={"extra": {"booking_id": booking_id, "transaction_id": transaction_id}},
            )
            return PaymentOutcome(payment=payment, changed=False)
        raise InconsistencyError(
            f"Payment for booking {booking_id} already completed with a different transaction id"
        )

    if amount is not None and Decimal(amount) != Decimal(payment.amount):
        raise ConflictError(
            f"Paid amount {amount} does not match expected {payment.amount} for booking {booking_id}"
        )

    assert_valid_payment_transition(payment.status, PaymentStatus.COMPLETED)
    payment.status = PaymentStatus.COMPLETED.value
    payment.transaction_id = transaction_id
    payment.gateway_payload = gateway_payload
    payment.paid_at = _now()
    await session.flush()
    logger.info(
        "payment_completed",
        extra={
            "extra": {
                "booking_id": booking_id,
                "payment_id": payment.payment_id,
                "transaction_id": transaction_id,
                "method": payment.method,
            }
        },
    )
    return PaymentOutcome(payment=payment, changed=True)


async def mark_failed(
    session: AsyncSession,
    booking_id: str,
    gateway_payload: dict[str, Any] | None,
) -> PaymentOutcome:
    payment = await lock_payment(session, booking_id)
    if payment.status == PaymentStatus.FAILED:
        return PaymentOutcome(payment=payment, changed=False)
    if payment.status in {PaymentStatus.COMPLETED, PaymentStatus.REFUNDED}:
        raise InvalidTransitionError(
            f"Payment for booking {booking_id} already succeeded and cannot be marked failed"
        )
    assert_valid_payment_transition(payment.status, PaymentStatus.FAILED)
    payment.status = PaymentStatus.FAILED.value
    payment.gateway_payload = gateway_payload
    await session.flush()
    logger.info(
        "payment_failed",
        extra={"extra": {"booking_id": booking_id, "payment_id": payment.payment_id}},
    )
    return PaymentOutcome(payment=payment, changed=True)


async def mark_refunded(
    session: AsyncSession,
    booking_id: str,
    external_refund_id: str,
    reason: str,
) -> PaymentOutcome:
    payment = await lock_payment(session, booking_id)
    if payment.status == PaymentStatus.REFUNDED and payment.refund_id == external_refund_id:
        return PaymentOutcome(payment=payment, changed=False)
    assert_valid_payment_transition(payment.status, PaymentStatus.REFUNDED)
    payment.status = PaymentStatus.REFUNDED.value
    payment.refund_id = external_refund_id
    payment.refund_reason = reason
    payment.refunded_at = _now()
    await session.flush()
    logger.info(
        "payment_refunded",
        extra={"extra": {"booking_id": booking_id, "refund_id": external_refund_id}},
    )
    return PaymentOutcome(payment=payment, changed=True)
