from __future__ import annotations

import logging
from typing import Any, Protocol

from sqlalchemy.ext.asyncio import AsyncSession

from evrental.domain.bookings.db_models import Booking
from evrental.domain.errors import CollaboratorUnavailableError, InvalidTransitionError, NotFoundError
from evrental.domain.payments import service as payment_service
from evrental.domain.payments.statuses import PaymentStatus

logger = logging.getLogger(__name__)


class ContractGenerator(Protocol):
    async def generate_and_store(
        self,
        booking_id: str,
        customer_id: str,
        vehicle_id: str,
        payment_snapshot: dict[str, Any],
    ) -> str:
        ...


class UnconfiguredContractGenerator:
    async def generate_and_store(
        self,
        booking_id: str,
        customer_id: str,
        vehicle_id: str,
        payment_snapshot: dict[str, Any],
    ) -> str:
        raise CollaboratorUnavailableError("Contract generation is not configured")


async def generate_contract_for_booking(
    session: AsyncSession, generator: ContractGenerator, booking_id: str
) -> str:
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found")
    payment = await payment_service.get_payment(session, booking_id)
    if payment is None or payment.status not in {PaymentStatus.COMPLETED, PaymentStatus.REFUNDED}:
        raise InvalidTransitionError("A contract can only be generated after the payment succeeded")

    snapshot = {
        "payment_id": payment.payment_id,
        "amount": str(payment.amount),
        "method": payment.method,
        "transaction_id": payment.transaction_id,
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
    }
    reference = await generator.generate_and_store(
        booking.booking_id, booking.customer_id, booking.vehicle_id, snapshot
    )
    logger.info(
        "contract_generated",
        extra={"extra": {"booking_id": booking_id, "document_reference": reference}},
    )
    return reference
