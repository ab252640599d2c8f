from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from evrental.domain.bookings.db_models import Booking, DamageRecord
from evrental.domain.bookings.statuses import BookingStatus
from evrental.domain.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from evrental.domain.payments import service as payment_service
from evrental.domain.payments.statuses import PaymentStatus
from evrental.domain.settlements import refunds
from evrental.domain.settlements.calculator import SettlementCalculator, derive_daily_rate, money
from evrental.domain.settlements.db_models import Settlement
from evrental.domain.settlements.statuses import RefundMethod, RefundStatus, assert_valid_refund_transition
from evrental.domain.trust.service import TrustScoreLedger

logger = logging.getLogger(__name__)

SETTLEABLE_STATUSES = {BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED}
DEFAULT_AUTOMATIC_REFUND_METHODS = frozenset({"stripe", "payos"})


@dataclass(frozen=True)
class RefundRequestOutcome:
    settlement: Settlement
    scheduled: bool


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _append_description(existing: str | None, addition: str | None) -> str | None:
    if not addition:
        return existing
    if not existing:
        return addition
    return f"{existing}; {addition}"


def describe_damages(damages: Sequence[DamageRecord]) -> str | None:
    parts = []
    for damage in damages:
        label = f"{damage.severity.title()} damage"
        parts.append(f"{label}: {damage.description}" if damage.description else label)
    return "; ".join(parts) or None


async def get_settlement(session: AsyncSession, booking_id: str) -> Settlement | None:
    return await session.scalar(select(Settlement).where(Settlement.booking_id == booking_id))


async def lock_settlement(session: AsyncSession, booking_id: str) -> Settlement:
    result = await session.execute(
        select(Settlement).where(Settlement.booking_id == booking_id).with_for_update()
    )
    settlement = result.scalar_one_or_none()
    if settlement is None:
        raise NotFoundError(f"Settlement for booking {booking_id} not found")
    return settlement


class SettlementService:
    def __init__(
        self,
        calculator: SettlementCalculator,
        ledger: TrustScoreLedger,
        *,
        automatic_refund_methods: frozenset[str] = DEFAULT_AUTOMATIC_REFUND_METHODS,
    ) -> None:
        self.calculator = calculator
        self.ledger = ledger
        self.automatic_refund_methods = automatic_refund_methods

    def daily_rate(self, booking: Booking) -> Decimal:
        return derive_daily_rate(booking.rental_cost, booking.scheduled_start, booking.scheduled_end)

    async def create_settlement(
        self,
        session: AsyncSession,
        booking: Booking,
        actual_return: datetime,
        damages: Sequence[DamageRecord],
    ) -> Settlement:
        if BookingStatus(booking.status) not in SETTLEABLE_STATUSES:
            raise InvalidTransitionError(
                f"Booking {booking.booking_id} is {booking.status}; settlement requires a returned vehicle"
            )
        if await get_settlement(session, booking.booking_id) is not None:
            raise ConflictError(f"Settlement already exists for booking {booking.booking_id}")

        damage_charge = self.calculator.damage_charge(damages, self.daily_rate(booking))
        figures = self.calculator.figures(
            hourly_rate=booking.hourly_rate,
            scheduled_return=booking.scheduled_end,
            actual_return=actual_return,
            initial_deposit=booking.deposit_amount,
            damage_charge=damage_charge,
        )
        settlement = Settlement(
            booking_id=booking.booking_id,
            scheduled_return=booking.scheduled_end,
            actual_return=actual_return,
            overtime_hours=figures.overtime_hours,
            overtime_fee=figures.overtime_fee,
            damage_charge=figures.damage_charge,
            damage_description=describe_damages(damages),
            initial_deposit=money(booking.deposit_amount),
            total_additional_charges=figures.total_additional_charges,
            deposit_refund_amount=figures.deposit_refund_amount,
            additional_payment_required=figures.additional_payment_required,
            is_finalized=False,
            refund_status=RefundStatus.PENDING.value,
        )
        session.add(settlement)
        await session.flush()
        logger.info(
            "settlement_created",
            extra={
                "extra": {
                    "booking_id": booking.booking_id,
                    "overtime_hours": figures.overtime_hours,
                    "overtime_fee": str(figures.overtime_fee),
                    "damage_charge": str(figures.damage_charge),
                    "deposit_refund_amount": str(figures.deposit_refund_amount),
                }
            },
        )
        return settlement

    async def add_damage_charge(
        self,
        session: AsyncSession,
        booking_id: str,
        amount: Decimal,
        description: str | None = None,
        *,
        commit: bool = True,
    ) -> Settlement:
        if Decimal(amount) < 0:
            raise ValidationError("Damage charge cannot be negative")
        settlement = await lock_settlement(session, booking_id)
        if settlement.is_finalized:
            raise InvalidTransitionError("Settlement is finalized; damage charges are frozen")

        figures = self.calculator.refigure(
            initial_deposit=settlement.initial_deposit,
            overtime_hours=settlement.overtime_hours,
            overtime_fee=settlement.overtime_fee,
            damage_charge=Decimal(settlement.damage_charge) + Decimal(amount),
        )
        settlement.damage_charge = figures.damage_charge
        settlement.total_additional_charges = figures.total_additional_charges
        settlement.deposit_refund_amount = figures.deposit_refund_amount
        settlement.additional_payment_required = figures.additional_payment_required
        settlement.damage_description = _append_description(settlement.damage_description, description)
        await session.flush()
        logger.info(
            "settlement_damage_added",
            extra={"extra": {"booking_id": booking_id, "amount": str(amount), "damage_charge": str(settlement.damage_charge)}},
        )
        if commit:
            await session.commit()
        return settlement

    async def finalize(
        self,
        session: AsyncSession,
        booking_id: str,
        finalized_by: str | None = None,
        *,
        commit: bool = True,
    ) -> Settlement:
        settlement = await lock_settlement(session, booking_id)
        if settlement.is_finalized:
            logger.warning("settlement_already_finalized", extra={"extra": {"booking_id": booking_id}})
            return settlement
        booking = await session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")

        settlement.is_finalized = True
        settlement.finalized_at = _now()
        settlement.finalized_by = finalized_by
        if settlement.deposit_refund_amount <= 0:
            settlement.refund_status = RefundStatus.NOT_REQUIRED.value

        await self.ledger.apply_late_return_penalty(
            session, booking.customer_id, booking_id, settlement.overtime_hours
        )
        await self.ledger.apply_damage_penalty(
            session, booking.customer_id, booking_id, Decimal(settlement.damage_charge)
        )
        await session.flush()
        logger.info(
            "settlement_finalized",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "deposit_refund_amount": str(settlement.deposit_refund_amount),
                    "refund_status": settlement.refund_status,
                }
            },
        )
        if commit:
            await session.commit()
        return settlement

    async def request_refund(
        self, session: AsyncSession, booking_id: str, *, commit: bool = True
    ) -> RefundRequestOutcome:
        settlement = await lock_settlement(session, booking_id)
        if not settlement.is_finalized:
            raise InvalidTransitionError("Settlement must be finalized before a refund is requested")
        if settlement.refund_status in {RefundStatus.NOT_REQUIRED, RefundStatus.PROCESSED}:
            return RefundRequestOutcome(settlement=settlement, scheduled=False)

        payment = await payment_service.get_payment(session, booking_id)
        if payment is None:
            raise NotFoundError(f"Payment for booking {booking_id} not found")
        if payment.status != PaymentStatus.COMPLETED or not payment.transaction_id:
            raise InvalidTransitionError("Only a completed payment with a transaction id can be refunded")

        scheduled = False
        if payment.method in self.automatic_refund_methods:
            if settlement.refund_status == RefundStatus.AWAITING_MANUAL_PROOF:
                raise InvalidTransitionError("Refund is already waiting for manual proof")
            await refunds.schedule_deposit_refund(session, settlement)
            scheduled = True
        elif settlement.refund_status != RefundStatus.AWAITING_MANUAL_PROOF:
            assert_valid_refund_transition(settlement.refund_status, RefundStatus.AWAITING_MANUAL_PROOF)
            settlement.refund_status = RefundStatus.AWAITING_MANUAL_PROOF.value
            settlement.refund_method = RefundMethod.MANUAL.value
        await session.flush()
        logger.info(
            "settlement_refund_requested",
            extra={"extra": {"booking_id": booking_id, "method": payment.method, "scheduled": scheduled}},
        )
        if commit:
            await session.commit()
        return RefundRequestOutcome(settlement=settlement, scheduled=scheduled)

    async def mark_refund_processed_manually(
        self,
        session: AsyncSession,
        booking_id: str,
        *,
        admin_id: str,
        proof_reference: str,
        notes: str | None = None,
    ) -> Settlement:
        if not admin_id:
            raise ValidationError("Manual refunds must be attributed to an administrator")
        if not proof_reference or not proof_reference.strip():
            raise ValidationError("A proof-of-refund reference is required")
        settlement = await lock_settlement(session, booking_id)
        if not settlement.is_finalized:
            raise InvalidTransitionError("Settlement must be finalized before a refund is recorded")
        assert_valid_refund_transition(settlement.refund_status, RefundStatus.PROCESSED)

        settlement.refund_status = RefundStatus.PROCESSED.value
        settlement.refund_method = RefundMethod.MANUAL.value
        settlement.refund_proof_reference = proof_reference.strip()
        settlement.refund_notes = _append_description(settlement.refund_notes, notes)
        settlement.refund_processed_at = _now()
        settlement.refund_processed_by = admin_id

        payment = await payment_service.get_payment(session, booking_id)
        if payment is not None and payment.status == PaymentStatus.COMPLETED:
            await payment_service.mark_refunded(
                session, booking_id, proof_reference.strip(), "Deposit refunded manually"
            )
        await session.commit()
        logger.info(
            "settlement_refund_manual",
            extra={"extra": {"booking_id": booking_id, "admin_id": admin_id}},
        )
        return settlement

    async def mark_refund_failed(self, session: AsyncSession, booking_id: str, reason: str) -> Settlement:
        if not reason or not reason.strip():
            raise ValidationError("A failure reason is required")
        settlement = await lock_settlement(session, booking_id)
        assert_valid_refund_transition(settlement.refund_status, RefundStatus.FAILED)
        settlement.refund_status = RefundStatus.FAILED.value
        settlement.refund_notes = _append_description(settlement.refund_notes, reason.strip())
        await session.commit()
        logger.warning(
            "settlement_refund_failed",
            extra={"extra": {"booking_id": booking_id, "reason": reason.strip()}},
        )
        return settlement
