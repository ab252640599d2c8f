from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from evrental.domain.bookings.db_models import Booking, ConditionRecord, DamageRecord, VehicleLock
from evrental.domain.bookings.statuses import (
    BLOCKING_STATUSES,
    CONFIRMED_OR_LATER,
    BookingStatus,
    ConditionPhase,
    DamageSeverity,
    assert_valid_booking_transition,
)
from evrental.domain.errors import (
    CollaboratorError,
    ConflictError,
    InconsistencyError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from evrental.domain.notifications.service import (
    BOOKING_CREATED,
    BOOKING_EXPIRED,
    PAYMENT_SUCCEEDED,
    RENTAL_COMPLETED,
    RENTAL_STARTED,
    Notification,
    NotificationSink,
    dispatch_notifications,
)
from evrental.domain.payments import service as payment_service
from evrental.domain.payments.db_models import Payment
from evrental.domain.payments.statuses import PaymentMethod, PaymentStatus
from evrental.domain.policy import BookingPolicy
from evrental.domain.settlements.calculator import SettlementCalculator, compute_rental_cost, money
from evrental.domain.settlements.db_models import Settlement
from evrental.domain.settlements.service import SettlementService
from evrental.domain.trust.service import TrustScoreLedger, deposit_multiplier
from evrental.infra.db import atomic
from evrental.infra.gateways import CheckoutSession, GatewayError, PaymentGateway
from evrental.infra.metrics import Metrics, metrics as default_metrics

logger = logging.getLogger(__name__)

EXPIRY_REASON = "Payment not completed before the hold expired"
NO_SHOW_REASON = "no_show"


@dataclass(frozen=True)
class CostBreakdown:
    rental_hours: int
    rental_cost: Decimal
    trust_score: int
    deposit_multiplier: Decimal
    deposit_amount: Decimal
    service_fee: Decimal
    service_fee_waived: bool
    total_amount: Decimal
    available: bool = True


@dataclass(frozen=True)
class ConfirmationOutcome:
    booking: Booking
    payment: Payment
    changed: bool
    trust_score: int | None = None


@dataclass(frozen=True)
class CompletionOutcome:
    booking: Booking
    settlement: Settlement
    refund_scheduled: bool
    trust_score: int


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def vehicle_lock_statement(vehicle_id: str):
    return select(VehicleLock).where(VehicleLock.vehicle_id == vehicle_id).with_for_update()


def _lock_booking_statement(booking_id: str):
    return select(Booking).where(Booking.booking_id == booking_id).with_for_update()


class BookingEngine:
    """Owns the booking state machine and every side effect a transition carries.

    Each operation runs in a single database transaction. Notifications are
    collected while the transaction is open and dispatched only after it commits,
    so a customer never hears about a change that was rolled back.
    """

    def __init__(
        self,
        *,
        policy: BookingPolicy,
        ledger: TrustScoreLedger,
        calculator: SettlementCalculator,
        settlements: SettlementService,
        notifier: NotificationSink,
        metrics: Metrics | None = None,
    ) -> None:
        self.policy = policy
        self.ledger = ledger
        self.calculator = calculator
        self.settlements = settlements
        self.notifier = notifier
        self.metrics = metrics or default_metrics

    async def _emit(self, notifications: list[Notification]) -> None:
        if notifications:
            await dispatch_notifications(self.notifier, notifications)

    async def _lock_booking(self, session: AsyncSession, booking_id: str) -> Booking:
        result = await session.execute(_lock_booking_statement(booking_id))
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    async def get_booking(self, session: AsyncSession, booking_id: str) -> Booking:
        booking = await session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    async def _lock_vehicle(self, session: AsyncSession, vehicle_id: str) -> VehicleLock:
        result = await session.execute(vehicle_lock_statement(vehicle_id))
        lock = result.scalar_one_or_none()
        if lock is not None:
            return lock
        nested = await session.begin_nested()
        lock = VehicleLock(vehicle_id=vehicle_id)
        session.add(lock)
        try:
            await session.flush()
        except IntegrityError:
            await nested.rollback()
            result = await session.execute(vehicle_lock_statement(vehicle_id))
            return result.scalar_one()
        await nested.commit()
        return lock

    async def _has_conflict(
        self,
        session: AsyncSession,
        vehicle_id: str,
        start: datetime,
        end: datetime,
    ) -> bool:
        overlapping = await session.scalar(
            select(func.count())
            .select_from(Booking)
            .where(
                Booking.vehicle_id == vehicle_id,
                Booking.status.in_([status.value for status in BLOCKING_STATUSES]),
                Booking.scheduled_start < end,
                Booking.scheduled_end > start,
            )
        )
        return bool(overlapping)

    async def _completed_rentals(self, session: AsyncSession, customer_id: str) -> int:
        count = await session.scalar(
            select(func.count())
            .select_from(Booking)
            .where(Booking.customer_id == customer_id, Booking.status == BookingStatus.COMPLETED.value)
        )
        return int(count or 0)

    def _validate_request(
        self,
        scheduled_start: datetime,
        scheduled_end: datetime,
        hourly_rate: Decimal,
        vehicle_price: Decimal,
        now: datetime,
    ) -> tuple[datetime, datetime]:
        start = as_utc(scheduled_start)
        end = as_utc(scheduled_end)
        if end <= start:
            raise ValidationError("Scheduled end must be after scheduled start")
        if start < now:
            raise ValidationError("Scheduled start cannot be in the past")
        if Decimal(hourly_rate) <= 0:
            raise ValidationError("Hourly rate must be positive")
        if Decimal(vehicle_price) < 0:
            raise ValidationError("Vehicle price cannot be negative")
        return start, end

    async def _price(
        self,
        session: AsyncSession,
        customer_id: str,
        start: datetime,
        end: datetime,
        hourly_rate: Decimal,
        vehicle_price: Decimal,
    ) -> CostBreakdown:
        hours, rental_cost = compute_rental_cost(Decimal(hourly_rate), start, end)
        score = await self.ledger.get_score(session, customer_id)
        multiplier = deposit_multiplier(score, self.ledger.policy)
        deposit = money(Decimal(vehicle_price) * self.policy.deposit_percent * multiplier)
        waived = await self._completed_rentals(session, customer_id) > 0
        fee = money(0) if waived else money(self.policy.service_fee)
        return CostBreakdown(
            rental_hours=hours,
            rental_cost=rental_cost,
            trust_score=score,
            deposit_multiplier=multiplier,
            deposit_amount=deposit,
            service_fee=fee,
            service_fee_waived=waived,
            total_amount=money(rental_cost + deposit + fee),
        )

    async def preview(
        self,
        session: AsyncSession,
        *,
        customer_id: str,
        vehicle_id: str,
        scheduled_start: datetime,
        scheduled_end: datetime,
        hourly_rate: Decimal,
        vehicle_price: Decimal,
        now: datetime | None = None,
    ) -> CostBreakdown:
        start, end = self._validate_request(
            scheduled_start, scheduled_end, hourly_rate, vehicle_price, as_utc(now or _now())
        )
        breakdown = await self._price(session, customer_id, start, end, hourly_rate, vehicle_price)
        available = not await self._has_conflict(session, vehicle_id, start, end)
        return replace(breakdown, available=available)

    async def create_booking(
        self,
        session: AsyncSession,
        *,
        customer_id: str,
        vehicle_id: str,
        scheduled_start: datetime,
        scheduled_end: datetime,
        hourly_rate: Decimal,
        vehicle_price: Decimal,
        payment_method: str,
        now: datetime | None = None,
    ) -> Booking:
        now = as_utc(now or _now())
        if not customer_id or not vehicle_id:
            raise ValidationError("customer_id and vehicle_id are required")
        start, end = self._validate_request(scheduled_start, scheduled_end, hourly_rate, vehicle_price, now)
        try:
            method = PaymentMethod(payment_method)
        except ValueError as exc:
            raise ValidationError(f"Unsupported payment method: {payment_method}") from exc

        async with atomic(session):
            await self._lock_vehicle(session, vehicle_id)
            if await self._has_conflict(session, vehicle_id, start, end):
                raise ConflictError(
                    f"Vehicle {vehicle_id} is already booked for an overlapping window",
                    title="Vehicle Unavailable",
                )
            breakdown = await self._price(session, customer_id, start, end, hourly_rate, vehicle_price)
            booking = Booking(
                customer_id=customer_id,
                vehicle_id=vehicle_id,
                scheduled_start=start,
                scheduled_end=end,
                hourly_rate=money(hourly_rate),
                rental_hours=breakdown.rental_hours,
                rental_cost=breakdown.rental_cost,
                vehicle_price=money(vehicle_price),
                deposit_amount=breakdown.deposit_amount,
                service_fee=breakdown.service_fee,
                total_amount=breakdown.total_amount,
                trust_score_snapshot=breakdown.trust_score,
                payment_method=method.value,
                status=BookingStatus.PENDING.value,
                hold_expires_at=now + timedelta(minutes=self.policy.hold_expiry_minutes),
            )
            session.add(booking)
            await session.flush()
            await payment_service.create_payment(
                session,
                booking_id=booking.booking_id,
                amount=breakdown.total_amount,
                method=method,
            )

        logger.info(
            "booking_created",
            extra={
                "extra": {
                    "booking_id": booking.booking_id,
                    "vehicle_id": vehicle_id,
                    "total_amount": str(booking.total_amount),
                    "method": method.value,
                }
            },
        )
        self.metrics.record_booking("created")
        await self._emit(
            [
                Notification(
                    customer_id,
                    BOOKING_CREATED,
                    {"booking_id": booking.booking_id, "total_amount": str(booking.total_amount)},
                )
            ]
        )
        return booking

    async def start_checkout(
        self,
        session: AsyncSession,
        booking_id: str,
        gateway: PaymentGateway,
        *,
        success_url: str | None = None,
        cancel_url: str | None = None,
        now: datetime | None = None,
    ) -> CheckoutSession:
        booking = await self.get_booking(session, booking_id)
        if booking.status != BookingStatus.PENDING:
            raise InvalidTransitionError(f"Booking is {booking.status}; checkout requires a pending booking")
        if booking.hold_expires_at is not None and as_utc(booking.hold_expires_at) <= as_utc(now or _now()):
            raise InvalidTransitionError("Booking hold has expired")
        payment = await payment_service.get_payment(session, booking_id)
        if payment is None:
            raise InconsistencyError(f"Pending booking {booking_id} has no payment record")

        try:
            checkout = await gateway.create_checkout(
                amount=payment.amount,
                currency=self.policy.currency,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata={"booking_id": booking_id, "payment_id": str(payment.payment_id)},
            )
        except GatewayError as exc:
            logger.warning(
                "checkout_create_failed",
                extra={"extra": {"booking_id": booking_id, "method": booking.payment_method, "reason": str(exc)}},
            )
            raise CollaboratorError(str(exc), title="Payment Gateway Error") from exc

        async with atomic(session):
            await payment_service.reopen_for_retry(session, booking_id, checkout.reference)
        logger.info(
            "checkout_started",
            extra={"extra": {"booking_id": booking_id, "method": booking.payment_method, "reference": checkout.reference}},
        )
        return checkout

    async def confirm_payment(
        self,
        session: AsyncSession,
        booking_id: str,
        transaction_id: str,
        gateway_payload: dict[str, Any] | None = None,
        amount: Decimal | None = None,
    ) -> ConfirmationOutcome:
        notifications: list[Notification] = []
        async with atomic(session):
            booking = await self._lock_booking(session, booking_id)
            status = BookingStatus(booking.status)
            if status in CONFIRMED_OR_LATER:
                payment = await payment_service.get_payment(session, booking_id)
                if payment is None or payment.transaction_id != transaction_id:
                    raise InconsistencyError(
                        f"Booking {booking_id} is {status.value} but the payment carries another transaction id"
                    )
                logger.info(
                    "payment_confirmation_duplicate",
                    extra={"extra": {"booking_id": booking_id, "transaction_id": transaction_id}},
                )
                outcome = ConfirmationOutcome(booking=booking, payment=payment, changed=False)
            else:
                assert_valid_booking_transition(status, BookingStatus.CONFIRMED)
                result = await payment_service.mark_completed(
                    session, booking_id, transaction_id, gateway_payload, amount
                )
                booking.status = BookingStatus.CONFIRMED.value
                booking.hold_expires_at = None
                score = await self.ledger.apply_first_payment_bonus(session, booking.customer_id, booking_id)
                notifications.append(
                    Notification(
                        booking.customer_id,
                        PAYMENT_SUCCEEDED,
                        {"booking_id": booking_id, "transaction_id": transaction_id},
                    )
                )
                outcome = ConfirmationOutcome(
                    booking=booking, payment=result.payment, changed=True, trust_score=score
                )

        if outcome.changed:
            logger.info(
                "booking_confirmed",
                extra={"extra": {"booking_id": booking_id, "transaction_id": transaction_id}},
            )
            self.metrics.record_booking("confirmed")
        await self._emit(notifications)
        return outcome

    async def record_payment_failure(
        self,
        session: AsyncSession,
        booking_id: str,
        gateway_payload: dict[str, Any] | None = None,
    ) -> payment_service.PaymentOutcome | None:
        async with atomic(session):
            booking = await self._lock_booking(session, booking_id)
            if booking.status != BookingStatus.PENDING:
                logger.info(
                    "payment_failure_ignored",
                    extra={"extra": {"booking_id": booking_id, "status": booking.status}},
                )
                return None
            outcome = await payment_service.mark_failed(session, booking_id, gateway_payload)
        self.metrics.record_booking("payment_failed")
        return outcome

    async def record_condition(
        self,
        session: AsyncSession,
        booking_id: str,
        *,
        phase: ConditionPhase | str,
        photo_ref: str,
        notes: str | None = None,
        recorded_by: str | None = None,
    ) -> ConditionRecord:
        try:
            phase = ConditionPhase.from_any_case(phase)
        except ValueError as exc:
            raise ValidationError(f"Unknown condition phase: {phase}") from exc
        if not photo_ref or not photo_ref.strip():
            raise ValidationError("A photo reference is required")

        async with atomic(session):
            booking = await self._lock_booking(session, booking_id)
            if phase == ConditionPhase.PICKUP:
                allowed = {BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS}
            else:
                allowed = {BookingStatus.IN_PROGRESS}
            if BookingStatus(booking.status) not in allowed:
                raise InvalidTransitionError(
                    f"{phase.value.lower()} condition cannot be recorded while booking is {booking.status}"
                )
            record = ConditionRecord(
                booking_id=booking_id,
                phase=phase.value,
                photo_ref=photo_ref.strip(),
                notes=notes,
                recorded_by=recorded_by,
            )
            session.add(record)
            await session.flush()
        logger.info(
            "condition_recorded",
            extra={"extra": {"booking_id": booking_id, "phase": phase.value}},
        )
        return record

    async def _condition_count(self, session: AsyncSession, booking_id: str, phase: ConditionPhase) -> int:
        count = await session.scalar(
            select(func.count())
            .select_from(ConditionRecord)
            .where(ConditionRecord.booking_id == booking_id, ConditionRecord.phase == phase.value)
        )
        return int(count or 0)

    async def _damages(self, session: AsyncSession, booking_id: str) -> list[DamageRecord]:
        result = await session.execute(
            select(DamageRecord)
            .where(DamageRecord.booking_id == booking_id)
            .order_by(DamageRecord.created_at)
        )
        return list(result.scalars().all())

    async def report_damage(
        self,
        session: AsyncSession,
        booking_id: str,
        *,
        severity: DamageSeverity | str,
        estimated_cost: Decimal | None = None,
        description: str | None = None,
    ) -> DamageRecord:
        try:
            if not isinstance(severity, DamageSeverity):
                severity = DamageSeverity(severity.upper())
        except (AttributeError, ValueError) as exc:
            raise ValidationError(f"Unknown damage severity: {severity}") from exc
        if estimated_cost is not None and Decimal(estimated_cost) < 0:
            raise ValidationError("Estimated cost cannot be negative")

        async with atomic(session):
            booking = await self._lock_booking(session, booking_id)
            status = BookingStatus(booking.status)
            if status not in {BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED}:
                raise InvalidTransitionError(f"Damage cannot be reported while booking is {booking.status}")
            record = DamageRecord(
                booking_id=booking_id,
                severity=severity.value,
                estimated_cost=money(estimated_cost) if estimated_cost is not None else None,
                description=description,
            )
            session.add(record)
            await session.flush()
            if status == BookingStatus.COMPLETED:
                # the settlement already exists; fold the new charge into it while it is open
                charge = self.calculator.damage_charge([record], self.settlements.daily_rate(booking))
                await self.settlements.add_damage_charge(
                    session,
                    booking_id,
                    charge,
                    f"{severity.value.title()} damage: {description}" if description else None,
                    commit=False,
                )
        logger.info(
            "damage_reported",
            extra={"extra": {"booking_id": booking_id, "severity": severity.value}},
        )
        return record

    async def start_rental(
        self, session: AsyncSession, booking_id: str, *, now: datetime | None = None
    ) -> Booking:
        now = as_utc(now or _now())
        async with atomic(session):
            booking = await self._lock_booking(session, booking_id)
            assert_valid_booking_transition(booking.status, BookingStatus.IN_PROGRESS)
            if now < as_utc(booking.scheduled_start):
                raise InvalidTransitionError("Rental cannot start before the scheduled start time")
            if await self._condition_count(session, booking_id, ConditionPhase.PICKUP) == 0:
                raise InvalidTransitionError("A pickup condition record is required before the rental starts")
            booking.status = BookingStatus.IN_PROGRESS.value
            booking.picked_up_at = now

        logger.info("rental_started", extra={"extra": {"booking_id": booking_id}})
        self.metrics.record_booking("started")
        await self._emit(
            [Notification(booking.customer_id, RENTAL_STARTED, {"booking_id": booking_id})]
        )
        return booking

    async def complete_rental(
        self,
        session: AsyncSession,
        booking_id: str,
        *,
        actual_return: datetime | None = None,
    ) -> CompletionOutcome:
        actual_return = as_utc(actual_return or _now())
        async with atomic(session):
            booking = await self._lock_booking(session, booking_id)
            assert_valid_booking_transition(booking.status, BookingStatus.COMPLETED)
            if await self._condition_count(session, booking_id, ConditionPhase.RETURN) == 0:
                raise InvalidTransitionError("A return condition record is required before completion")

            damages = await self._damages(session, booking_id)
            booking.returned_at = actual_return
            settlement = await self.settlements.create_settlement(session, booking, actual_return, damages)
            booking.status = BookingStatus.COMPLETED.value
            score = await self.ledger.apply_completion_bonus(session, booking.customer_id, booking_id)

            refund_scheduled = False
            # a reported damage keeps the settlement open for staff review
            if not damages:
                await self.settlements.finalize(session, booking_id, commit=False)
                score = await self.ledger.get_score(session, booking.customer_id)
                refund = await self.settlements.request_refund(session, booking_id, commit=False)
                refund_scheduled = refund.scheduled

        logger.info(
            "rental_completed",
            extra={
                "extra": {
                    "booking_id": booking_id,
                    "overtime_hours": settlement.overtime_hours,
                    "deposit_refund_amount": str(settlement.deposit_refund_amount),
                    "refund_scheduled": refund_scheduled,
                }
            },
        )
        self.metrics.record_booking("completed")
        await self._emit(
            [
                Notification(
                    booking.customer_id,
                    RENTAL_COMPLETED,
                    {
                        "booking_id": booking_id,
                        "deposit_refund_amount": str(settlement.deposit_refund_amount),
                        "additional_payment_required": str(settlement.additional_payment_required),
                    },
                )
            ]
        )
        return CompletionOutcome(
            booking=booking, settlement=settlement, refund_scheduled=refund_scheduled, trust_score=score
        )

    async def expire_booking(
        self, session: AsyncSession, booking_id: str, *, now: datetime | None = None
    ) -> Booking:
        now = as_utc(now or _now())
        async with atomic(session):
            booking = await self._lock_booking(session, booking_id)
            assert_valid_booking_transition(booking.status, BookingStatus.CANCELLED)
            if booking.hold_expires_at is None or as_utc(booking.hold_expires_at) > now:
                raise InvalidTransitionError("Booking hold has not expired yet")
            booking.status = BookingStatus.CANCELLED.value
            booking.cancellation_reason = EXPIRY_REASON
            payment = await payment_service.get_payment(session, booking_id)
            if payment is not None and payment.status == PaymentStatus.PENDING:
                await payment_service.mark_failed(session, booking_id, {"reason": "hold_expired"})

        logger.info("booking_expired", extra={"extra": {"booking_id": booking_id}})
        self.metrics.record_booking("expired")
        await self._emit(
            [Notification(booking.customer_id, BOOKING_EXPIRED, {"booking_id": booking_id})]
        )
        return booking

    async def report_no_show(
        self, session: AsyncSession, booking_id: str, *, now: datetime | None = None
    ) -> Booking:
        now = as_utc(now or _now())
        async with atomic(session):
            booking = await self._lock_booking(session, booking_id)
            if booking.status != BookingStatus.CONFIRMED:
                raise InvalidTransitionError(f"Only confirmed bookings can be marked no-show, not {booking.status}")
            if now < as_utc(booking.scheduled_end):
                raise InvalidTransitionError("The scheduled rental window has not ended yet")
            booking.status = BookingStatus.CANCELLED.value
            booking.cancellation_reason = NO_SHOW_REASON
            await self.ledger.apply_no_show_penalty(session, booking.customer_id, booking_id)

        logger.info("booking_no_show", extra={"extra": {"booking_id": booking_id}})
        self.metrics.record_booking("no_show")
        return booking

    async def list_expired_holds(
        self, session: AsyncSession, *, now: datetime | None = None, limit: int = 100
    ) -> list[str]:
        now = as_utc(now or _now())
        result = await session.execute(
            select(Booking.booking_id)
            .where(
                Booking.status == BookingStatus.PENDING.value,
                Booking.hold_expires_at.is_not(None),
                Booking.hold_expires_at <= now,
            )
            .order_by(Booking.hold_expires_at)
            .limit(limit)
        )
        return list(result.scalars().all())
