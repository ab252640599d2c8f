"""Pure fee and settlement arithmetic.

Nothing in this module touches storage; callers persist the results on their own
Settlement rows. Amounts are ``Decimal`` rounded half-up to two places.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol

from evrental.domain.policy import BillingPolicy

CENT = Decimal("0.01")
ZERO = Decimal("0")


class DamageLike(Protocol):
    severity: str | None
    estimated_cost: Decimal | None


@dataclass(frozen=True)
class OvertimeResult:
    hours: int
    fee: Decimal


@dataclass(frozen=True)
class SettlementFigures:
    overtime_hours: int
    overtime_fee: Decimal
    damage_charge: Decimal
    total_additional_charges: Decimal
    deposit_refund_amount: Decimal
    additional_payment_required: Decimal


def money(value: Decimal | int | float | str) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _ceil_hours(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / 3600)


def compute_rental_hours(start: datetime, end: datetime) -> int:
    """Whole billable hours between start and end, partial hours rounded up."""
    return max(_ceil_hours(_as_utc(end) - _as_utc(start)), 1)


def compute_rental_cost(hourly_rate: Decimal, start: datetime, end: datetime) -> tuple[int, Decimal]:
    hours = compute_rental_hours(start, end)
    return hours, money(Decimal(hourly_rate) * hours)


def derive_daily_rate(total_rental_cost: Decimal, start: datetime, end: datetime) -> Decimal:
    days = (_as_utc(end) - _as_utc(start)).days + 1
    return Decimal(total_rental_cost) / days


def compute_overtime(
    hourly_rate: Decimal,
    scheduled_return: datetime,
    actual_return: datetime,
    overtime_multiplier: Decimal,
    grace_period_minutes: int,
) -> OvertimeResult:
    late_by = _as_utc(actual_return) - _as_utc(scheduled_return)
    grace = timedelta(minutes=grace_period_minutes)
    if late_by <= grace:
        return OvertimeResult(hours=0, fee=money(ZERO))
    hours = _ceil_hours(late_by - grace)
    fee = Decimal(hourly_rate) * hours * Decimal(overtime_multiplier)
    return OvertimeResult(hours=hours, fee=money(fee))


def compute_damage_charge(
    damages: Iterable[DamageLike],
    daily_rate: Decimal,
    policy: BillingPolicy,
) -> Decimal:
    total = ZERO
    for damage in damages:
        base = Decimal(damage.estimated_cost) if damage.estimated_cost else ZERO
        if base <= 0:
            # unknown severity has no base rate and contributes nothing
            base = Decimal(daily_rate) * policy.damage_base_rate(damage.severity)
        total += base * policy.damage_multiplier(damage.severity)
    return money(total)


def compute_net_settlement(initial_deposit: Decimal, total_additional_charges: Decimal) -> Decimal:
    return money(Decimal(initial_deposit) - Decimal(total_additional_charges))


def split_net_amount(net_amount: Decimal, negligible_threshold: Decimal) -> tuple[Decimal, Decimal]:
    """Return (refund, additional_due) for a signed net settlement amount."""
    if net_amount >= 0:
        return money(net_amount), money(ZERO)
    owed = -net_amount
    if owed < negligible_threshold:
        return money(ZERO), money(ZERO)
    return money(ZERO), money(owed)


def summarize(
    initial_deposit: Decimal,
    overtime: OvertimeResult,
    damage_charge: Decimal,
    negligible_threshold: Decimal,
) -> SettlementFigures:
    total = money(overtime.fee + damage_charge)
    net = compute_net_settlement(initial_deposit, total)
    _, due = split_net_amount(net, negligible_threshold)
    return SettlementFigures(
        overtime_hours=overtime.hours,
        overtime_fee=overtime.fee,
        damage_charge=money(damage_charge),
        total_additional_charges=total,
        deposit_refund_amount=net,
        additional_payment_required=due,
    )


class SettlementCalculator:
    """Binds the configured billing policy to the pure functions above."""

    def __init__(self, policy: BillingPolicy) -> None:
        self.policy = policy

    def overtime(self, hourly_rate: Decimal, scheduled_return: datetime, actual_return: datetime) -> OvertimeResult:
        return compute_overtime(
            hourly_rate,
            scheduled_return,
            actual_return,
            self.policy.overtime_multiplier,
            self.policy.grace_period_minutes,
        )

    def damage_charge(self, damages: Iterable[DamageLike], daily_rate: Decimal) -> Decimal:
        return compute_damage_charge(damages, daily_rate, self.policy)

    def figures(
        self,
        *,
        hourly_rate: Decimal,
        scheduled_return: datetime,
        actual_return: datetime,
        initial_deposit: Decimal,
        damage_charge: Decimal,
    ) -> SettlementFigures:
        overtime = self.overtime(hourly_rate, scheduled_return, actual_return)
        return summarize(initial_deposit, overtime, damage_charge, self.policy.negligible_additional_payment)

    def refigure(self, *, initial_deposit: Decimal, overtime_hours: int, overtime_fee: Decimal, damage_charge: Decimal) -> SettlementFigures:
        overtime = OvertimeResult(hours=overtime_hours, fee=money(overtime_fee))
        return summarize(initial_deposit, overtime, damage_charge, self.policy.negligible_additional_payment)
