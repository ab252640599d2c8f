from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from evrental.domain.policy import BillingPolicy, TrustPolicy
from evrental.domain.settlements import calculator
from evrental.domain.settlements.calculator import SettlementCalculator
from evrental.domain.trust.service import deposit_multiplier

SCHEDULED = datetime(2030, 5, 1, 12, 0, tzinfo=timezone.utc)


def _damage(severity, estimated_cost=None):
    return SimpleNamespace(severity=severity, estimated_cost=estimated_cost)


def test_rental_hours_round_partial_hours_up():
    assert calculator.compute_rental_hours(SCHEDULED, SCHEDULED + timedelta(hours=2, minutes=30)) == 3
    assert calculator.compute_rental_hours(SCHEDULED, SCHEDULED + timedelta(hours=3)) == 3
    assert calculator.compute_rental_hours(SCHEDULED, SCHEDULED + timedelta(minutes=1)) == 1


def test_rental_cost_uses_whole_hours():
    hours, cost = calculator.compute_rental_cost(Decimal("20000"), SCHEDULED, SCHEDULED + timedelta(hours=3))
    assert hours == 3
    assert cost == Decimal("60000.00")


def test_naive_timestamps_are_read_as_utc():
    naive_end = (SCHEDULED + timedelta(hours=2)).replace(tzinfo=None)
    assert calculator.compute_rental_hours(SCHEDULED, naive_end) == 2


@pytest.mark.parametrize(
    ("late_by", "hours", "fee"),
    [
        (timedelta(minutes=-30), 0, Decimal("0.00")),
        (timedelta(minutes=15), 0, Decimal("0.00")),
        (timedelta(minutes=16), 1, Decimal("30000.00")),
        (timedelta(hours=2), 2, Decimal("60000.00")),
    ],
)
def test_overtime_after_grace_period(late_by, hours, fee):
    result = calculator.compute_overtime(
        Decimal("20000"), SCHEDULED, SCHEDULED + late_by, Decimal("1.5"), 15
    )
    assert result.hours == hours
    assert result.fee == fee


def test_damage_charge_prefers_estimate_and_applies_multiplier():
    policy = BillingPolicy()
    charge = calculator.compute_damage_charge(
        [_damage("MAJOR", Decimal("200000")), _damage("minor")],
        Decimal("60000"),
        policy,
    )
    # 200000 * 1.5 + 60000 * 0.1 * 1.0
    assert charge == Decimal("306000.00")


def test_damage_charge_without_estimate_uses_daily_rate():
    charge = calculator.compute_damage_charge([_damage("MODERATE")], Decimal("60000"), BillingPolicy())
    assert charge == Decimal("21600.00")


def test_unknown_severity_without_estimate_contributes_nothing():
    policy = BillingPolicy()
    assert calculator.compute_damage_charge([_damage("SCRATCH")], Decimal("60000"), policy) == Decimal("0.00")
    assert calculator.compute_damage_charge([_damage(None, Decimal("5000"))], Decimal("60000"), policy) == Decimal(
        "5000.00"
    )


def test_daily_rate_counts_started_days():
    assert calculator.derive_daily_rate(Decimal("60000"), SCHEDULED, SCHEDULED + timedelta(hours=3)) == Decimal(
        "60000"
    )
    assert calculator.derive_daily_rate(Decimal("960000"), SCHEDULED, SCHEDULED + timedelta(hours=48)) == Decimal(
        "320000"
    )


def test_net_settlement_sign_gives_direction():
    assert calculator.compute_net_settlement(Decimal("150000"), Decimal("36000")) == Decimal("114000.00")
    assert calculator.compute_net_settlement(Decimal("0"), Decimal("300000")) == Decimal("-300000.00")


def test_split_net_amount_drops_negligible_debt():
    threshold = Decimal("100")
    assert calculator.split_net_amount(Decimal("500"), threshold) == (Decimal("500.00"), Decimal("0.00"))
    assert calculator.split_net_amount(Decimal("-50"), threshold) == (Decimal("0.00"), Decimal("0.00"))
    assert calculator.split_net_amount(Decimal("-150"), threshold) == (Decimal("0.00"), Decimal("150.00"))


def test_figures_keep_refund_equal_to_deposit_minus_charges():
    calc = SettlementCalculator(BillingPolicy())
    figures = calc.figures(
        hourly_rate=Decimal("20000"),
        scheduled_return=SCHEDULED,
        actual_return=SCHEDULED + timedelta(hours=1),
        initial_deposit=Decimal("150000"),
        damage_charge=Decimal("6000"),
    )
    assert figures.overtime_hours == 1
    assert figures.overtime_fee == Decimal("30000.00")
    assert figures.total_additional_charges == Decimal("36000.00")
    assert figures.deposit_refund_amount == Decimal("114000.00")
    assert figures.additional_payment_required == Decimal("0.00")
    assert figures.deposit_refund_amount == Decimal("150000") - (figures.overtime_fee + figures.damage_charge)


def test_figures_when_charges_exceed_deposit():
    calc = SettlementCalculator(BillingPolicy())
    figures = calc.refigure(
        initial_deposit=Decimal("0"),
        overtime_hours=0,
        overtime_fee=Decimal("0"),
        damage_charge=Decimal("300000"),
    )
    assert figures.deposit_refund_amount == Decimal("-300000.00")
    assert figures.additional_payment_required == Decimal("300000.00")


@pytest.mark.parametrize(
    ("score", "multiplier"),
    [(0, Decimal("1")), (150, Decimal("1")), (200, Decimal("0.5")), (299, Decimal("0.5")), (300, Decimal("0")), (850, Decimal("0"))],
)
def test_deposit_multiplier_tiers(score, multiplier):
    assert deposit_multiplier(score, TrustPolicy()) == multiplier


def test_billing_policy_reads_settings():
    app_settings = SimpleNamespace(
        overtime_grace_minutes=30,
        overtime_multiplier=2.0,
        damage_minor_multiplier=1.0,
        damage_moderate_multiplier=1.25,
        damage_major_multiplier=1.75,
        damage_minor_rate=0.1,
        damage_moderate_rate=0.3,
        damage_major_rate=0.5,
        negligible_additional_payment=500,
    )
    policy = BillingPolicy.from_settings(app_settings)
    assert policy.grace_period_minutes == 30
    assert policy.overtime_multiplier == Decimal("2.0")
    assert policy.damage_multiplier("major") == Decimal("1.75")
    assert policy.damage_base_rate("unknown") == Decimal("0")
    assert policy.negligible_additional_payment == Decimal("500")
