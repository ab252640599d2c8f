from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal


def _decimal(value: float | int | str) -> Decimal:
    return Decimal(str(value))


@dataclass(frozen=True)
class BookingPolicy:
    deposit_percent: Decimal = Decimal("0.3")
    service_fee: Decimal = Decimal("50000")
    hold_expiry_minutes: int = 30
    currency: str = "vnd"

    @classmethod
    def from_settings(cls, app_settings) -> BookingPolicy:
        return cls(
            deposit_percent=_decimal(app_settings.deposit_percent),
            service_fee=_decimal(app_settings.service_fee),
            hold_expiry_minutes=app_settings.hold_expiry_minutes,
            currency=app_settings.currency,
        )


@dataclass(frozen=True)
class BillingPolicy:
    grace_period_minutes: int = 15
    overtime_multiplier: Decimal = Decimal("1.5")
    damage_multipliers: tuple[tuple[str, Decimal], ...] = (
        ("MINOR", Decimal("1.0")),
        ("MODERATE", Decimal("1.2")),
        ("MAJOR", Decimal("1.5")),
    )
    damage_base_rates: tuple[tuple[str, Decimal], ...] = (
        ("MINOR", Decimal("0.1")),
        ("MODERATE", Decimal("0.3")),
        ("MAJOR", Decimal("0.5")),
    )
    negligible_additional_payment: Decimal = Decimal("100")

    def damage_multiplier(self, severity: str | None) -> Decimal:
        return dict(self.damage_multipliers).get((severity or "").upper(), Decimal("1"))

    def damage_base_rate(self, severity: str | None) -> Decimal:
        return dict(self.damage_base_rates).get((severity or "").upper(), Decimal("0"))

    @classmethod
    def from_settings(cls, app_settings) -> BillingPolicy:
        return cls(
            grace_period_minutes=app_settings.overtime_grace_minutes,
            overtime_multiplier=_decimal(app_settings.overtime_multiplier),
            damage_multipliers=(
                ("MINOR", _decimal(app_settings.damage_minor_multiplier)),
                ("MODERATE", _decimal(app_settings.damage_moderate_multiplier)),
                ("MAJOR", _decimal(app_settings.damage_major_multiplier)),
            ),
            damage_base_rates=(
                ("MINOR", _decimal(app_settings.damage_minor_rate)),
                ("MODERATE", _decimal(app_settings.damage_moderate_rate)),
                ("MAJOR", _decimal(app_settings.damage_major_rate)),
            ),
            negligible_additional_payment=_decimal(app_settings.negligible_additional_payment),
        )


@dataclass(frozen=True)
class TrustPolicy:
    initial_score: int = 100
    first_payment_bonus: int = 50
    completion_bonus: int = 10
    no_show_penalty: int = 100
    late_return_penalty_per_hour: int = 5
    minor_damage_penalty: int = 10
    major_damage_penalty: int = 30
    major_damage_threshold: Decimal = Decimal("1000000")
    half_deposit_threshold: int = 200
    waive_deposit_threshold: int = 300

    @classmethod
    def from_settings(cls, app_settings) -> TrustPolicy:
        return cls(
            initial_score=app_settings.trust_initial_score,
            first_payment_bonus=app_settings.trust_first_payment_bonus,
            completion_bonus=app_settings.trust_completion_bonus,
            no_show_penalty=app_settings.trust_no_show_penalty,
            late_return_penalty_per_hour=app_settings.trust_late_return_penalty_per_hour,
            minor_damage_penalty=app_settings.trust_minor_damage_penalty,
            major_damage_penalty=app_settings.trust_major_damage_penalty,
            major_damage_threshold=_decimal(app_settings.trust_major_damage_threshold),
            half_deposit_threshold=app_settings.trust_half_deposit_threshold,
            waive_deposit_threshold=app_settings.trust_waive_deposit_threshold,
        )
