from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from evrental.domain.errors import InconsistencyError, NotFoundError, ValidationError
from evrental.domain.policy import TrustPolicy
from evrental.domain.trust.db_models import TrustScore, TrustScoreHistory
from evrental.domain.trust.statuses import RiskLevel, TrustChangeType

logger = logging.getLogger(__name__)

FULL_DEPOSIT = Decimal("1")
HALF_DEPOSIT = Decimal("0.5")
NO_DEPOSIT = Decimal("0")


@dataclass(frozen=True)
class TrustScoreLookup:
    record: TrustScore
    created: bool


def deposit_multiplier(score: int, policy: TrustPolicy) -> Decimal:
    if score >= policy.waive_deposit_threshold:
        return NO_DEPOSIT
    if score >= policy.half_deposit_threshold:
        return HALF_DEPOSIT
    return FULL_DEPOSIT


@dataclass(frozen=True)
class RiskProfile:
    customer_id: str
    trust_score: int
    risk_score: int
    risk_level: RiskLevel
    risk_factors: list[str] = field(default_factory=list)
    penalty_count: int = 0
    late_return_count: int = 0
    damage_count: int = 0
    no_show_count: int = 0
    last_violation_at: datetime | None = None


def violation_kind(reason: str) -> str:
    lowered = reason.lower()
    if lowered.startswith("no-show"):
        return "no_show"
    if lowered.startswith("late return"):
        return "late_return"
    if "damage" in lowered:
        return "damage"
    return "other"


def trust_risk(score: int) -> tuple[int, str | None]:
    if score < 30:
        return 50, "Very low trust score (<30)"
    if score < 50:
        return 30, "Low trust score (<50)"
    if score < 70:
        return 10, "Below average trust score (<70)"
    return 0, None


def risk_level(risk_score: int) -> RiskLevel:
    if risk_score >= 70:
        return RiskLevel.CRITICAL
    if risk_score >= 50:
        return RiskLevel.HIGH
    if risk_score >= 30:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _lock_statement(customer_id: str):
    return select(TrustScore).where(TrustScore.customer_id == customer_id).with_for_update()


class TrustScoreLedger:
    """Per-customer reputation score with an append-only change history.

    Event methods join the caller's transaction and never commit on their own, so a
    bonus is persisted exactly when the booking change that earned it is.
    """

    def __init__(self, policy: TrustPolicy) -> None:
        self.policy = policy

    async def get_score(self, session: AsyncSession, customer_id: str) -> int:
        score = await session.scalar(
            select(TrustScore.score).where(TrustScore.customer_id == customer_id)
        )
        return int(score) if score is not None else 0

    async def history(self, session: AsyncSession, customer_id: str) -> list[TrustScoreHistory]:
        result = await session.execute(
            select(TrustScoreHistory)
            .where(TrustScoreHistory.customer_id == customer_id)
            .order_by(TrustScoreHistory.history_id)
        )
        return list(result.scalars().all())

    async def risk_profile(self, session: AsyncSession, customer_id: str) -> RiskProfile:
        """Summarize a customer's score and penalty record into a risk level. Read-only."""
        record = await session.get(TrustScore, customer_id)
        if record is None:
            raise NotFoundError(f"No trust score recorded for customer {customer_id}")

        penalties = [
            entry
            for entry in await self.history(session, customer_id)
            if entry.change_type == TrustChangeType.PENALTY.value and entry.change_amount < 0
        ]
        counts = {"late_return": 0, "damage": 0, "no_show": 0, "other": 0}
        for entry in penalties:
            counts[violation_kind(entry.reason)] += 1

        risk_score, factor = trust_risk(record.score)
        factors = [factor] if factor else []
        late_returns = counts["late_return"]
        if late_returns > 3:
            risk_score += 15
            factors.append(f"Multiple late returns ({late_returns} times)")
        elif late_returns:
            risk_score += 5 * late_returns
            factors.append(f"{late_returns} late return(s)")
        damages = counts["damage"]
        if damages > 2:
            risk_score += 20
            factors.append(f"Multiple damages ({damages} times)")
        elif damages:
            risk_score += 10 * damages
            factors.append(f"{damages} damage(s)")
        if counts["no_show"]:
            risk_score += 15 * counts["no_show"]
            factors.append(f"{counts['no_show']} no-show(s)")
        if len(penalties) > 5:
            risk_score += 10
            factors.append(f"Multiple penalties ({len(penalties)} total)")

        return RiskProfile(
            customer_id=customer_id,
            trust_score=record.score,
            risk_score=risk_score,
            risk_level=risk_level(risk_score),
            risk_factors=factors,
            penalty_count=len(penalties),
            late_return_count=late_returns,
            damage_count=damages,
            no_show_count=counts["no_show"],
            last_violation_at=max((entry.created_at for entry in penalties), default=None),
        )

    async def get_or_create(
        self, session: AsyncSession, customer_id: str, booking_id: str | None = None
    ) -> TrustScoreLookup:
        result = await session.execute(_lock_statement(customer_id))
        record = result.scalar_one_or_none()
        if record is not None:
            return TrustScoreLookup(record=record, created=False)

        nested = await session.begin_nested()
        record = TrustScore(
            customer_id=customer_id,
            score=self.policy.initial_score,
            last_booking_id=booking_id,
        )
        session.add(record)
        try:
            await session.flush()
        except IntegrityError:
            # another transaction created the row first
            await nested.rollback()
            result = await session.execute(_lock_statement(customer_id))
            return TrustScoreLookup(record=result.scalar_one(), created=False)

        session.add(
            TrustScoreHistory(
                customer_id=customer_id,
                booking_id=booking_id,
                change_amount=self.policy.initial_score,
                previous_score=0,
                new_score=self.policy.initial_score,
                reason="Initial trust score",
                change_type=TrustChangeType.INITIAL.value,
            )
        )
        await session.flush()
        await nested.commit()
        logger.info(
            "trust_score_initialized",
            extra={"extra": {"customer_id": customer_id, "score": record.score}},
        )
        return TrustScoreLookup(record=record, created=True)

    async def apply_event(
        self,
        session: AsyncSession,
        *,
        customer_id: str,
        booking_id: str | None,
        delta: int,
        reason: str,
        change_type: TrustChangeType,
        admin_id: str | None = None,
    ) -> int:
        try:
            lookup = await self.get_or_create(session, customer_id, booking_id)
            return await self._apply(
                session,
                lookup.record,
                booking_id=booking_id,
                delta=delta,
                reason=reason,
                change_type=change_type,
                admin_id=admin_id,
            )
        except SQLAlchemyError as exc:
            raise InconsistencyError(
                f"Trust score update failed for customer {customer_id}: {type(exc).__name__}"
            ) from exc

    async def _apply(
        self,
        session: AsyncSession,
        record: TrustScore,
        *,
        booking_id: str | None,
        delta: int,
        reason: str,
        change_type: TrustChangeType,
        admin_id: str | None = None,
    ) -> int:
        previous = record.score
        record.score = previous + delta
        if booking_id:
            record.last_booking_id = booking_id
        session.add(
            TrustScoreHistory(
                customer_id=record.customer_id,
                booking_id=booking_id,
                change_amount=delta,
                previous_score=previous,
                new_score=record.score,
                reason=reason,
                change_type=change_type.value,
                admin_id=admin_id,
            )
        )
        await session.flush()
        logger.info(
            "trust_score_changed",
            extra={
                "extra": {
                    "customer_id": record.customer_id,
                    "booking_id": booking_id,
                    "delta": delta,
                    "score": record.score,
                    "change_type": change_type.value,
                }
            },
        )
        return record.score

    async def apply_first_payment_bonus(self, session: AsyncSession, customer_id: str, booking_id: str) -> int:
        try:
            lookup = await self.get_or_create(session, customer_id, booking_id)
            if lookup.record.score != self.policy.initial_score:
                return lookup.record.score
            return await self._apply(
                session,
                lookup.record,
                booking_id=booking_id,
                delta=self.policy.first_payment_bonus,
                reason="First successful payment",
                change_type=TrustChangeType.BONUS,
            )
        except SQLAlchemyError as exc:
            raise InconsistencyError(
                f"First payment bonus failed for customer {customer_id}: {type(exc).__name__}"
            ) from exc

    async def apply_completion_bonus(self, session: AsyncSession, customer_id: str, booking_id: str) -> int:
        return await self.apply_event(
            session,
            customer_id=customer_id,
            booking_id=booking_id,
            delta=self.policy.completion_bonus,
            reason="Rental completed",
            change_type=TrustChangeType.BONUS,
        )

    async def apply_no_show_penalty(self, session: AsyncSession, customer_id: str, booking_id: str) -> int:
        return await self.apply_event(
            session,
            customer_id=customer_id,
            booking_id=booking_id,
            delta=-self.policy.no_show_penalty,
            reason="No-show for confirmed booking",
            change_type=TrustChangeType.PENALTY,
        )

    async def apply_late_return_penalty(
        self, session: AsyncSession, customer_id: str, booking_id: str, overtime_hours: int
    ) -> int | None:
        if overtime_hours <= 0:
            return None
        return await self.apply_event(
            session,
            customer_id=customer_id,
            booking_id=booking_id,
            delta=-(overtime_hours * self.policy.late_return_penalty_per_hour),
            reason=f"Late return by {overtime_hours} hour(s)",
            change_type=TrustChangeType.PENALTY,
        )

    async def apply_damage_penalty(
        self, session: AsyncSession, customer_id: str, booking_id: str, damage_charge: Decimal
    ) -> int | None:
        if damage_charge <= 0:
            return None
        if damage_charge >= self.policy.major_damage_threshold:
            delta, label = self.policy.major_damage_penalty, "Major"
        else:
            delta, label = self.policy.minor_damage_penalty, "Minor"
        return await self.apply_event(
            session,
            customer_id=customer_id,
            booking_id=booking_id,
            delta=-delta,
            reason=f"{label} damage charge of {damage_charge}",
            change_type=TrustChangeType.PENALTY,
        )

    async def adjust_manually(
        self,
        session: AsyncSession,
        *,
        customer_id: str,
        delta: int,
        reason: str,
        admin_id: str,
    ) -> int:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for manual trust score adjustments")
        if not admin_id:
            raise ValidationError("Manual trust score adjustments require an administrator id")
        if delta == 0:
            raise ValidationError("Adjustment delta must be non-zero")
        new_score = await self.apply_event(
            session,
            customer_id=customer_id,
            booking_id=None,
            delta=delta,
            reason=reason.strip(),
            change_type=TrustChangeType.MANUAL_ADJUSTMENT,
            admin_id=admin_id,
        )
        await session.commit()
        return new_score
