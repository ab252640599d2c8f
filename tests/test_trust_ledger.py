from decimal import Decimal

import pytest
from sqlalchemy import func, select

from evrental.domain.errors import NotFoundError, ValidationError
from evrental.domain.policy import TrustPolicy
from evrental.domain.trust.db_models import TrustScoreHistory
from evrental.domain.trust.service import TrustScoreLedger
from evrental.domain.trust.statuses import RiskLevel


@pytest.fixture()
def ledger() -> TrustScoreLedger:
    return TrustScoreLedger(TrustPolicy())


@pytest.mark.anyio
async def test_unknown_customer_scores_zero(async_session_maker, ledger):
    async with async_session_maker() as session:
        assert await ledger.get_score(session, "nobody") == 0
        assert await ledger.history(session, "nobody") == []


@pytest.mark.anyio
async def test_first_payment_creates_record_with_bonus(async_session_maker, ledger):
    async with async_session_maker() as session:
        score = await ledger.apply_first_payment_bonus(session, "cust-1", "booking-1")
        await session.commit()
        assert score == 150

        history = await ledger.history(session, "cust-1")
        assert [entry.change_type for entry in history] == ["INITIAL", "BONUS"]
        assert [entry.new_score for entry in history] == [100, 150]


@pytest.mark.anyio
async def test_first_payment_bonus_applies_once(async_session_maker, ledger):
    async with async_session_maker() as session:
        await ledger.apply_first_payment_bonus(session, "cust-1", "booking-1")
        await session.commit()
        score = await ledger.apply_first_payment_bonus(session, "cust-1", "booking-2")
        await session.commit()

        assert score == 150
        count = await session.scalar(
            select(func.count()).select_from(TrustScoreHistory).where(TrustScoreHistory.customer_id == "cust-1")
        )
        assert count == 2


@pytest.mark.anyio
async def test_history_deltas_sum_to_score(async_session_maker, ledger):
    async with async_session_maker() as session:
        await ledger.apply_first_payment_bonus(session, "cust-1", "b1")
        await ledger.apply_completion_bonus(session, "cust-1", "b1")
        await ledger.apply_late_return_penalty(session, "cust-1", "b1", 2)
        await ledger.apply_damage_penalty(session, "cust-1", "b1", Decimal("6000"))
        await ledger.apply_damage_penalty(session, "cust-1", "b1", Decimal("1500000"))
        await ledger.apply_no_show_penalty(session, "cust-1", "b2")
        await session.commit()

        score = await ledger.get_score(session, "cust-1")
        history = await ledger.history(session, "cust-1")
        # 100 + 50 + 10 - 10 - 10 - 30 - 100
        assert score == 10
        assert sum(entry.change_amount for entry in history) == score
        for previous, current in zip(history, history[1:]):
            assert current.previous_score == previous.new_score


@pytest.mark.anyio
async def test_zero_penalties_are_skipped(async_session_maker, ledger):
    async with async_session_maker() as session:
        await ledger.apply_first_payment_bonus(session, "cust-1", "b1")
        assert await ledger.apply_late_return_penalty(session, "cust-1", "b1", 0) is None
        assert await ledger.apply_damage_penalty(session, "cust-1", "b1", Decimal("0")) is None
        await session.commit()
        assert len(await ledger.history(session, "cust-1")) == 2


@pytest.mark.anyio
async def test_score_may_go_negative(async_session_maker, ledger):
    async with async_session_maker() as session:
        await ledger.apply_no_show_penalty(session, "cust-9", "b1")
        await ledger.apply_no_show_penalty(session, "cust-9", "b2")
        await session.commit()
        assert await ledger.get_score(session, "cust-9") == -100


@pytest.mark.anyio
async def test_manual_adjustment_is_attributed(async_session_maker, ledger):
    async with async_session_maker() as session:
        score = await ledger.adjust_manually(
            session, customer_id="cust-1", delta=120, reason="Verified corporate account", admin_id="admin-7"
        )
        assert score == 220
        last = (await ledger.history(session, "cust-1"))[-1]
        assert last.change_type == "MANUAL_ADJUSTMENT"
        assert last.admin_id == "admin-7"
        assert last.booking_id is None


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("delta", "reason", "admin_id"),
    [(10, "  ", "admin-1"), (10, "reason", ""), (0, "reason", "admin-1")],
)
async def test_manual_adjustment_rejects_bad_input(async_session_maker, ledger, delta, reason, admin_id):
    async with async_session_maker() as session:
        with pytest.raises(ValidationError):
            await ledger.adjust_manually(
                session, customer_id="cust-1", delta=delta, reason=reason, admin_id=admin_id
            )
        assert await ledger.get_score(session, "cust-1") == 0


def test_trust_routes_report_score_and_history(client):
    response = client.post(
        "/v1/trust/cust-5/adjustments",
        json={"delta": 250, "reason": "Loyalty migration", "admin_id": "admin-1"},
    )
    assert response.status_code == 200, response.text
    assert response.json() == {"customer_id": "cust-5", "score": 350, "deposit_multiplier": 0.0}

    score = client.get("/v1/trust/cust-5")
    assert score.json()["score"] == 350

    history = client.get("/v1/trust/cust-5/history")
    assert history.status_code == 200
    assert [entry["change_type"] for entry in history.json()] == ["INITIAL", "MANUAL_ADJUSTMENT"]


def test_trust_adjustment_requires_reason(client):
    response = client.post(
        "/v1/trust/cust-5/adjustments",
        json={"delta": 5, "reason": "   ", "admin_id": "admin-1"},
    )
    assert response.status_code == 422
    assert response.json()["title"] == "Validation Error"


@pytest.mark.anyio
async def test_risk_profile_counts_penalties_by_kind(async_session_maker, ledger):
    async with async_session_maker() as session:
        await ledger.apply_first_payment_bonus(session, "cust-1", "b1")
        await ledger.apply_completion_bonus(session, "cust-1", "b1")
        await ledger.apply_late_return_penalty(session, "cust-1", "b1", 2)
        await ledger.apply_damage_penalty(session, "cust-1", "b1", Decimal("6000"))
        await ledger.apply_damage_penalty(session, "cust-1", "b1", Decimal("1500000"))
        await ledger.apply_no_show_penalty(session, "cust-1", "b2")
        await session.commit()

        history_before = len(await ledger.history(session, "cust-1"))
        profile = await ledger.risk_profile(session, "cust-1")

        assert profile.trust_score == 10
        assert profile.penalty_count == 4
        assert (profile.late_return_count, profile.damage_count, profile.no_show_count) == (1, 2, 1)
        # 50 for a score under 30, 5 per late return, 10 per damage, 15 per no-show
        assert profile.risk_score == 90
        assert profile.risk_level == RiskLevel.CRITICAL
        assert profile.risk_factors[0] == "Very low trust score (<30)"
        assert profile.last_violation_at is not None
        assert len(await ledger.history(session, "cust-1")) == history_before


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("delta", "risk_score", "level"),
    [(50, 0, RiskLevel.LOW), (-35, 10, RiskLevel.LOW), (-55, 30, RiskLevel.MEDIUM), (-80, 50, RiskLevel.HIGH)],
)
async def test_risk_level_follows_score_tiers(async_session_maker, ledger, delta, risk_score, level):
    async with async_session_maker() as session:
        await ledger.adjust_manually(session, customer_id="cust-2", delta=delta, reason="Tier check", admin_id="admin-1")
        profile = await ledger.risk_profile(session, "cust-2")

    assert profile.risk_score == risk_score
    assert profile.risk_level == level
    assert profile.penalty_count == 0
    assert profile.last_violation_at is None


@pytest.mark.anyio
async def test_risk_profile_requires_known_customer(async_session_maker, ledger):
    async with async_session_maker() as session:
        with pytest.raises(NotFoundError):
            await ledger.risk_profile(session, "nobody")


def test_risk_profile_route(client):
    client.post(
        "/v1/trust/cust-6/adjustments",
        json={"delta": -75, "reason": "Chargeback on file", "admin_id": "admin-1"},
    )

    response = client.get("/v1/trust/cust-6/risk")
    assert response.status_code == 200, response.text
    payload = response.json()
    assert payload["trust_score"] == 25
    assert payload["risk_level"] == "HIGH"
    assert payload["risk_factors"] == ["Very low trust score (<30)"]
    assert payload["penalty_count"] == 0

    assert client.get("/v1/trust/nobody/risk").status_code == 404
