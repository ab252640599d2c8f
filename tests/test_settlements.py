import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from evrental.domain.bookings.service import as_utc
from evrental.domain.errors import ConflictError, InvalidTransitionError, ValidationError
from evrental.domain.payments import service as payment_service
from evrental.domain.payments.statuses import PaymentStatus
from evrental.domain.settlements.service import get_settlement
from evrental.domain.settlements.statuses import RefundStatus, assert_valid_refund_transition
from evrental.domain.trust.db_models import TrustScoreHistory
from tests.conftest import create_paid_booking, start_paid_rental


async def _completed_with_damage(engine, session, **kwargs):
    """Returned rental with one minor damage, so the settlement stays open."""
    booking = await start_paid_rental(engine, session, **kwargs)
    await engine.report_damage(session, booking.booking_id, severity="MINOR", description="Dented door")
    await engine.complete_rental(session, booking.booking_id, actual_return=as_utc(booking.scheduled_end))
    return booking.booking_id


@pytest.mark.anyio
async def test_settlement_requires_returned_vehicle(async_session_maker, engine):
    async with async_session_maker() as session:
        booking = await create_paid_booking(engine, session)
        with pytest.raises(InvalidTransitionError):
            await engine.settlements.create_settlement(session, booking, as_utc(booking.scheduled_end), [])


@pytest.mark.anyio
async def test_one_settlement_per_booking(async_session_maker, engine):
    async with async_session_maker() as session:
        booking_id = await _completed_with_damage(engine, session)
        booking = await engine.get_booking(session, booking_id)
        with pytest.raises(ConflictError):
            await engine.settlements.create_settlement(session, booking, as_utc(booking.scheduled_end), [])


@pytest.mark.anyio
async def test_finalize_is_idempotent(async_session_maker, engine):
    async with async_session_maker() as session:
        booking_id = await _completed_with_damage(engine, session)
        first = await engine.settlements.finalize(session, booking_id, finalized_by="staff-1")
        finalized_at = first.finalized_at
        again = await engine.settlements.finalize(session, booking_id, finalized_by="staff-2")

        assert again.finalized_by == "staff-1"
        assert again.finalized_at == finalized_at
        history = await engine.ledger.history(session, "cust-1")
        penalties = [entry for entry in history if entry.change_type == "PENALTY"]
        assert len(penalties) == 1


@pytest.mark.anyio
async def test_damage_charges_frozen_after_finalize(async_session_maker, engine):
    async with async_session_maker() as session:
        booking_id = await _completed_with_damage(engine, session)
        with pytest.raises(ValidationError):
            await engine.settlements.add_damage_charge(session, booking_id, Decimal("-1"))

        settlement = await engine.settlements.add_damage_charge(
            session, booking_id, Decimal("4000"), "Missing charging cable"
        )
        assert settlement.damage_charge == Decimal("10000.00")
        assert settlement.damage_description == "Minor damage: Dented door; Missing charging cable"
        assert settlement.deposit_refund_amount == Decimal("140000.00")

        await engine.settlements.finalize(session, booking_id)
        with pytest.raises(InvalidTransitionError):
            await engine.settlements.add_damage_charge(session, booking_id, Decimal("1000"))


@pytest.mark.anyio
async def test_charges_beyond_deposit_need_no_refund(async_session_maker, engine):
    async with async_session_maker() as session:
        await engine.ledger.adjust_manually(
            session, customer_id="cust-1", delta=200, reason="Corporate fleet", admin_id="admin-1"
        )
        booking_id = await _completed_with_damage(engine, session)
        booking = await engine.get_booking(session, booking_id)
        assert booking.deposit_amount == Decimal("0.00")

        settlement = await engine.settlements.add_damage_charge(session, booking_id, Decimal("300000"))
        assert settlement.deposit_refund_amount == Decimal("-306000.00")
        assert settlement.additional_payment_required == Decimal("306000.00")

        settlement = await engine.settlements.finalize(session, booking_id)
        assert settlement.refund_status == RefundStatus.NOT_REQUIRED
        outcome = await engine.settlements.request_refund(session, booking_id)
        assert outcome.scheduled is False
        payment = await payment_service.get_payment(session, booking_id)
        assert payment.status == PaymentStatus.COMPLETED


@pytest.mark.anyio
async def test_refund_requires_finalized_settlement(async_session_maker, engine):
    async with async_session_maker() as session:
        booking_id = await _completed_with_damage(engine, session)
        with pytest.raises(InvalidTransitionError):
            await engine.settlements.request_refund(session, booking_id)


@pytest.mark.anyio
async def test_manual_refund_with_proof(async_session_maker, engine):
    async with async_session_maker() as session:
        booking_id = await _completed_with_damage(engine, session, method="vnpay", transaction_id="14000001")
        await engine.settlements.finalize(session, booking_id)
        outcome = await engine.settlements.request_refund(session, booking_id)
        assert outcome.scheduled is False
        assert outcome.settlement.refund_status == RefundStatus.AWAITING_MANUAL_PROOF

        with pytest.raises(ValidationError):
            await engine.settlements.mark_refund_processed_manually(
                session, booking_id, admin_id="admin-1", proof_reference=" "
            )

        settlement = await engine.settlements.mark_refund_processed_manually(
            session,
            booking_id,
            admin_id="admin-1",
            proof_reference="s3://proofs/bank-transfer-001.pdf",
            notes="Vietcombank transfer",
        )
        assert settlement.refund_status == RefundStatus.PROCESSED
        assert settlement.refund_method == "MANUAL"
        assert settlement.refund_processed_by == "admin-1"
        payment = await payment_service.get_payment(session, booking_id)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refund_id == "s3://proofs/bank-transfer-001.pdf"

        with pytest.raises(InvalidTransitionError):
            await engine.settlements.mark_refund_failed(session, booking_id, "bounced")


@pytest.mark.anyio
async def test_failed_manual_refund_can_be_retried(async_session_maker, engine):
    async with async_session_maker() as session:
        booking_id = await _completed_with_damage(engine, session, method="vnpay", transaction_id="14000002")
        await engine.settlements.finalize(session, booking_id)
        await engine.settlements.request_refund(session, booking_id)

        failed = await engine.settlements.mark_refund_failed(session, booking_id, "Account closed")
        assert failed.refund_status == RefundStatus.FAILED
        assert "Account closed" in failed.refund_notes

        retried = await engine.settlements.request_refund(session, booking_id)
        assert retried.settlement.refund_status == RefundStatus.AWAITING_MANUAL_PROOF


def test_refund_transitions():
    assert_valid_refund_transition("PENDING", "NOT_REQUIRED")
    assert_valid_refund_transition("FAILED", "PROCESSING")
    with pytest.raises(InvalidTransitionError):
        assert_valid_refund_transition("NOT_REQUIRED", "PROCESSING")
    with pytest.raises(InvalidTransitionError):
        assert_valid_refund_transition("PROCESSED", "FAILED")


def _seed_completed(async_session_maker, engine, **kwargs) -> str:
    async def _create() -> str:
        async with async_session_maker() as session:
            return await _completed_with_damage(engine, session, **kwargs)

    return asyncio.run(_create())


def test_settlement_routes_flow(client, async_session_maker, engine):
    booking_id = _seed_completed(async_session_maker, engine, method="vnpay", transaction_id="14000003")

    read = client.get(f"/v1/settlements/{booking_id}")
    assert read.status_code == 200, read.text
    assert read.json()["is_finalized"] is False
    assert Decimal(read.json()["damage_charge"]) == Decimal("6000")

    charged = client.post(
        f"/v1/settlements/{booking_id}/damage-charges",
        json={"amount": "2000", "description": "Floor mats"},
    )
    assert charged.status_code == 200, charged.text
    assert Decimal(charged.json()["deposit_refund_amount"]) == Decimal("142000")

    finalized = client.post(f"/v1/settlements/{booking_id}/finalize", json={"finalized_by": "staff-9"})
    assert finalized.status_code == 200
    assert finalized.json()["finalized_by"] == "staff-9"

    refund = client.post(f"/v1/settlements/{booking_id}/refund")
    assert refund.status_code == 200
    assert refund.json()["scheduled"] is False
    assert refund.json()["settlement"]["refund_status"] == "AWAITING_MANUAL_PROOF"

    manual = client.post(
        f"/v1/settlements/{booking_id}/refund/manual-proof",
        json={"admin_id": "admin-1", "proof_reference": "s3://proofs/42.pdf"},
    )
    assert manual.status_code == 200
    assert manual.json()["refund_status"] == "PROCESSED"

    frozen = client.post(f"/v1/settlements/{booking_id}/damage-charges", json={"amount": "10"})
    assert frozen.status_code == 409
    assert frozen.json()["title"] == "Invalid State Transition"


def test_missing_settlement_is_404(client):
    response = client.get("/v1/settlements/does-not-exist")
    assert response.status_code == 404
    assert response.json()["title"] == "Not Found"


@pytest.mark.anyio
async def test_penalties_reference_the_booking(async_session_maker, engine):
    async with async_session_maker() as session:
        booking_id = await _completed_with_damage(engine, session)
        await engine.settlements.finalize(session, booking_id)
        history = await engine.ledger.history(session, "cust-1")
        penalty = [entry for entry in history if entry.change_type == "PENALTY"][0]
        assert isinstance(penalty, TrustScoreHistory)
        assert penalty.booking_id == booking_id
        assert penalty.change_amount == -10
