from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from evrental.dependencies import get_booking_engine, get_db_session
from evrental.domain.bookings.service import BookingEngine
from evrental.domain.errors import NotFoundError
from evrental.domain.settlements import schemas as settlement_schemas
from evrental.domain.settlements.service import get_settlement

router = APIRouter()


@router.get("/v1/settlements/{booking_id}", response_model=settlement_schemas.SettlementResponse)
async def read_settlement(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> settlement_schemas.SettlementResponse:
    settlement = await get_settlement(session, booking_id)
    if settlement is None:
        raise NotFoundError(f"Settlement for booking {booking_id} not found")
    return settlement_schemas.SettlementResponse.model_validate(settlement)


@router.post(
    "/v1/settlements/{booking_id}/damage-charges",
    response_model=settlement_schemas.SettlementResponse,
)
async def add_damage_charge(
    booking_id: str,
    request: settlement_schemas.DamageChargeRequest,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> settlement_schemas.SettlementResponse:
    settlement = await engine.settlements.add_damage_charge(
        session, booking_id, request.amount, request.description
    )
    return settlement_schemas.SettlementResponse.model_validate(settlement)


@router.post("/v1/settlements/{booking_id}/finalize", response_model=settlement_schemas.SettlementResponse)
async def finalize_settlement(
    booking_id: str,
    request: settlement_schemas.FinalizeRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> settlement_schemas.SettlementResponse:
    settlement = await engine.settlements.finalize(
        session, booking_id, finalized_by=request.finalized_by if request else None
    )
    return settlement_schemas.SettlementResponse.model_validate(settlement)


@router.post("/v1/settlements/{booking_id}/refund", response_model=settlement_schemas.RefundRequestResponse)
async def request_refund(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> settlement_schemas.RefundRequestResponse:
    outcome = await engine.settlements.request_refund(session, booking_id)
    return settlement_schemas.RefundRequestResponse(
        settlement=settlement_schemas.SettlementResponse.model_validate(outcome.settlement),
        scheduled=outcome.scheduled,
    )


@router.post(
    "/v1/settlements/{booking_id}/refund/manual-proof",
    response_model=settlement_schemas.SettlementResponse,
)
async def record_manual_refund(
    booking_id: str,
    request: settlement_schemas.ManualRefundRequest,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> settlement_schemas.SettlementResponse:
    settlement = await engine.settlements.mark_refund_processed_manually(
        session,
        booking_id,
        admin_id=request.admin_id,
        proof_reference=request.proof_reference,
        notes=request.notes,
    )
    return settlement_schemas.SettlementResponse.model_validate(settlement)


@router.post(
    "/v1/settlements/{booking_id}/refund/failed",
    response_model=settlement_schemas.SettlementResponse,
)
async def record_refund_failure(
    booking_id: str,
    request: settlement_schemas.RefundFailureRequest,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> settlement_schemas.SettlementResponse:
    settlement = await engine.settlements.mark_refund_failed(session, booking_id, request.reason)
    return settlement_schemas.SettlementResponse.model_validate(settlement)
