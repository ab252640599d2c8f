from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from evrental.dependencies import get_booking_engine, get_db_session
from evrental.domain.bookings.service import BookingEngine
from evrental.domain.trust import schemas as trust_schemas
from evrental.domain.trust.service import deposit_multiplier

router = APIRouter()


def _score_response(engine: BookingEngine, customer_id: str, score: int) -> trust_schemas.TrustScoreResponse:
    return trust_schemas.TrustScoreResponse(
        customer_id=customer_id,
        score=score,
        deposit_multiplier=float(deposit_multiplier(score, engine.ledger.policy)),
    )


@router.get("/v1/trust/{customer_id}", response_model=trust_schemas.TrustScoreResponse)
async def read_trust_score(
    customer_id: str,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> trust_schemas.TrustScoreResponse:
    score = await engine.ledger.get_score(session, customer_id)
    return _score_response(engine, customer_id, score)


@router.get("/v1/trust/{customer_id}/history", response_model=list[trust_schemas.TrustHistoryEntry])
async def read_trust_history(
    customer_id: str,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> list[trust_schemas.TrustHistoryEntry]:
    entries = await engine.ledger.history(session, customer_id)
    return [trust_schemas.TrustHistoryEntry.model_validate(entry) for entry in entries]


@router.get("/v1/trust/{customer_id}/risk", response_model=trust_schemas.RiskProfileResponse)
async def read_risk_profile(
    customer_id: str,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> trust_schemas.RiskProfileResponse:
    profile = await engine.ledger.risk_profile(session, customer_id)
    return trust_schemas.RiskProfileResponse.model_validate(profile)


@router.post("/v1/trust/{customer_id}/adjustments", response_model=trust_schemas.TrustScoreResponse)
async def adjust_trust_score(
    customer_id: str,
    request: trust_schemas.TrustAdjustmentRequest,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> trust_schemas.TrustScoreResponse:
    score = await engine.ledger.adjust_manually(
        session,
        customer_id=customer_id,
        delta=request.delta,
        reason=request.reason,
        admin_id=request.admin_id,
    )
    return _score_response(engine, customer_id, score)
