import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from evrental.dependencies import (
    get_booking_engine,
    get_contract_generator,
    get_db_session,
    get_gateways,
)
from evrental.domain.bookings import schemas as booking_schemas
from evrental.domain.bookings.service import BookingEngine
from evrental.domain.documents.service import ContractGenerator, generate_contract_for_booking
from evrental.domain.errors import CollaboratorUnavailableError
from evrental.infra.gateways import GatewayError, GatewayRegistry

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/v1/bookings/preview", response_model=booking_schemas.CostBreakdownResponse)
async def preview_booking(
    request: booking_schemas.BookingPreviewRequest,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> booking_schemas.CostBreakdownResponse:
    breakdown = await engine.preview(
        session,
        customer_id=request.customer_id,
        vehicle_id=request.vehicle_id,
        scheduled_start=request.scheduled_start,
        scheduled_end=request.scheduled_end,
        hourly_rate=request.hourly_rate,
        vehicle_price=request.vehicle_price,
    )
    return booking_schemas.CostBreakdownResponse(
        rental_hours=breakdown.rental_hours,
        rental_cost=breakdown.rental_cost,
        trust_score=breakdown.trust_score,
        deposit_multiplier=breakdown.deposit_multiplier,
        deposit_amount=breakdown.deposit_amount,
        service_fee=breakdown.service_fee,
        service_fee_waived=breakdown.service_fee_waived,
        total_amount=breakdown.total_amount,
        available=breakdown.available,
    )


@router.post(
    "/v1/bookings",
    response_model=booking_schemas.BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    request: booking_schemas.BookingCreateRequest,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> booking_schemas.BookingResponse:
    booking = await engine.create_booking(
        session,
        customer_id=request.customer_id,
        vehicle_id=request.vehicle_id,
        scheduled_start=request.scheduled_start,
        scheduled_end=request.scheduled_end,
        hourly_rate=request.hourly_rate,
        vehicle_price=request.vehicle_price,
        payment_method=request.payment_method.value,
    )
    return booking_schemas.BookingResponse.model_validate(booking)


@router.get("/v1/bookings/{booking_id}", response_model=booking_schemas.BookingResponse)
async def get_booking(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> booking_schemas.BookingResponse:
    booking = await engine.get_booking(session, booking_id)
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post(
    "/v1/bookings/{booking_id}/checkout",
    response_model=booking_schemas.CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
)
async def start_checkout(
    booking_id: str,
    request: booking_schemas.CheckoutRequest,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
    gateways: GatewayRegistry = Depends(get_gateways),
) -> booking_schemas.CheckoutResponse:
    booking = await engine.get_booking(session, booking_id)
    try:
        gateway = gateways.get(booking.payment_method)
    except GatewayError as exc:
        raise CollaboratorUnavailableError(str(exc)) from exc
    checkout = await engine.start_checkout(
        session,
        booking_id,
        gateway,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )
    return booking_schemas.CheckoutResponse(
        booking_id=booking_id,
        provider=booking.payment_method,
        checkout_url=checkout.redirect_url,
        reference=checkout.reference,
    )


@router.post(
    "/v1/bookings/{booking_id}/conditions",
    response_model=booking_schemas.ConditionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_condition(
    booking_id: str,
    request: booking_schemas.ConditionRequest,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> booking_schemas.ConditionResponse:
    record = await engine.record_condition(
        session,
        booking_id,
        phase=request.phase,
        photo_ref=request.photo_ref,
        notes=request.notes,
        recorded_by=request.recorded_by,
    )
    return booking_schemas.ConditionResponse.model_validate(record)


@router.post(
    "/v1/bookings/{booking_id}/damages",
    response_model=booking_schemas.DamageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def report_damage(
    booking_id: str,
    request: booking_schemas.DamageRequest,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> booking_schemas.DamageResponse:
    record = await engine.report_damage(
        session,
        booking_id,
        severity=request.severity,
        estimated_cost=request.estimated_cost,
        description=request.description,
    )
    return booking_schemas.DamageResponse.model_validate(record)


@router.post("/v1/bookings/{booking_id}/start", response_model=booking_schemas.BookingResponse)
async def start_rental(
    booking_id: str,
    request: booking_schemas.RentalEventRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> booking_schemas.BookingResponse:
    occurred_at = request.occurred_at if request else None
    booking = await engine.start_rental(session, booking_id, now=occurred_at)
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/v1/bookings/{booking_id}/complete", response_model=booking_schemas.CompletionResponse)
async def complete_rental(
    booking_id: str,
    request: booking_schemas.RentalEventRequest | None = None,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> booking_schemas.CompletionResponse:
    occurred_at = request.occurred_at if request else None
    outcome = await engine.complete_rental(session, booking_id, actual_return=occurred_at)
    return booking_schemas.CompletionResponse(
        booking=booking_schemas.BookingResponse.model_validate(outcome.booking),
        settlement_id=outcome.settlement.settlement_id,
        deposit_refund_amount=outcome.settlement.deposit_refund_amount,
        additional_payment_required=outcome.settlement.additional_payment_required,
        refund_scheduled=outcome.refund_scheduled,
        trust_score=outcome.trust_score,
    )


@router.post("/v1/bookings/{booking_id}/no-show", response_model=booking_schemas.BookingResponse)
async def report_no_show(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
) -> booking_schemas.BookingResponse:
    booking = await engine.report_no_show(session, booking_id)
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/v1/bookings/{booking_id}/contract", response_model=booking_schemas.ContractResponse)
async def generate_contract(
    booking_id: str,
    session: AsyncSession = Depends(get_db_session),
    generator: ContractGenerator = Depends(get_contract_generator),
) -> booking_schemas.ContractResponse:
    reference = await generate_contract_for_booking(session, generator, booking_id)
    return booking_schemas.ContractResponse(booking_id=booking_id, document_reference=reference)
