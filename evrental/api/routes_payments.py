from __future__ import annotations

import logging
from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from evrental.dependencies import get_booking_engine, get_db_session, get_gateways
from evrental.domain.bookings.service import BookingEngine
from evrental.domain.errors import DomainError, InconsistencyError
from evrental.domain.payments import service as payment_service
from evrental.domain.payments.statuses import PaymentStatus
from evrental.infra.gateways import (
    OUTCOME_IGNORED,
    OUTCOME_SUCCEEDED,
    GatewayError,
    GatewayEvent,
    GatewayRegistry,
    SignatureError,
)

router = APIRouter()
logger = logging.getLogger(__name__)

VNPAY_SUCCESS = {"RspCode": "00", "Message": "Confirm Success"}
VNPAY_ORDER_NOT_FOUND = {"RspCode": "01", "Message": "Order not found"}
VNPAY_ALREADY_CONFIRMED = {"RspCode": "02", "Message": "Order already confirmed"}
VNPAY_INVALID_AMOUNT = {"RspCode": "04", "Message": "Invalid amount"}
VNPAY_INVALID_SIGNATURE = {"RspCode": "97", "Message": "Invalid signature"}


async def _resolve_booking_id(session: AsyncSession, event: GatewayEvent) -> str | None:
    if event.booking_id:
        return event.booking_id
    if event.payment_id is None:
        return None
    payment = await payment_service.get_payment_by_id(session, event.payment_id)
    return payment.booking_id if payment else None


async def _apply_gateway_event(
    session: AsyncSession,
    engine: BookingEngine,
    gateway_name: str,
    event: GatewayEvent,
) -> bool:
    if event.outcome == OUTCOME_IGNORED:
        logger.info(
            "payment_webhook_ignored",
            extra={"extra": {"gateway": gateway_name, "event_type": event.event_type}},
        )
        engine.metrics.record_webhook(gateway_name, "ignored")
        return False

    booking_id = await _resolve_booking_id(session, event)
    if booking_id is None:
        logger.info(
            "payment_webhook_unmatched",
            extra={"extra": {"gateway": gateway_name, "event_type": event.event_type}},
        )
        engine.metrics.record_webhook(gateway_name, "unmatched")
        return False

    try:
        if event.outcome == OUTCOME_SUCCEEDED:
            outcome = await engine.confirm_payment(
                session,
                booking_id,
                event.transaction_id,
                gateway_payload=event.payload,
                amount=event.amount,
            )
            result = "confirmed" if outcome.changed else "duplicate"
        else:
            await engine.record_payment_failure(session, booking_id, gateway_payload=event.payload)
            result = "failed"
    except InconsistencyError:
        engine.metrics.record_webhook(gateway_name, "inconsistent")
        logger.error(
            "payment_webhook_inconsistent",
            extra={"extra": {"gateway": gateway_name, "booking_id": booking_id}},
        )
        raise
    except DomainError as exc:
        engine.metrics.record_webhook(gateway_name, "rejected")
        logger.warning(
            "payment_webhook_rejected",
            extra={"extra": {"gateway": gateway_name, "booking_id": booking_id, "reason": exc.detail}},
        )
        return False

    engine.metrics.record_webhook(gateway_name, result)
    return result != "duplicate"


@router.post("/v1/payments/stripe/webhook")
async def stripe_webhook(
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
    gateways: GatewayRegistry = Depends(get_gateways),
) -> dict[str, bool]:
    payload = await http_request.body()
    signature = http_request.headers.get("Stripe-Signature")
    try:
        stripe_client = gateways.get("stripe")
    except GatewayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Stripe not configured") from exc

    try:
        event = stripe_client.verify_webhook(payload, signature)
    except Exception as exc:  # noqa: BLE001
        engine.metrics.record_webhook("stripe", "invalid_signature")
        logger.warning("stripe_webhook_invalid", extra={"extra": {"reason": type(exc).__name__}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid Stripe webhook") from exc

    processed = await _apply_gateway_event(session, engine, "stripe", stripe_client.parse_event(event))
    return {"received": True, "processed": processed}


@router.post("/v1/payments/payos/webhook")
async def payos_webhook(
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
    gateways: GatewayRegistry = Depends(get_gateways),
) -> dict[str, bool]:
    body = await http_request.body()
    signature = http_request.headers.get("X-Checksum")
    try:
        payos_client = gateways.get("payos")
    except GatewayError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="PayOS not configured") from exc

    try:
        event = payos_client.verify_webhook(body, signature)
    except GatewayError as exc:
        engine.metrics.record_webhook("payos", "invalid_signature")
        logger.warning("payos_webhook_invalid", extra={"extra": {"reason": str(exc)}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid PayOS webhook") from exc

    processed = await _apply_gateway_event(session, engine, "payos", event)
    return {"received": True, "processed": processed}


@router.get("/v1/payments/vnpay/ipn")
async def vnpay_ipn(
    http_request: Request,
    session: AsyncSession = Depends(get_db_session),
    engine: BookingEngine = Depends(get_booking_engine),
    gateways: GatewayRegistry = Depends(get_gateways),
) -> dict[str, str]:
    params = dict(http_request.query_params)
    try:
        event = gateways.get("vnpay").verify_callback(params)
    except (SignatureError, GatewayError) as exc:
        engine.metrics.record_webhook("vnpay", "invalid_signature")
        logger.warning("vnpay_ipn_invalid", extra={"extra": {"reason": str(exc)}})
        return VNPAY_INVALID_SIGNATURE

    booking_id = event.booking_id
    payment = await payment_service.get_payment(session, booking_id) if booking_id else None
    if payment is None:
        engine.metrics.record_webhook("vnpay", "unmatched")
        return VNPAY_ORDER_NOT_FOUND
    if event.amount is None or Decimal(event.amount) != Decimal(payment.amount):
        engine.metrics.record_webhook("vnpay", "invalid_amount")
        logger.warning(
            "vnpay_ipn_amount_mismatch",
            extra={"extra": {"booking_id": booking_id, "amount": str(event.amount), "expected": str(payment.amount)}},
        )
        return VNPAY_INVALID_AMOUNT
    if payment.status in {PaymentStatus.COMPLETED, PaymentStatus.REFUNDED}:
        engine.metrics.record_webhook("vnpay", "duplicate")
        return VNPAY_ALREADY_CONFIRMED

    processed = await _apply_gateway_event(session, engine, "vnpay", event)
    if not processed and event.outcome == OUTCOME_SUCCEEDED:
        return VNPAY_ALREADY_CONFIRMED
    return VNPAY_SUCCESS
