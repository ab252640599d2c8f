from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from evrental.domain.outbox.db_models import OutboxEvent
from evrental.domain.outbox.service import OutboxHandlers, enqueue_outbox_event
from evrental.domain.payments import service as payment_service
from evrental.domain.payments.statuses import PaymentStatus
from evrental.domain.settlements.db_models import Settlement
from evrental.domain.settlements.statuses import RefundMethod, RefundStatus
from evrental.infra.gateways import GatewayError, GatewayRegistry
from evrental.infra.metrics import metrics

logger = logging.getLogger(__name__)

DEPOSIT_REFUND_KIND = "deposit_refund"
# Refund states the worker may still act on; anything else was taken over or is done.
DELIVERABLE_STATUSES = {RefundStatus.PENDING, RefundStatus.PROCESSING, RefundStatus.FAILED}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def refund_dedupe_key(booking_id: str) -> str:
    return f"{DEPOSIT_REFUND_KIND}:{booking_id}"


async def _lock_settlement(session: AsyncSession, booking_id: str) -> Settlement | None:
    result = await session.execute(
        select(Settlement).where(Settlement.booking_id == booking_id).with_for_update()
    )
    return result.scalar_one_or_none()


async def schedule_deposit_refund(session: AsyncSession, settlement: Settlement) -> OutboxEvent:
    """Queue the gateway refund; runs inside the caller's transaction."""
    event = await enqueue_outbox_event(
        session,
        kind=DEPOSIT_REFUND_KIND,
        payload={"booking_id": settlement.booking_id, "settlement_id": settlement.settlement_id},
        dedupe_key=refund_dedupe_key(settlement.booking_id),
    )
    if event is not None and event.status == "dead":
        # a staff retry after exhausted attempts revives the same message
        event.status = "pending"
        event.attempts = 0
        event.next_attempt_at = _now()
        event.last_error = None
    logger.info(
        "deposit_refund_scheduled",
        extra={"extra": {"booking_id": settlement.booking_id, "event_status": event.status if event else None}},
    )
    return event


async def deliver_deposit_refund(
    session: AsyncSession, gateways: GatewayRegistry, payload: dict, currency: str
) -> tuple[bool, str | None]:
    booking_id = payload.get("booking_id")
    if not booking_id:
        return False, "missing_booking_id"
    settlement = await _lock_settlement(session, booking_id)
    if settlement is None:
        return False, "settlement_not_found"
    if RefundStatus(settlement.refund_status) not in DELIVERABLE_STATUSES:
        logger.info(
            "deposit_refund_skipped",
            extra={"extra": {"booking_id": booking_id, "refund_status": settlement.refund_status}},
        )
        return True, None
    if settlement.deposit_refund_amount <= 0:
        settlement.refund_status = RefundStatus.NOT_REQUIRED.value
        return True, None

    payment = await payment_service.get_payment(session, booking_id)
    if payment is None or payment.status != PaymentStatus.COMPLETED or not payment.transaction_id:
        return False, "payment_not_refundable"
    try:
        gateway = gateways.get(payment.method)
    except GatewayError:
        return False, "gateway_not_configured"

    settlement.refund_status = RefundStatus.PROCESSING.value
    await session.flush()
    try:
        refund_id = await gateway.refund(
            transaction_id=payment.transaction_id,
            amount=settlement.deposit_refund_amount,
            currency=currency,
            reason=f"Deposit refund for booking {booking_id}",
        )
    except GatewayError as exc:
        settlement.refund_status = RefundStatus.FAILED.value
        settlement.refund_notes = str(exc)
        metrics.record_refund("failed")
        logger.warning(
            "deposit_refund_failed",
            extra={"extra": {"booking_id": booking_id, "method": payment.method, "reason": str(exc)}},
        )
        return False, "gateway_error"

    settlement.refund_status = RefundStatus.PROCESSED.value
    settlement.refund_method = RefundMethod.AUTOMATIC.value
    settlement.refund_transaction_id = refund_id
    settlement.refund_processed_at = _now()
    await payment_service.mark_refunded(session, booking_id, refund_id, "Deposit refund after rental")
    metrics.record_refund("processed")
    logger.info(
        "deposit_refund_processed",
        extra={
            "extra": {
                "booking_id": booking_id,
                "refund_id": refund_id,
                "amount": str(settlement.deposit_refund_amount),
            }
        },
    )
    return True, None


async def hand_over_to_staff(session: AsyncSession, event: OutboxEvent) -> None:
    """Dead-letter hook: after the last attempt the refund waits for manual proof."""
    booking_id = (event.payload_json or {}).get("booking_id")
    if not booking_id:
        return
    settlement = await _lock_settlement(session, booking_id)
    if settlement is None or settlement.refund_status not in {
        RefundStatus.PENDING,
        RefundStatus.PROCESSING,
        RefundStatus.FAILED,
    }:
        return
    settlement.refund_status = RefundStatus.AWAITING_MANUAL_PROOF.value
    settlement.refund_method = RefundMethod.MANUAL.value
    note = f"Automatic refund gave up after {event.attempts} attempt(s): {event.last_error}"
    settlement.refund_notes = f"{settlement.refund_notes}; {note}" if settlement.refund_notes else note
    metrics.record_refund("manual_handover")
    logger.error(
        "deposit_refund_handed_over",
        extra={"extra": {"booking_id": booking_id, "attempts": event.attempts}},
    )


def build_outbox_handlers(gateways: GatewayRegistry, app_settings) -> OutboxHandlers:
    async def _deliver(session: AsyncSession, payload: dict) -> tuple[bool, str | None]:
        return await deliver_deposit_refund(session, gateways, payload, app_settings.currency)

    return OutboxHandlers(
        deliveries={DEPOSIT_REFUND_KIND: _deliver},
        dead_letter_hooks={DEPOSIT_REFUND_KIND: hand_over_to_staff},
        base_backoff_seconds=app_settings.outbox_base_backoff_seconds,
        max_attempts=app_settings.outbox_max_attempts,
    )
