import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import async_sessionmaker

from evrental.domain.bookings.service import BookingEngine

logger = logging.getLogger(__name__)


async def expire_pending_bookings(
    session_factory: async_sessionmaker,
    engine: BookingEngine,
    now: datetime | None = None,
    limit: int = 100,
) -> dict[str, int]:
    """Expire pending bookings whose payment hold has lapsed, one transaction each."""
    async with session_factory() as session:
        booking_ids = await engine.list_expired_holds(session, now=now, limit=limit)

    expired = 0
    failed = 0
    for booking_id in booking_ids:
        try:
            async with session_factory() as session:
                await engine.expire_booking(session, booking_id, now=now)
        except Exception as exc:  # noqa: BLE001
            failed += 1
            logger.warning(
                "booking_expiry_failed",
                extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
            )
            continue
        expired += 1
    if booking_ids:
        logger.info("booking_expiry_sweep", extra={"extra": {"expired": expired, "failed": failed}})
    return {"expired": expired, "failed": failed}
