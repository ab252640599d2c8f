from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

logger = logging.getLogger(__name__)

BOOKING_CREATED = "created"
PAYMENT_SUCCEEDED = "payment_succeeded"
RENTAL_STARTED = "rental_started"
RENTAL_COMPLETED = "rental_completed"
BOOKING_EXPIRED = "expired"


@dataclass(frozen=True)
class Notification:
    customer_id: str
    event_type: str
    payload: dict[str, Any] = field(default_factory=dict)


class NotificationSink(Protocol):
    async def notify(self, customer_id: str, event_type: str, payload: dict[str, Any]) -> None:
        ...


class LoggingNotificationSink:
    """Default sink: writes each event to the log for a push gateway to tail."""

    async def notify(self, customer_id: str, event_type: str, payload: dict[str, Any]) -> None:
        logger.info(
            "notification_emitted",
            extra={"extra": {"customer_id": customer_id, "event_type": event_type, **payload}},
        )


async def dispatch_notifications(sink: NotificationSink, notifications: Iterable[Notification]) -> int:
    """Deliver after commit; a failing delivery is logged and never propagates."""
    delivered = 0
    for note in notifications:
        try:
            await sink.notify(note.customer_id, note.event_type, dict(note.payload))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "notification_failed",
                extra={
                    "extra": {
                        "customer_id": note.customer_id,
                        "event_type": note.event_type,
                        "reason": type(exc).__name__,
                    }
                },
            )
            continue
        delivered += 1
    return delivered
