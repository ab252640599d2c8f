from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from evrental.domain.outbox.db_models import OutboxEvent

logger = logging.getLogger(__name__)

PENDING_STATUSES = {"pending", "retry"}

Delivery = Callable[[AsyncSession, dict], Awaitable[tuple[bool, str | None]]]
DeadLetterHook = Callable[[AsyncSession, OutboxEvent], Awaitable[None]]


@dataclass
class OutboxHandlers:
    deliveries: dict[str, Delivery] = field(default_factory=dict)
    dead_letter_hooks: dict[str, DeadLetterHook] = field(default_factory=dict)
    base_backoff_seconds: int = 30
    max_attempts: int = 5


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _backoff_delay(base_seconds: int, attempt: int) -> timedelta:
    delay = base_seconds * max(1, 2 ** max(0, attempt - 1))
    return timedelta(seconds=delay)


async def enqueue_outbox_event(
    session: AsyncSession,
    *,
    kind: str,
    payload: dict,
    dedupe_key: str,
) -> OutboxEvent:
    values = {
        "kind": kind,
        "payload_json": payload,
        "dedupe_key": dedupe_key,
        "status": "pending",
        "attempts": 0,
        "next_attempt_at": _now(),
        "last_error": None,
    }
    bind = session.get_bind()
    dialect = bind.dialect.name if bind else ""
    if dialect == "postgresql":
        stmt = pg_insert(OutboxEvent).values(**values).on_conflict_do_nothing(
            constraint="uq_outbox_dedupe_key"
        )
        await session.execute(stmt)
    else:
        existing = await session.scalar(select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key))
        if existing is not None:
            return existing
        nested = await session.begin_nested()
        session.add(OutboxEvent(**values))
        try:
            await session.flush()
        except IntegrityError:
            await nested.rollback()
        else:
            await nested.commit()
    return await session.scalar(select(OutboxEvent).where(OutboxEvent.dedupe_key == dedupe_key))


async def _deliver_event(session: AsyncSession, event: OutboxEvent, handlers: OutboxHandlers) -> tuple[bool, str | None]:
    delivery = handlers.deliveries.get(event.kind)
    if delivery is None:
        return False, "unknown_kind"
    event_id, kind = event.event_id, event.kind
    try:
        return await delivery(session, event.payload_json or {})
    except Exception as exc:  # noqa: BLE001
        # drop whatever the failed delivery left half-flushed before recording the retry
        await session.rollback()
        await session.refresh(event)
        logger.warning(
            "outbox_delivery_error",
            extra={"extra": {"event_id": event_id, "kind": kind, "reason": type(exc).__name__}},
        )
        return False, type(exc).__name__


async def process_outbox(session: AsyncSession, handlers: OutboxHandlers, *, limit: int = 50) -> dict[str, int]:
    now = _now()
    result = await session.execute(
        select(OutboxEvent.event_id)
        .where(OutboxEvent.status.in_(PENDING_STATUSES), OutboxEvent.next_attempt_at <= now)
        .order_by(OutboxEvent.created_at, OutboxEvent.event_id)
        .limit(limit)
    )
    event_ids = result.scalars().all()
    sent = 0
    dead = 0
    for event_id in event_ids:
        event = await session.get(OutboxEvent, event_id, populate_existing=True)
        if event is None:
            continue
        attempts = (event.attempts or 0) + 1
        delivered, error = await _deliver_event(session, event, handlers)
        event.attempts = attempts
        if delivered:
            event.status = "sent"
            event.next_attempt_at = None
            event.last_error = None
            sent += 1
        else:
            event.last_error = error or "failed"
            if attempts >= handlers.max_attempts:
                event.status = "dead"
                event.next_attempt_at = None
                dead += 1
                hook = handlers.dead_letter_hooks.get(event.kind)
                if hook is not None:
                    await hook(session, event)
                logger.error(
                    "outbox_event_dead",
                    extra={"extra": {"event_id": event.event_id, "kind": event.kind, "error": event.last_error}},
                )
            else:
                event.status = "retry"
                event.next_attempt_at = _now() + _backoff_delay(handlers.base_backoff_seconds, attempts)
        # commit per event so one delivery's outcome is never lost to a later failure
        await session.commit()
    return {"sent": sent, "dead": dead, "pending": len(event_ids) - sent - dead}


async def replay_outbox_event(session: AsyncSession, event: OutboxEvent) -> None:
    event.status = "pending"
    event.attempts = 0
    event.next_attempt_at = _now()
    event.last_error = None
    await session.commit()
