from __future__ import annotations
import uuid

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from ..models import EventsOutbox


def notification_channel(session_id: uuid.UUID) -> str:
    return f"notify:{session_id}"


async def add_outbox_event(db: AsyncSession, *, channel: str, payload: dict) -> EventsOutbox:
    evt = EventsOutbox(channel=channel, payload=payload)
    db.add(evt)
    # no commit here; caller's transaction should commit
    return evt


async def add_notification(
    db: AsyncSession,
    *,
    session_id: uuid.UUID,
    template: str,
    recipient: str,
    data: dict,
    phone: str | None = None,
) -> EventsOutbox:
    """Queue a participant notification inside the caller's transaction."""
    evt = await add_outbox_event(
        db,
        channel=notification_channel(session_id),
        payload={"template": template, "recipient": recipient, "data": {**data, "phone": phone}},
    )
    await db.flush()  # assigns evt.id so the caller can dispatch it after commit
    return evt


async def outbox_backlog(db: AsyncSession, *, max_attempts: int) -> dict:
    """Undelivered notification rows, split into still-retrying and parked."""
    pending = and_(EventsOutbox.sent_at.is_(None), EventsOutbox.channel.like("notify:%"))
    row = (
        await db.execute(
            select(
                func.count().filter(EventsOutbox.attempts < max_attempts),
                func.count().filter(EventsOutbox.attempts >= max_attempts),
            ).where(pending)
        )
    ).one()
    return {"retrying": int(row[0] or 0), "parked": int(row[1] or 0)}
