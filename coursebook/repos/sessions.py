from __future__ import annotations
import uuid
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Session as SessionModel


async def create_session(
    db: AsyncSession,
    *,
    title: str,
    starts_at: datetime,
    capacity: int,
    price_cents: int = 0,
    currency: str,
    organization_id: uuid.UUID | None = None,
    payout_account_id: str | None = None,
    status: str = "upcoming",
) -> SessionModel:
    s = SessionModel(
        title=title,
        starts_at=starts_at,
        capacity=capacity,
        price_cents=price_cents,
        currency=currency,
        organization_id=organization_id,
        payout_account_id=payout_account_id,
        status=status,
    )
    db.add(s)
    await db.flush()
    return s


async def get_session(db: AsyncSession, session_id: uuid.UUID) -> SessionModel | None:
    res = await db.execute(select(SessionModel).where(SessionModel.id == session_id))
    return res.scalar_one_or_none()
