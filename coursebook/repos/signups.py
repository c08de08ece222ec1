from __future__ import annotations
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Session as SessionModel, Signup

ACTIVE_STATUSES = ("confirmed", "waitlist")
TERMINAL_STATUSES = ("cancelled", "session_cancelled")
ELIGIBLE_OFFER_STATUSES = ("none", "expired", "skipped")


@dataclass(frozen=True)
class CapacitySnapshot:
    capacity: int
    confirmed_count: int
    pending_offer_count: int
    waitlist_count: int

    @property
    def unlimited(self) -> bool:
        return self.capacity == 0

    @property
    def available(self) -> Optional[int]:
        """Spots free for admission or a new offer; None when capacity is unlimited."""
        if self.unlimited:
            return None
        return max(0, self.capacity - self.confirmed_count - self.pending_offer_count)

    @property
    def has_space(self) -> bool:
        return self.unlimited or (self.available or 0) > 0


async def read_snapshot(db: AsyncSession, sess: SessionModel, *, now: datetime) -> CapacitySnapshot:
    """Fresh aggregate read. Only meaningful while the session row is locked."""
    confirmed = await db.execute(
        select(func.count()).select_from(Signup).where(
            Signup.session_id == sess.id,
            Signup.status == "confirmed",
        )
    )
    pending = await db.execute(
        select(func.count()).select_from(Signup).where(
            Signup.session_id == sess.id,
            Signup.status == "waitlist",
            Signup.offer_status == "pending",
            Signup.offer_expires_at > now,
        )
    )
    waiting = await db.execute(
        select(func.count()).select_from(Signup).where(
            Signup.session_id == sess.id,
            Signup.status == "waitlist",
        )
    )
    return CapacitySnapshot(
        capacity=int(sess.capacity),
        confirmed_count=int(confirmed.scalar_one()),
        pending_offer_count=int(pending.scalar_one()),
        waitlist_count=int(waiting.scalar_one()),
    )


async def next_waitlist_position(db: AsyncSession, session_id: uuid.UUID) -> int:
    """Tail position. Counts every signup ever queued so positions are never reused."""
    max_pos = await db.execute(
        select(func.coalesce(func.max(Signup.waitlist_position), 0)).where(Signup.session_id == session_id)
    )
    return int(max_pos.scalar_one()) + 1


async def has_eligible_waiting(db: AsyncSession, session_id: uuid.UUID, *, now: datetime) -> bool:
    """True if someone queued could still be offered a spot (lapsed offers included)."""
    row = await db.execute(
        select(Signup.id)
        .where(
            Signup.session_id == session_id,
            Signup.status == "waitlist",
            or_(
                Signup.offer_status.in_(ELIGIBLE_OFFER_STATUSES),
                and_(Signup.offer_status == "pending", Signup.offer_expires_at <= now),
            ),
        )
        .limit(1)
    )
    return row.first() is not None


async def waitlist_head(db: AsyncSession, session_id: uuid.UUID) -> Signup | None:
    """Lowest-position entry that does not already hold a live offer."""
    row = await db.execute(
        select(Signup)
        .where(
            Signup.session_id == session_id,
            Signup.status == "waitlist",
            Signup.offer_status.in_(ELIGIBLE_OFFER_STATUSES),
        )
        .order_by(Signup.waitlist_position.asc())
        .limit(1)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return row.scalar_one_or_none()


async def lock_signup(db: AsyncSession, signup_id: uuid.UUID) -> Signup | None:
    row = await db.execute(
        select(Signup)
        .where(Signup.id == signup_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return row.scalar_one_or_none()


async def find_by_claim_token(db: AsyncSession, token: str) -> Signup | None:
    row = await db.execute(select(Signup).where(Signup.offer_claim_token == token))
    return row.scalar_one_or_none()


async def find_active_for_participant(db: AsyncSession, session_id: uuid.UUID, email: str) -> Signup | None:
    row = await db.execute(
        select(Signup).where(
            Signup.session_id == session_id,
            func.lower(Signup.participant_email) == email.strip().lower(),
            Signup.status.in_(ACTIVE_STATUSES),
        )
    )
    return row.scalars().first()


async def list_waitlist(db: AsyncSession, session_id: uuid.UUID) -> list[Signup]:
    rows = await db.execute(
        select(Signup)
        .where(Signup.session_id == session_id, Signup.status == "waitlist")
        .order_by(Signup.waitlist_position.asc())
    )
    return list(rows.scalars().all())


async def list_active(db: AsyncSession, session_id: uuid.UUID, *, for_update: bool = False) -> list[Signup]:
    stmt = (
        select(Signup)
        .where(Signup.session_id == session_id, Signup.status.in_(ACTIVE_STATUSES))
        .order_by(Signup.created_at.asc())
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    rows = await db.execute(stmt)
    return list(rows.scalars().all())
