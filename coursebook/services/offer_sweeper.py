from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import NotFound
from ..models import Signup
from ..observability.metrics import OFFERS_EXPIRED
from .notifier import Notifier, dispatch_after_commit
from .offers import OPEN_STATUSES, PromoteOutcome, expire_lapsed_offers, promote_many
from .tx import begin_locked_tx, lock_session, release_tx

log = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired_count: int
    promoted: list[PromoteOutcome] = field(default_factory=list)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def sweep_expired_offers(
    db: AsyncSession, *, session_id: uuid.UUID, notifier: Notifier | None = None
) -> SweepResult:
    """Reclaim lapsed offers in one session and re-offer the freed spots. Safe to re-run."""
    await begin_locked_tx(db)

    sess = await lock_session(db, session_id)
    if not sess:
        await db.rollback()
        raise NotFound("session")

    events: list[int] = []
    expired = await expire_lapsed_offers(db, sess, now=_now_utc(), events=events)
    if not expired:
        await release_tx(db)
        return SweepResult(expired_count=0)

    await db.commit()
    OFFERS_EXPIRED.inc(len(expired))
    log.info("offers_expired", extra={"session_id": str(session_id), "count": len(expired)})
    await dispatch_after_commit(db, notifier, events)

    result = SweepResult(expired_count=len(expired))
    if sess.status in OPEN_STATUSES:
        result.promoted = await promote_many(db, session_id=session_id, n=len(expired), notifier=notifier)
    return result


async def sweep_all_expired_offers(
    db: AsyncSession, *, batch: int = 100, notifier: Notifier | None = None
) -> int:
    """Sweep every session holding lapsed offers (at most `batch` sessions). Returns offers expired."""
    rows = await db.execute(
        select(Signup.session_id)
        .where(
            Signup.status == "waitlist",
            Signup.offer_status == "pending",
            Signup.offer_expires_at <= _now_utc(),
        )
        .distinct()
        .limit(batch)
    )
    session_ids = list(rows.scalars().all())
    await db.commit()

    total = 0
    for sid in session_ids:
        res = await sweep_expired_offers(db, session_id=sid, notifier=notifier)
        total += res.expired_count
    return total
