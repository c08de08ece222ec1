from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..errors import CapacityBelowConfirmed, InvalidTransition, NotFound
from ..models import Session as SessionModel, Signup
from ..observability.metrics import REFUNDS, SESSIONS_CANCELLED
from ..repos import sessions as sessions_repo
from ..repos import signups as signups_repo
from ..repos.signups import CapacitySnapshot
from .cancellation import refund_key
from .notifier import Notifier, dispatch_after_commit, queue_notice
from .offers import OPEN_STATUSES, promote_many, withdraw_excess_offers
from .payment_processor import PaymentProcessor, PaymentProcessorError
from .signup_state import transition
from .tx import begin_locked_tx, lock_session, release_tx

log = logging.getLogger(__name__)

# 'cancelled' is only reachable through cancel_session
STATUS_TRANSITIONS = {
    ("draft", "upcoming"),
    ("upcoming", "active"),
    ("upcoming", "completed"),
    ("active", "completed"),
}


@dataclass(frozen=True)
class BulkCancellationResult:
    refunds_processed: int
    refunds_failed: int
    notifications_sent: int
    total_refunded_cents: int = 0


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def create_session(
    db: AsyncSession,
    *,
    title: str,
    starts_at: datetime,
    capacity: int,
    price_cents: int = 0,
    currency: str | None = None,
    organization_id: uuid.UUID | None = None,
    payout_account_id: str | None = None,
    status: str = "upcoming",
) -> SessionModel:
    if capacity < 0:
        raise ValueError("capacity must be >= 0")
    if status == "cancelled":
        raise InvalidTransition("cannot create a cancelled session")
    sess = await sessions_repo.create_session(
        db,
        title=title,
        starts_at=starts_at,
        capacity=capacity,
        price_cents=price_cents,
        currency=currency or get_settings().DEFAULT_CURRENCY,
        organization_id=organization_id,
        payout_account_id=payout_account_id,
        status=status,
    )
    await db.commit()
    log.info("session_created", extra={"session_id": str(sess.id), "capacity": capacity})
    return sess


async def get_capacity_snapshot(db: AsyncSession, session_id: uuid.UUID) -> CapacitySnapshot:
    await begin_locked_tx(db)
    sess = await lock_session(db, session_id)
    if not sess:
        await db.rollback()
        raise NotFound("session")
    snap = await signups_repo.read_snapshot(db, sess, now=_now_utc())
    await release_tx(db)
    return snap


async def update_session(
    db: AsyncSession,
    *,
    session_id: uuid.UUID,
    capacity: Optional[int] = None,
    status: Optional[str] = None,
    notifier: Notifier | None = None,
) -> SessionModel:
    """
    Schedule edits:
      - capacity cannot drop below the confirmed count (0 means unlimited)
      - status moves forward only; cancelling goes through cancel_session
      - a cut withdraws live offers that no longer fit, highest position first
      - newly freed spots are offered to the waitlist after commit
    """
    await begin_locked_tx(db)

    sess = await lock_session(db, session_id)
    if not sess:
        await db.rollback()
        raise NotFound("session")
    if sess.status == "cancelled":
        await db.rollback()
        raise InvalidTransition("session is cancelled")

    now = _now_utc()
    before = await signups_repo.read_snapshot(db, sess, now=now)

    if capacity is not None:
        if capacity < 0:
            await db.rollback()
            raise ValueError("capacity must be >= 0")
        if capacity != 0 and capacity < before.confirmed_count:
            await db.rollback()
            raise CapacityBelowConfirmed(f"{before.confirmed_count} confirmed")

    if status is not None and status != sess.status:
        if (sess.status, status) not in STATUS_TRANSITIONS:
            msg = f"{sess.status} -> {status} not allowed"
            await db.rollback()
            raise InvalidTransition(msg)

    if capacity is not None:
        sess.capacity = capacity
    if status is not None:
        sess.status = status
    await db.flush()

    events: list[int] = []
    withdrawn = await withdraw_excess_offers(db, sess, now=now, events=events)
    after = await signups_repo.read_snapshot(db, sess, now=now)
    await db.commit()
    log.info(
        "session_updated",
        extra={
            "session_id": str(session_id),
            "capacity": sess.capacity,
            "status": sess.status,
            "offers_withdrawn": len(withdrawn),
        },
    )
    await dispatch_after_commit(db, notifier, events)

    freed = after.waitlist_count if after.unlimited else (after.available or 0)
    if sess.status in OPEN_STATUSES and freed > 0 and after.waitlist_count > 0:
        await promote_many(db, session_id=session_id, n=freed, notifier=notifier)
        await db.refresh(sess)
        await db.commit()
    return sess


async def _refund_one(processor: PaymentProcessor, signup: Signup) -> Optional[str]:
    try:
        await processor.refund(signup.payment_reference, idempotency_key=refund_key(signup.id))
    except PaymentProcessorError as exc:
        log.error("refund_failed", extra={"signup_id": str(signup.id), "error": str(exc)})
        return str(exc)
    return None


async def cancel_session(
    db: AsyncSession,
    *,
    session_id: uuid.UUID,
    processor: PaymentProcessor,
    notifier: Notifier | None = None,
    reason: str | None = None,
    notify: bool = True,
) -> BulkCancellationResult:
    """
    Cancel a whole session. The status flips first so no new admissions or claims get in,
    then every paid signup is refunded in parallel. Individual refund failures are recorded
    on the signup and counted, and every confirmed/waitlist signup ends session_cancelled.
    Re-running resumes any signups still active, so the operation is idempotent.
    """
    await begin_locked_tx(db)
    sess = await lock_session(db, session_id)
    if not sess:
        await db.rollback()
        raise NotFound("session")

    now = _now_utc()
    if sess.status != "cancelled":
        sess.status = "cancelled"
        sess.cancelled_at = now
        sess.cancellation_reason = reason
        SESSIONS_CANCELLED.inc()
    targets = await signups_repo.list_active(db, session_id)
    await db.commit()

    if not targets:
        log.info("session_cancelled", extra={"session_id": str(session_id), "signups": 0})
        return BulkCancellationResult(refunds_processed=0, refunds_failed=0, notifications_sent=0)

    # external calls only; no transaction is held while the processor works
    paid = [s for s in targets if s.payment_status == "paid" and s.payment_reference]
    errors = await asyncio.gather(*(_refund_one(processor, s) for s in paid))
    refund_errors = {s.id: err for s, err in zip(paid, errors) if err is not None}
    refunded_ids = {s.id for s, err in zip(paid, errors) if err is None}
    REFUNDS.labels(outcome="succeeded").inc(len(refunded_ids))
    REFUNDS.labels(outcome="failed").inc(len(refund_errors))

    await begin_locked_tx(db)
    sess = await lock_session(db, session_id)
    events: list[int] = []
    total_refunded = 0
    for signup in await signups_repo.list_active(db, session_id, for_update=True):
        transition(signup, "session_cancelled", now=now)
        refunded = signup.id in refunded_ids
        if refunded:
            signup.payment_status = "refunded"
            signup.refund_error = None
            total_refunded += signup.amount_cents
        elif signup.id in refund_errors:
            signup.refund_error = refund_errors[signup.id]
        if notify:
            if refunded:
                refund_line = f"Your payment of {signup.amount_cents / 100:.2f} {sess.currency.upper()} has been refunded."
            elif signup.id in refund_errors:
                refund_line = "We could not refund your payment automatically; the organizer will follow up."
            else:
                refund_line = ""
            events.append(
                await queue_notice(db, sess, signup, "session-cancelled", refund_line=refund_line, reason=reason or "")
            )
    await db.commit()

    sent = await dispatch_after_commit(db, notifier, events)
    log.info(
        "session_cancelled",
        extra={
            "session_id": str(session_id),
            "refunds_processed": len(refunded_ids),
            "refunds_failed": len(refund_errors),
            "notifications_sent": sent,
        },
    )
    return BulkCancellationResult(
        refunds_processed=len(refunded_ids),
        refunds_failed=len(refund_errors),
        notifications_sent=sent,
        total_refunded_cents=total_refunded,
    )
