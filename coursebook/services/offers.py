from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..errors import CapacityExceeded, InvalidTransition, NotFound, OfferExpiredOrInvalid
from ..models import Session as SessionModel, Signup
from ..observability.metrics import CLAIMS_LOST_RACE, OFFERS_CLAIMED, OFFERS_SENT, OFFERS_WITHDRAWN
from ..repos import signups as signups_repo
from .notifier import Notifier, dispatch_after_commit, queue_notice
from .signup_state import holds_live_offer, transition
from .tx import begin_locked_tx, lock_session, release_tx

log = logging.getLogger(__name__)

OPEN_STATUSES = ("upcoming", "active")


@dataclass(frozen=True)
class Promoted:
    signup_id: uuid.UUID
    claim_token: str
    expires_at: datetime


@dataclass(frozen=True)
class NoEligibleEntries:
    reason: str  # 'no_capacity' | 'queue_empty' | 'session_not_open'


PromoteOutcome = Union[Promoted, NoEligibleEntries]


@dataclass(frozen=True)
class ClaimResult:
    outcome: str  # 'confirmed' | 'expired' | 'invalid_token'
    signup_id: Optional[uuid.UUID] = None
    session_id: Optional[uuid.UUID] = None

    @property
    def confirmed(self) -> bool:
        return self.outcome == "confirmed"

    def ensure_confirmed(self) -> "ClaimResult":
        if not self.confirmed:
            raise OfferExpiredOrInvalid(self.outcome)
        return self


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def claim_url(token: str) -> str:
    return f"{get_settings().SITE_URL.rstrip('/')}/claim-spot/{token}"


# ---------- helpers that run inside a session-locked transaction ----------

async def expire_lapsed_offers(
    db: AsyncSession, sess: SessionModel, *, now: datetime, events: list[int]
) -> list[Signup]:
    """
    Reclaim pending offers whose window has passed. The entry goes back to the tail of the
    queue with a fresh position (positions only grow, so none is ever reused).
    """
    rows = await db.execute(
        select(Signup)
        .where(
            Signup.session_id == sess.id,
            Signup.status == "waitlist",
            Signup.offer_status == "pending",
            Signup.offer_expires_at <= now,
        )
        .order_by(Signup.waitlist_position.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    lapsed = list(rows.scalars().all())
    for s in lapsed:
        s.offer_status = "expired"
        s.offer_claim_token = None
        s.offer_expires_at = None
        s.waitlist_position = await signups_repo.next_waitlist_position(db, sess.id)
        await db.flush()
        events.append(await queue_notice(db, sess, s, "offer-expired", position=s.waitlist_position))
    return lapsed


async def withdraw_excess_offers(
    db: AsyncSession, sess: SessionModel, *, now: datetime, events: list[int]
) -> list[Signup]:
    """
    After a capacity cut, revoke live offers that no longer fit, latest in the queue first.
    Revoked entries become 'skipped' and keep their position, so they are offered again
    first when space returns.
    """
    snap = await signups_repo.read_snapshot(db, sess, now=now)
    if snap.unlimited:
        return []
    excess = snap.confirmed_count + snap.pending_offer_count - snap.capacity
    if excess <= 0:
        return []

    rows = await db.execute(
        select(Signup)
        .where(
            Signup.session_id == sess.id,
            Signup.status == "waitlist",
            Signup.offer_status == "pending",
            Signup.offer_expires_at > now,
        )
        .order_by(Signup.waitlist_position.desc())
        .limit(excess)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    withdrawn = list(rows.scalars().all())
    for s in withdrawn:
        s.offer_status = "skipped"
        s.offer_claim_token = None
        s.offer_expires_at = None
        await db.flush()
        events.append(await queue_notice(db, sess, s, "offer-withdrawn", position=s.waitlist_position))
        log.info(
            "offer_withdrawn",
            extra={"session_id": str(sess.id), "signup_id": str(s.id), "position": s.waitlist_position},
        )
    OFFERS_WITHDRAWN.inc(len(withdrawn))
    return withdrawn


async def _offer_to(
    db: AsyncSession, sess: SessionModel, signup: Signup, *, now: datetime, events: list[int]
) -> Promoted:
    ttl = timedelta(hours=get_settings().OFFER_TTL_HOURS)
    signup.offer_status = "pending"
    signup.offer_claim_token = secrets.token_urlsafe(32)
    signup.offer_sent_at = now
    signup.offer_expires_at = now + ttl
    await db.flush()

    events.append(
        await queue_notice(
            db,
            sess,
            signup,
            "spot-available",
            claim_url=claim_url(signup.offer_claim_token),
            expires_at=signup.offer_expires_at.isoformat(),
        )
    )
    OFFERS_SENT.inc()
    log.info(
        "offer_sent",
        extra={"session_id": str(sess.id), "signup_id": str(signup.id), "position": signup.waitlist_position},
    )
    return Promoted(signup_id=signup.id, claim_token=signup.offer_claim_token, expires_at=signup.offer_expires_at)


# ---------- public operations ----------

async def promote_many(
    db: AsyncSession,
    *,
    session_id: uuid.UUID,
    n: int,
    notifier: Notifier | None = None,
) -> list[PromoteOutcome]:
    """
    Offer up to n freed spots to the head of the waitlist, one entry at a time.
    Lapsed offers are reclaimed first so they are eligible again in the same pass.
    Stops early with NoEligibleEntries when capacity or the queue runs out.
    """
    await begin_locked_tx(db)

    sess = await lock_session(db, session_id)
    if not sess:
        await db.rollback()
        raise NotFound("session")
    if sess.status not in OPEN_STATUSES:
        await release_tx(db)
        return [NoEligibleEntries("session_not_open")]

    now = _now_utc()
    events: list[int] = []
    await expire_lapsed_offers(db, sess, now=now, events=events)

    outcomes: list[PromoteOutcome] = []
    for _ in range(max(0, n)):
        snap = await signups_repo.read_snapshot(db, sess, now=now)
        if not snap.has_space:
            outcomes.append(NoEligibleEntries("no_capacity"))
            break
        head = await signups_repo.waitlist_head(db, session_id)
        if head is None:
            outcomes.append(NoEligibleEntries("queue_empty"))
            break
        outcomes.append(await _offer_to(db, sess, head, now=now, events=events))

    if not events:
        await release_tx(db)
        return outcomes

    await db.commit()
    await dispatch_after_commit(db, notifier, events)
    return outcomes


async def promote_next(
    db: AsyncSession, *, session_id: uuid.UUID, notifier: Notifier | None = None
) -> PromoteOutcome:
    outcomes = await promote_many(db, session_id=session_id, n=1, notifier=notifier)
    return outcomes[0] if outcomes else NoEligibleEntries("no_capacity")


async def offer_to_signup(
    db: AsyncSession, *, signup_id: uuid.UUID, notifier: Notifier | None = None
) -> Promoted:
    """
    Operator override: offer a spot to one specific waitlist entry. Every other live
    offer in the session is marked skipped, which releases its reservation.
    """
    await begin_locked_tx(db)

    target = await db.get(Signup, signup_id)
    if not target:
        await db.rollback()
        raise NotFound("signup")
    session_id = target.session_id
    sess = await lock_session(db, session_id)
    target = await signups_repo.lock_signup(db, signup_id)
    if sess.status not in OPEN_STATUSES or target.status != "waitlist":
        msg = f"session is {sess.status}" if sess.status not in OPEN_STATUSES else f"signup is {target.status}"
        await db.rollback()
        raise InvalidTransition(msg)

    now = _now_utc()
    if holds_live_offer(target, now):
        live = Promoted(signup_id=target.id, claim_token=target.offer_claim_token, expires_at=target.offer_expires_at)
        await release_tx(db)
        return live

    events: list[int] = []
    await expire_lapsed_offers(db, sess, now=now, events=events)

    others = await db.execute(
        select(Signup)
        .where(
            Signup.session_id == sess.id,
            Signup.status == "waitlist",
            Signup.offer_status == "pending",
            Signup.id != target.id,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    for other in others.scalars().all():
        other.offer_status = "skipped"
        other.offer_claim_token = None
        other.offer_expires_at = None
        log.info("offer_skipped", extra={"session_id": str(sess.id), "signup_id": str(other.id)})
    await db.flush()

    snap = await signups_repo.read_snapshot(db, sess, now=now)
    if not snap.has_space:
        await db.rollback()
        raise CapacityExceeded(str(session_id))

    promoted = await _offer_to(db, sess, target, now=now, events=events)
    await db.commit()
    await dispatch_after_commit(db, notifier, events)
    return promoted


async def claim_offer(
    db: AsyncSession,
    *,
    token: str,
    payment_reference: str | None = None,
    amount_cents: int | None = None,
    notify: bool = True,
    notifier: Notifier | None = None,
) -> ClaimResult:
    """
    Convert a pending offer into a confirmed signup. Expiry is checked by timestamp here,
    whether or not the sweeper has run. The capacity invariant is re-checked under the
    session lock; a claim that loses that race comes back 'expired' and the spot moves on.
    """
    await begin_locked_tx(db)

    found = await signups_repo.find_by_claim_token(db, token)
    if not found:
        await release_tx(db)
        return ClaimResult("invalid_token")

    signup_id, session_id = found.id, found.session_id
    sess = await lock_session(db, session_id)
    signup = await signups_repo.lock_signup(db, signup_id)
    if signup.offer_claim_token != token or signup.status != "waitlist":
        await release_tx(db)
        return ClaimResult("invalid_token", signup_id, session_id)

    now = _now_utc()
    if signup.offer_status != "pending" or not holds_live_offer(signup, now) or sess.status not in OPEN_STATUSES:
        await release_tx(db)
        return ClaimResult("expired", signup_id, session_id)

    snap = await signups_repo.read_snapshot(db, sess, now=now)
    # this offer's own reservation is part of pending_offer_count
    others = snap.confirmed_count + snap.pending_offer_count - 1
    if not snap.unlimited and others >= snap.capacity:
        signup.offer_status = "expired"
        signup.offer_claim_token = None
        signup.offer_expires_at = None
        await db.commit()
        CLAIMS_LOST_RACE.inc()
        log.warning("claim_lost_capacity_race", extra={"session_id": str(sess.id), "signup_id": str(signup.id)})
        await promote_next(db, session_id=session_id, notifier=notifier)
        return ClaimResult("expired", signup_id, session_id)

    transition(signup, "confirmed", now=now)
    signup.offer_status = "claimed"
    signup.offer_claim_token = None
    signup.offer_expires_at = None
    if payment_reference is not None:
        signup.payment_reference = payment_reference
    if amount_cents is not None:
        signup.amount_cents = amount_cents
    await db.flush()

    events: list[int] = []
    if notify:
        events.append(await queue_notice(db, sess, signup, "signup-confirmation"))
    await db.commit()

    OFFERS_CLAIMED.inc()
    log.info("offer_claimed", extra={"session_id": str(sess.id), "signup_id": str(signup.id)})
    await dispatch_after_commit(db, notifier, events)
    return ClaimResult("confirmed", signup.id, sess.id)


async def validate_claim_token(db: AsyncSession, token: str) -> Signup:
    """Unlocked pre-check used before opening a payment hold."""
    signup = await signups_repo.find_by_claim_token(db, token)
    if not signup or signup.status != "waitlist":
        raise OfferExpiredOrInvalid("invalid_token")
    await db.refresh(signup)
    if signup.offer_claim_token != token:
        raise OfferExpiredOrInvalid("invalid_token")
    if not holds_live_offer(signup, _now_utc()):
        raise OfferExpiredOrInvalid("expired")
    return signup
