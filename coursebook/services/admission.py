from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import CapacityExceeded, NotFound, SessionNotOpen
from ..models import Signup
from ..observability.metrics import SIGNUP_CONFIRMED, SIGNUP_WAITLISTED
from ..repos import signups as signups_repo
from .notifier import Notifier, dispatch_after_commit, queue_notice
from .tx import begin_locked_tx, lock_session, release_tx

log = logging.getLogger(__name__)

OPEN_STATUSES = ("upcoming", "active")

AdmitMode = Literal["auto", "confirm", "queue"]


@dataclass(frozen=True)
class Participant:
    name: str
    email: str
    phone: Optional[str] = None
    user_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class AdmissionResult:
    signup_id: uuid.UUID
    status: str                          # 'confirmed' | 'waitlist'
    waitlist_position: Optional[int]
    cancel_token: str
    duplicate: bool = False              # participant already held an active signup

    @property
    def confirmed(self) -> bool:
        return self.status == "confirmed"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _result(s: Signup, *, duplicate: bool = False) -> AdmissionResult:
    return AdmissionResult(
        signup_id=s.id,
        status=s.status,
        waitlist_position=s.waitlist_position if s.status == "waitlist" else None,
        cancel_token=s.cancel_token,
        duplicate=duplicate,
    )


async def try_admit(
    db: AsyncSession,
    *,
    session_id: uuid.UUID,
    participant: Participant,
    amount_cents: int = 0,
    payment_reference: str | None = None,
    mode: AdmitMode = "auto",
    notify: bool = True,
    notifier: Notifier | None = None,
) -> AdmissionResult:
    """
    Confirm or queue a booking attempt in one transaction under the session row lock.

    mode='auto' confirms when a spot is free and nobody eligible is waiting, otherwise queues.
    mode='confirm' raises CapacityExceeded instead of queueing (used while a payment hold is open).
    mode='queue' always queues.
    Capacity 0 means unlimited: everyone is confirmed unless mode='queue'.
    """
    await begin_locked_tx(db)

    sess = await lock_session(db, session_id)
    if not sess:
        await db.rollback()
        raise NotFound("session")
    if sess.status not in OPEN_STATUSES:
        state = sess.status
        await db.rollback()
        raise SessionNotOpen(state)

    existing = await signups_repo.find_active_for_participant(db, session_id, participant.email)
    if existing:
        result = _result(existing, duplicate=True)
        await release_tx(db)
        return result

    now = _now_utc()
    snap = await signups_repo.read_snapshot(db, sess, now=now)
    # nobody jumps the queue, even when a spot is momentarily free
    queue_ahead = await signups_repo.has_eligible_waiting(db, session_id, now=now)
    can_confirm = snap.unlimited or (snap.has_space and not queue_ahead)

    if mode == "confirm" and not can_confirm:
        await db.rollback()
        log.info("admission_rejected", extra={"session_id": str(session_id), "available": snap.available})
        raise CapacityExceeded(str(session_id))

    confirm = can_confirm and mode != "queue"
    signup = Signup(
        session_id=session_id,
        user_id=participant.user_id,
        participant_name=participant.name,
        participant_email=participant.email.strip(),
        participant_phone=participant.phone,
        status="confirmed" if confirm else "waitlist",
        payment_status="unpaid",
        payment_reference=payment_reference,
        amount_cents=amount_cents,
        waitlist_position=None if confirm else await signups_repo.next_waitlist_position(db, session_id),
        cancel_token=secrets.token_urlsafe(24),
    )
    db.add(signup)
    await db.flush()

    events: list[int] = []
    if notify:
        if confirm:
            events.append(await queue_notice(db, sess, signup, "signup-confirmation"))
        else:
            events.append(await queue_notice(db, sess, signup, "waitlist-joined", position=signup.waitlist_position))

    await db.commit()

    if confirm:
        SIGNUP_CONFIRMED.inc()
        log.info("signup_confirmed", extra={"session_id": str(session_id), "signup_id": str(signup.id)})
    else:
        SIGNUP_WAITLISTED.inc()
        log.info(
            "signup_waitlisted",
            extra={"session_id": str(session_id), "signup_id": str(signup.id), "position": signup.waitlist_position},
        )

    await dispatch_after_commit(db, notifier, events)
    return _result(signup)
