from __future__ import annotations

import dataclasses
import hmac
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..errors import AlreadyCancelled, Forbidden, NotFound, RefundFailed
from ..models import Session as SessionModel, Signup
from ..observability.metrics import REFUNDS, SIGNUP_CANCELLED
from ..repos import signups as signups_repo
from .notifier import Notifier, dispatch_after_commit, queue_notice
from .offers import OPEN_STATUSES, PromoteOutcome, promote_next
from .payment_processor import PaymentProcessor, PaymentProcessorError
from .signup_state import ensure_active, holds_live_offer, transition
from .tx import begin_locked_tx, lock_session, release_tx

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Actor:
    kind: Literal["participant", "operator"]
    user_id: Optional[uuid.UUID] = None
    cancel_token: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def operator(cls, user_id: uuid.UUID | None = None, reason: str | None = None) -> "Actor":
        return cls(kind="operator", user_id=user_id, reason=reason)

    @classmethod
    def participant(cls, *, user_id: uuid.UUID | None = None, cancel_token: str | None = None) -> "Actor":
        return cls(kind="participant", user_id=user_id, cancel_token=cancel_token)


@dataclass(frozen=True)
class CancellationResult:
    signup_id: uuid.UUID
    status: str
    refunded: bool
    refund_cents: int = 0
    already_cancelled: bool = False
    promoted: Optional[PromoteOutcome] = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def hours_until(starts_at: datetime, now: datetime) -> float:
    return (starts_at - now).total_seconds() / 3600.0


def refund_eligible(starts_at: datetime, now: datetime) -> bool:
    """Self-cancellations are refunded only with enough notice."""
    return hours_until(starts_at, now) >= get_settings().REFUND_CUTOFF_HOURS


def refund_key(signup_id: uuid.UUID) -> str:
    # shared by single and bulk cancellation so the processor collapses duplicates
    return f"refund:{signup_id}"


def _owns(actor: Actor, signup: Signup) -> bool:
    if actor.user_id is not None and signup.user_id == actor.user_id:
        return True
    if actor.cancel_token:
        return hmac.compare_digest(actor.cancel_token, signup.cancel_token)
    return False


def _append_note(signup: Signup, line: str) -> None:
    signup.note = f"{signup.note}\n{line}" if signup.note else line


def _refund_line(refunded: bool, signup: Signup, sess: SessionModel) -> str:
    if refunded:
        return f"{signup.amount_cents / 100:.2f} {sess.currency.upper()} has been refunded."
    if signup.payment_status == "paid":
        return "No refund was issued."
    return ""


def _late_line(signup: Signup) -> str:
    if signup.payment_status != "paid":
        return ""
    return f"Cancellations less than {get_settings().REFUND_CUTOFF_HOURS} hours before start are not refunded."


async def cancel_signup(
    db: AsyncSession,
    *,
    signup_id: uuid.UUID,
    actor: Actor,
    want_refund: bool = True,
    processor: PaymentProcessor,
    notifier: Notifier | None = None,
) -> CancellationResult:
    """
    Cancel one signup.

    - Participants must own the signup (account id or cancel token); their refund needs
      REFUND_CUTOFF_HOURS notice. Operators choose via want_refund.
    - A failed refund aborts: status and payment_status stay as they were and RefundFailed
      is raised for an operator to retry.
    - Cancelling an already cancelled signup is a no-op that reports the existing state.
    - A freed spot (confirmed seat or live offer) is offered to the waitlist after commit.
    """
    target = await db.get(Signup, signup_id)
    if not target:
        await db.rollback()
        raise NotFound("signup")
    session_id = target.session_id

    await begin_locked_tx(db)
    sess = await lock_session(db, session_id)
    signup = await signups_repo.lock_signup(db, signup_id)

    if actor.kind == "participant" and not _owns(actor, signup):
        await db.rollback()
        raise Forbidden("not your signup")

    try:
        ensure_active(signup)
    except AlreadyCancelled:
        result = CancellationResult(
            signup_id=signup.id,
            status=signup.status,
            refunded=signup.payment_status == "refunded",
            already_cancelled=True,
        )
        await release_tx(db)
        return result

    now = _now_utc()
    if actor.kind == "operator":
        refund_wanted = want_refund
    else:
        refund_wanted = want_refund and refund_eligible(sess.starts_at, now)
    needs_refund = refund_wanted and signup.payment_status == "paid" and bool(signup.payment_reference)

    if needs_refund:
        try:
            await processor.refund(signup.payment_reference, idempotency_key=refund_key(signup.id))
        except PaymentProcessorError as exc:
            signup.refund_error = str(exc)
            await db.commit()
            REFUNDS.labels(outcome="failed").inc()
            log.error(
                "refund_failed",
                extra={"session_id": str(sess.id), "signup_id": str(signup.id), "error": str(exc)},
            )
            raise RefundFailed(signup.id, str(exc)) from exc
        REFUNDS.labels(outcome="succeeded").inc()

    freed_spot = signup.status == "confirmed" or holds_live_offer(signup, now)
    from_status = transition(signup, "cancelled", now=now)
    if needs_refund:
        signup.payment_status = "refunded"
        signup.refund_error = None
    if actor.kind == "operator" and actor.reason:
        _append_note(signup, f"Cancelled by organizer: {actor.reason}")
    await db.flush()

    if actor.kind == "operator":
        event_id = await queue_notice(
            db, sess, signup, "operator-cancellation",
            refund_line=_refund_line(needs_refund, signup, sess), reason=actor.reason or "",
        )
    elif needs_refund:
        event_id = await queue_notice(
            db, sess, signup, "cancellation-refunded",
            amount=f"{signup.amount_cents / 100:.2f}", currency=sess.currency.upper(),
        )
    else:
        event_id = await queue_notice(
            db, sess, signup, "cancellation-no-refund", refund_line=_late_line(signup),
        )
    await db.commit()

    SIGNUP_CANCELLED.labels(actor=actor.kind).inc()
    log.info(
        "signup_cancelled",
        extra={
            "session_id": str(sess.id),
            "signup_id": str(signup.id),
            "from_status": from_status,
            "actor": actor.kind,
            "refunded": needs_refund,
        },
    )
    await dispatch_after_commit(db, notifier, [event_id])

    result = CancellationResult(
        signup_id=signup.id,
        status=signup.status,
        refunded=needs_refund,
        refund_cents=signup.amount_cents if needs_refund else 0,
    )
    if freed_spot and sess.status in OPEN_STATUSES:
        promoted = await promote_next(db, session_id=session_id, notifier=notifier)
        result = dataclasses.replace(result, promoted=promoted)
    return result
