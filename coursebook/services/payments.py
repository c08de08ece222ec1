from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import get_settings
from ..errors import CapacityExceeded, NotFound, PaymentAuthorizationFailed, SessionNotOpen
from ..models import Session as SessionModel
from ..observability.metrics import PAYMENT_HOLDS
from ..repos import sessions as sessions_repo
from ..repos import signups as signups_repo
from .admission import OPEN_STATUSES, AdmissionResult, Participant, try_admit
from .cancellation import refund_key
from .notifier import Notifier, dispatch_after_commit, queue_notice
from .offers import claim_offer, promote_next, validate_claim_token
from .payment_processor import PaymentProcessor, PaymentProcessorError
from .signup_state import transition
from .tx import begin_locked_tx, lock_session

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    outcome: str  # 'confirmed' | 'queued' | 'duplicate' | 'lost_race' | 'expired' | 'capture_failed'
    signup_id: Optional[uuid.UUID]
    status: Optional[str]
    waitlist_position: Optional[int] = None
    payment_reference: Optional[str] = None
    charged: bool = False
    cancel_token: Optional[str] = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def platform_fee_cents(amount_cents: int, percent: float | None = None) -> int:
    pct = get_settings().PLATFORM_FEE_PERCENT if percent is None else percent
    return int(round(amount_cents * pct / 100.0))


def _from_admission(outcome: str, adm: AdmissionResult, *, hold: str | None = None, charged: bool = False) -> CheckoutResult:
    return CheckoutResult(
        outcome=outcome,
        signup_id=adm.signup_id,
        status=adm.status,
        waitlist_position=adm.waitlist_position,
        payment_reference=hold,
        charged=charged,
        cancel_token=adm.cancel_token,
    )


async def _authorize(
    processor: PaymentProcessor,
    sess: SessionModel,
    *,
    payment_method: str,
    idempotency_key: str,
    metadata: dict,
) -> str:
    amount = sess.price_cents
    try:
        hold = await processor.authorize(
            amount_cents=amount,
            currency=sess.currency,
            payment_method=payment_method,
            idempotency_key=f"auth:{idempotency_key}",
            fee_cents=platform_fee_cents(amount),
            destination=sess.payout_account_id,
            metadata=metadata,
        )
    except PaymentProcessorError as exc:
        PAYMENT_HOLDS.labels(outcome="declined").inc()
        log.warning("payment_authorization_failed", extra={"session_id": str(sess.id), "error": str(exc)})
        raise PaymentAuthorizationFailed(str(exc)) from exc
    PAYMENT_HOLDS.labels(outcome="held").inc()
    return hold


async def _void(processor: PaymentProcessor, hold: str) -> None:
    # an uncaptured hold lapses on its own at the processor, so a failed void is only logged
    try:
        await processor.void(hold)
        PAYMENT_HOLDS.labels(outcome="voided").inc()
        log.info("payment_hold_voided", extra={"payment_reference": hold})
    except PaymentProcessorError as exc:
        log.error("payment_void_failed", extra={"payment_reference": hold, "error": str(exc)})


async def _capture_and_finalize(
    db: AsyncSession,
    *,
    session_id: uuid.UUID,
    signup_id: uuid.UUID,
    hold: str,
    processor: PaymentProcessor,
    notifier: Notifier | None,
) -> bool:
    """
    Capture a hold whose signup is already durably confirmed, then mark it paid.
    A failed capture cancels the signup and re-offers the spot. Returns True when charged.
    """
    try:
        await processor.capture(hold)
    except PaymentProcessorError as exc:
        PAYMENT_HOLDS.labels(outcome="capture_failed").inc()
        log.error(
            "payment_capture_failed",
            extra={"session_id": str(session_id), "signup_id": str(signup_id), "error": str(exc)},
        )
        await _void(processor, hold)
        await begin_locked_tx(db)
        sess = await lock_session(db, session_id)
        signup = await signups_repo.lock_signup(db, signup_id)
        events: list[int] = []
        if signup.status == "confirmed":
            transition(signup, "cancelled", now=_now_utc())
            signup.note = f"payment capture failed: {exc}"
            events.append(await queue_notice(db, sess, signup, "booking-failed", queue_line=""))
        await db.commit()
        await dispatch_after_commit(db, notifier, events)
        if events and sess.status in OPEN_STATUSES:
            await promote_next(db, session_id=session_id, notifier=notifier)
        return False

    PAYMENT_HOLDS.labels(outcome="captured").inc()
    await begin_locked_tx(db)
    sess = await lock_session(db, session_id)
    signup = await signups_repo.lock_signup(db, signup_id)
    if signup.status != "confirmed":
        # cancelled between confirmation and capture; hand the money back
        await db.rollback()
        log.warning("captured_after_cancel", extra={"signup_id": str(signup_id), "payment_reference": hold})
        try:
            await processor.refund(hold, idempotency_key=refund_key(signup_id))
        except PaymentProcessorError as exc:
            log.error("refund_failed", extra={"signup_id": str(signup_id), "error": str(exc)})
            await begin_locked_tx(db)
            signup = await signups_repo.lock_signup(db, signup_id)
            signup.payment_status = "paid"
            signup.refund_error = str(exc)
            await db.commit()
        else:
            await begin_locked_tx(db)
            signup = await signups_repo.lock_signup(db, signup_id)
            signup.payment_status = "refunded"
            await db.commit()
        return False

    signup.payment_status = "paid"
    signup.payment_reference = hold
    event_id = await queue_notice(db, sess, signup, "signup-confirmation")
    await db.commit()
    await dispatch_after_commit(db, notifier, [event_id])
    return True


async def checkout(
    db: AsyncSession,
    *,
    session_id: uuid.UUID,
    participant: Participant,
    payment_method: str | None,
    processor: PaymentProcessor,
    notifier: Notifier | None = None,
    idempotency_key: str | None = None,
) -> CheckoutResult:
    """
    Book a seat with authorize-now, capture-later.

    1. Unlocked pre-check; anyone who would be queued is queued without touching payment.
    2. Authorization hold (platform fee and payout routing set here). A decline raises
       PaymentAuthorizationFailed before anything is written.
    3. Confirm-only admission under the session lock. Losing the last spot voids the hold,
       queues the participant, and tells them they were not charged.
    4. Capture only after the confirmed signup is committed.
    """
    sess = await sessions_repo.get_session(db, session_id)
    if not sess:
        await db.rollback()
        raise NotFound("session")
    # detached, so the row stays readable across the rollbacks below
    db.expunge(sess)
    if sess.status not in OPEN_STATUSES:
        await db.rollback()
        raise SessionNotOpen(sess.status)

    if sess.price_cents == 0:
        await db.rollback()
        adm = await try_admit(db, session_id=session_id, participant=participant, notifier=notifier)
        return _from_admission("duplicate" if adm.duplicate else ("confirmed" if adm.confirmed else "queued"), adm)

    now = _now_utc()
    existing = await signups_repo.find_active_for_participant(db, session_id, participant.email)
    snap = await signups_repo.read_snapshot(db, sess, now=now)
    queue_ahead = await signups_repo.has_eligible_waiting(db, session_id, now=now)
    await db.rollback()

    if existing or not (snap.unlimited or (snap.has_space and not queue_ahead)):
        adm = await try_admit(
            db, session_id=session_id, participant=participant,
            amount_cents=sess.price_cents, mode="queue", notifier=notifier,
        )
        return _from_admission("duplicate" if adm.duplicate else "queued", adm)

    if not payment_method:
        raise PaymentAuthorizationFailed("payment method required")

    hold = await _authorize(
        processor,
        sess,
        payment_method=payment_method,
        idempotency_key=idempotency_key or uuid.uuid4().hex,
        metadata={"session_id": str(session_id), "email": participant.email},
    )

    try:
        adm = await try_admit(
            db, session_id=session_id, participant=participant, amount_cents=sess.price_cents,
            payment_reference=hold, mode="confirm", notify=False, notifier=notifier,
        )
    except CapacityExceeded:
        await _void(processor, hold)
        adm = await try_admit(
            db, session_id=session_id, participant=participant, amount_cents=sess.price_cents,
            mode="queue", notify=False, notifier=notifier,
        )
        await _notify_booking_failed(db, adm, notifier)
        log.info("checkout_lost_race", extra={"session_id": str(session_id), "signup_id": str(adm.signup_id)})
        return _from_admission("lost_race", adm)
    except Exception:
        await _void(processor, hold)
        raise

    if adm.duplicate:
        await _void(processor, hold)
        return _from_admission("duplicate", adm)

    charged = await _capture_and_finalize(
        db, session_id=session_id, signup_id=adm.signup_id, hold=hold, processor=processor, notifier=notifier
    )
    if not charged:
        return CheckoutResult("capture_failed", adm.signup_id, "cancelled", payment_reference=hold, cancel_token=adm.cancel_token)
    return _from_admission("confirmed", adm, hold=hold, charged=True)


async def _notify_booking_failed(db: AsyncSession, adm: AdmissionResult, notifier: Notifier | None) -> None:
    await begin_locked_tx(db)
    signup = await signups_repo.lock_signup(db, adm.signup_id)
    sess = await sessions_repo.get_session(db, signup.session_id)
    line = ""
    if signup.status == "waitlist":
        line = f"You have been added to the waitlist at position {signup.waitlist_position}."
    event_id = await queue_notice(db, sess, signup, "booking-failed", queue_line=line)
    await db.commit()
    await dispatch_after_commit(db, notifier, [event_id])


async def claim_and_pay(
    db: AsyncSession,
    *,
    token: str,
    payment_method: str | None,
    processor: PaymentProcessor,
    notifier: Notifier | None = None,
    idempotency_key: str | None = None,
) -> CheckoutResult:
    """Claim an offered spot with the same hold/confirm/capture sequence as checkout."""
    pending = await validate_claim_token(db, token)
    sess = await sessions_repo.get_session(db, pending.session_id)
    db.expunge(pending)
    db.expunge(sess)
    await db.rollback()

    if sess.price_cents == 0:
        claim = (await claim_offer(db, token=token, notifier=notifier)).ensure_confirmed()
        return CheckoutResult("confirmed", claim.signup_id, "confirmed")

    if not payment_method:
        raise PaymentAuthorizationFailed("payment method required")

    hold = await _authorize(
        processor,
        sess,
        payment_method=payment_method,
        idempotency_key=idempotency_key or f"claim:{pending.id}:{token[:8]}",
        metadata={"session_id": str(sess.id), "signup_id": str(pending.id)},
    )

    try:
        claim = await claim_offer(
            db, token=token, payment_reference=hold, amount_cents=sess.price_cents, notify=False, notifier=notifier
        )
    except Exception:
        await _void(processor, hold)
        raise

    if not claim.confirmed:
        await _void(processor, hold)
        log.info("claim_payment_voided", extra={"signup_id": str(pending.id), "outcome": claim.outcome})
        return CheckoutResult(claim.outcome, claim.signup_id, "waitlist")

    charged = await _capture_and_finalize(
        db, session_id=sess.id, signup_id=claim.signup_id, hold=hold, processor=processor, notifier=notifier
    )
    if not charged:
        return CheckoutResult("capture_failed", claim.signup_id, "cancelled", payment_reference=hold)
    return CheckoutResult("confirmed", claim.signup_id, "confirmed", payment_reference=hold, charged=True)
