from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Protocol

import resend
from resend.exceptions import ResendError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from ..config import get_settings
from ..models import EventsOutbox
from ..observability.metrics import NOTIFICATIONS
from ..repos.outbox import add_notification
from .tx import begin_locked_tx

log = logging.getLogger(__name__)

MAX_ATTEMPTS = 8  # after this a notification stays parked with its last error

# template -> (subject, body); bodies are str.format templates over the event data
MESSAGE_TEMPLATES = {
    "signup-confirmation": (
        "You're booked: {title}",
        "Hi {name},\n\nYour spot in {title} on {starts_at} is confirmed.\n\n"
        "If you can't make it, cancel here: {cancel_url}",
    ),
    "waitlist-joined": (
        "You're on the waitlist for {title}",
        "Hi {name},\n\n{title} is full, so you are number {position} on the waitlist. "
        "We'll email you if a spot opens up.",
    ),
    "spot-available": (
        "A spot opened up in {title}",
        "Hi {name},\n\nA spot in {title} on {starts_at} is being held for you until {expires_at}.\n\n"
        "Claim it here: {claim_url}",
    ),
    "offer-expired": (
        "Your offer for {title} expired",
        "Hi {name},\n\nThe spot we held for you in {title} was not claimed in time. "
        "You are still on the waitlist, now at position {position}.",
    ),
    "offer-withdrawn": (
        "Update on your offer for {title}",
        "Hi {name},\n\nThe organizer reduced the number of places in {title}, so the spot we were "
        "holding for you is no longer available. You are still on the waitlist at position {position}.",
    ),
    "cancellation-refunded": (
        "Cancelled: {title}",
        "Hi {name},\n\nYour signup for {title} is cancelled and {amount} {currency} has been refunded.",
    ),
    "cancellation-no-refund": (
        "Cancelled: {title}",
        "Hi {name},\n\nYour signup for {title} is cancelled. {refund_line}",
    ),
    "operator-cancellation": (
        "Your signup for {title} was cancelled",
        "Hi {name},\n\nThe organizer cancelled your signup for {title}. {refund_line}\n\n{reason}",
    ),
    "session-cancelled": (
        "{title} has been cancelled",
        "Hi {name},\n\n{title} on {starts_at} has been cancelled by the organizer. {refund_line}\n\n{reason}",
    ),
    "booking-failed": (
        "We couldn't complete your booking for {title}",
        "Hi {name},\n\nThe last spot in {title} was taken while your payment was processing. "
        "You have not been charged. {queue_line}",
    ),
}

SMS_TEMPLATES = {
    "spot-available": "A spot opened up in {title}. Claim it before {expires_at}: {claim_url}",
}


class _Blank(dict):
    def __missing__(self, key):
        return ""


def render(template: str, data: dict) -> tuple[str, str]:
    subject, body = MESSAGE_TEMPLATES[template]
    values = _Blank(data)
    return subject.format_map(values), body.format_map(values)


class Notifier(Protocol):
    async def send(self, template: str, recipient: str, data: dict) -> bool: ...


class ResendEmailSender:
    def __init__(self) -> None:
        settings = get_settings()
        self._from = settings.EMAIL_FROM
        self._api_key = settings.RESEND_API_KEY
        if not self._api_key:
            log.info("Email disabled; RESEND_API_KEY is not set")

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    async def send_email(self, *, to: str, subject: str, body: str) -> bool:
        if not self.enabled:
            log.debug("Email send skipped because Resend is not configured.")
            return False

        resend.api_key = self._api_key
        params: resend.Emails.SendParams = {"from": self._from, "to": [to], "subject": subject, "text": body}
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, lambda: resend.Emails.send(params))
            return True
        except ResendError as exc:
            log.warning("Resend email send failed: %s", exc)
            return False


class TwilioSMSSender:
    def __init__(self) -> None:
        settings = get_settings()
        self._from_number: Optional[str] = settings.TWILIO_FROM_NUMBER
        self._client: Optional[Client] = None
        if settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and self._from_number:
            self._client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        else:
            log.info("SMS disabled; Twilio credentials are incomplete")

    @property
    def enabled(self) -> bool:
        return bool(self._client and self._from_number)

    async def send_sms(self, *, to: str, body: str) -> bool:
        if not self.enabled:
            return False

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: self._client.messages.create(from_=self._from_number, to=to, body=body),  # type: ignore[union-attr]
            )
            return True
        except TwilioException as exc:
            log.warning("Twilio SMS send failed: %s", exc)
            return False


class ParticipantNotifier:
    """Email for every template, plus an SMS nudge for offers when we have a phone number."""

    def __init__(self, email: ResendEmailSender | None = None, sms: TwilioSMSSender | None = None) -> None:
        self.email = email or ResendEmailSender()
        self.sms = sms or TwilioSMSSender()

    async def send(self, template: str, recipient: str, data: dict) -> bool:
        subject, body = render(template, data)
        delivered = await self.email.send_email(to=recipient, subject=subject, body=body)

        phone = data.get("phone")
        if phone and template in SMS_TEMPLATES:
            text = SMS_TEMPLATES[template].format_map(_Blank(data))
            delivered = await self.sms.send_sms(to=phone, body=text) or delivered
        return delivered


_notifier: ParticipantNotifier | None = None


def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        _notifier = ParticipantNotifier()
    return _notifier


async def deliver_outbox(
    db: AsyncSession,
    notifier: Notifier,
    *,
    event_ids: Iterable[int] | None = None,
    batch: int = 100,
) -> int:
    """
    Deliver unsent notification rows and mark them sent. Rows that fail stay unsent
    (attempts/error recorded) for the dispatcher worker to retry. Returns the number delivered.
    """
    await begin_locked_tx(db)

    stmt = (
        select(EventsOutbox)
        .where(EventsOutbox.sent_at.is_(None), EventsOutbox.channel.like("notify:%"))
        .order_by(EventsOutbox.id.asc())
        .with_for_update(skip_locked=True)
    )
    if event_ids is not None:
        ids = list(event_ids)
        if not ids:
            await db.commit()
            return 0
        stmt = stmt.where(EventsOutbox.id.in_(ids))
    else:
        stmt = stmt.where(
            EventsOutbox.available_at <= datetime.now(timezone.utc),
            EventsOutbox.attempts < MAX_ATTEMPTS,
        ).limit(batch)

    events = list((await db.execute(stmt)).scalars().all())
    if not events:
        await db.commit()
        return 0

    delivered = 0
    for evt in events:
        template = evt.payload.get("template", "")
        evt.attempts = (evt.attempts or 0) + 1
        try:
            ok = await notifier.send(template, evt.payload["recipient"], evt.payload.get("data") or {})
        except Exception as exc:
            # notifier implementations should not raise; keep going with the rest of the batch
            ok, evt.error = False, repr(exc)
        else:
            if not ok:
                evt.error = "not delivered"
        if ok:
            evt.sent_at = datetime.now(timezone.utc)
            evt.error = None
            delivered += 1
        else:
            evt.available_at = datetime.now(timezone.utc) + timedelta(seconds=min(3600, 30 * 2 ** evt.attempts))
            log.warning("notification_failed", extra={"outbox_id": evt.id, "template": template, "attempts": evt.attempts})
        NOTIFICATIONS.labels(template=template, outcome="sent" if ok else "failed").inc()

    await db.commit()
    return delivered


async def dispatch_after_commit(db: AsyncSession, notifier: Notifier | None, event_ids: Iterable[int]) -> int:
    """
    Best-effort immediate delivery of rows an operation just committed. Runs on its own
    session so the caller's loaded objects are untouched by whatever happens here.
    """
    ids = list(event_ids)
    if notifier is None or not ids:
        return 0
    try:
        async with AsyncSession(db.bind, expire_on_commit=False) as own:
            return await deliver_outbox(own, notifier, event_ids=ids)
    except Exception:
        # the rows are durable; the dispatcher worker will pick them up
        log.exception("notification_dispatch_failed")
        return 0


def notice_data(sess, signup, **extra) -> dict:
    site = get_settings().SITE_URL.rstrip("/")
    data = {
        "name": signup.participant_name,
        "title": sess.title,
        "starts_at": sess.starts_at.isoformat(),
        "session_id": str(sess.id),
        "signup_id": str(signup.id),
        "cancel_url": f"{site}/cancel/{signup.cancel_token}",
    }
    data.update(extra)
    return data


async def queue_notice(db: AsyncSession, sess, signup, template: str, **extra) -> int:
    """Write a participant notification into the current transaction. Returns the outbox id."""
    evt = await add_notification(
        db,
        session_id=sess.id,
        template=template,
        recipient=signup.participant_email,
        phone=signup.participant_phone,
        data=notice_data(sess, signup, **extra),
    )
    return evt.id
