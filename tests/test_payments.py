from sqlalchemy import func, select

from coursebook.db import SessionLocal
from coursebook.errors import PaymentAuthorizationFailed
from coursebook.models import EventsOutbox, Signup
from coursebook.services.admission import try_admit
from coursebook.services.payments import checkout, platform_fee_cents
from tests.conftest import mk_participant, mk_session, reload

import pytest
pytestmark = pytest.mark.asyncio


async def _signup_count(db) -> int:
    n = int((await db.execute(select(func.count()).select_from(Signup))).scalar_one())
    await db.commit()
    return n


async def test_checkout_captures_after_confirm(db, processor, notifier):
    sid = await mk_session(db, capacity=1, price_cents=30000)

    res = await checkout(
        db, session_id=sid, participant=mk_participant(1), payment_method="pm_card_visa",
        processor=processor, notifier=notifier, idempotency_key="k1",
    )

    assert res.outcome == "confirmed"
    assert res.charged
    assert processor.calls == [("authorize", "auth:k1"), ("capture", res.payment_reference)]
    row = await reload(db, Signup, res.signup_id)
    assert row.status == "confirmed"
    assert row.payment_status == "paid"
    assert row.amount_cents == 30000
    assert notifier.templates() == ["signup-confirmation"]


async def test_declined_card_writes_nothing(db, processor):
    sid = await mk_session(db, capacity=1, price_cents=30000)
    processor.decline = True

    with pytest.raises(PaymentAuthorizationFailed):
        await checkout(db, session_id=sid, participant=mk_participant(1), payment_method="pm_bad", processor=processor)

    assert await _signup_count(db) == 0


async def test_full_session_queues_without_touching_payment(db, processor):
    sid = await mk_session(db, capacity=1, price_cents=30000)
    await try_admit(db, session_id=sid, participant=mk_participant("first"))

    res = await checkout(db, session_id=sid, participant=mk_participant(2), payment_method="pm_card_visa", processor=processor)

    assert res.outcome == "queued"
    assert res.waitlist_position == 1
    assert not res.charged
    assert processor.calls == []


async def test_losing_the_last_spot_voids_the_hold(db, processor, notifier):
    sid = await mk_session(db, capacity=1, price_cents=30000)

    async def rival_takes_the_spot():
        async with SessionLocal() as other:
            await try_admit(other, session_id=sid, participant=mk_participant("rival"))

    processor.on_authorize = rival_takes_the_spot

    res = await checkout(
        db, session_id=sid, participant=mk_participant(1), payment_method="pm_card_visa",
        processor=processor, notifier=notifier,
    )

    assert res.outcome == "lost_race"
    assert res.status == "waitlist"
    assert res.waitlist_position == 1
    assert not res.charged
    kinds = [k for k, _ in processor.calls]
    assert kinds == ["authorize", "void"]

    row = await reload(db, Signup, res.signup_id)
    assert row.payment_status == "unpaid"
    assert row.payment_reference is None
    template, _, data = notifier.sent[-1]
    assert template == "booking-failed"
    assert "position 1" in data["queue_line"]


async def test_failed_capture_cancels_and_releases_the_spot(db, processor):
    sid = await mk_session(db, capacity=1, price_cents=30000)
    processor.fail_capture = True

    res = await checkout(db, session_id=sid, participant=mk_participant(1), payment_method="pm_card_visa", processor=processor)

    assert res.outcome == "capture_failed"
    assert not res.charged
    assert [k for k, _ in processor.calls] == ["authorize", "capture", "void"]
    row = await reload(db, Signup, res.signup_id)
    assert row.status == "cancelled"
    assert row.payment_status == "unpaid"

    # the seat is free again for the next person
    nxt = await try_admit(db, session_id=sid, participant=mk_participant(2))
    assert nxt.confirmed


async def test_free_session_needs_no_payment_method(db, processor):
    sid = await mk_session(db, capacity=2)

    res = await checkout(db, session_id=sid, participant=mk_participant(1), payment_method=None, processor=processor)

    assert res.outcome == "confirmed"
    assert processor.calls == []


async def test_paid_session_requires_payment_method(db, processor):
    sid = await mk_session(db, capacity=2, price_cents=1000)

    with pytest.raises(PaymentAuthorizationFailed):
        await checkout(db, session_id=sid, participant=mk_participant(1), payment_method=None, processor=processor)


async def test_confirmation_is_queued_even_without_a_notifier(db, processor):
    sid = await mk_session(db, capacity=2, price_cents=1000)
    await checkout(db, session_id=sid, participant=mk_participant(1), payment_method="pm_card_visa", processor=processor)

    rows = (await db.execute(select(EventsOutbox))).scalars().all()
    await db.commit()
    assert [r.payload["template"] for r in rows] == ["signup-confirmation"]
    assert all(r.sent_at is None for r in rows)


async def test_platform_fee():
    assert platform_fee_cents(30000, 5.0) == 1500
    assert platform_fee_cents(999, 10.0) == 100
