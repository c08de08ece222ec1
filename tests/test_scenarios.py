from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from coursebook.models import Session as SessionModel, Signup
from coursebook.services.admission import try_admit
from coursebook.services.cancellation import Actor, cancel_signup
from coursebook.services.offers import Promoted, claim_offer
from coursebook.services.session_lifecycle import cancel_session
from tests.conftest import mk_paid_signup, mk_participant, mk_session, reload

import pytest
pytestmark = pytest.mark.asyncio


async def test_cancel_refund_offer_then_wrong_token(db, processor, notifier):
    sid = await mk_session(db, capacity=2, price_cents=25000)
    paid = [await mk_paid_signup(db, sid, i) for i in range(2)]
    waiting = [await try_admit(db, session_id=sid, participant=mk_participant(i)) for i in range(3)]
    assert [w.waitlist_position for w in waiting] == [1, 2, 3]

    before = datetime.now(timezone.utc)
    res = await cancel_signup(
        db,
        signup_id=paid[0].id,
        actor=Actor.participant(cancel_token=paid[0].cancel_token),
        processor=processor,
        notifier=notifier,
    )
    assert res.refunded

    offer = res.promoted
    assert isinstance(offer, Promoted)
    assert offer.signup_id == waiting[0].signup_id
    assert timedelta(hours=23, minutes=59) <= offer.expires_at - before <= timedelta(hours=24, minutes=1)

    head = await reload(db, Signup, waiting[0].signup_id)
    second = await reload(db, Signup, waiting[1].signup_id)
    assert head.offer_status == "pending"
    assert head.offer_claim_token == offer.claim_token
    assert second.offer_claim_token is None

    # the next entry in line has no usable token of its own
    wrong = await claim_offer(db, token=f"x{offer.claim_token}")
    assert wrong.outcome == "invalid_token"

    assert "spot-available" in notifier.templates()
    assert "cancellation-refunded" in notifier.templates()


async def test_session_cancel_with_one_failed_refund(db, processor, notifier):
    sid = await mk_session(db, capacity=5, price_cents=25000)
    paid = [await mk_paid_signup(db, sid, i) for i in range(5)]
    processor.fail_refund_for.add(paid[3].payment_reference)

    res = await cancel_session(db, session_id=sid, processor=processor, notifier=notifier, reason="Instructor is ill")

    assert res.refunds_processed == 4
    assert res.refunds_failed == 1
    assert res.notifications_sent == 5
    assert res.total_refunded_cents == 4 * 25000

    stmt = select(Signup).where(Signup.session_id == sid).execution_options(populate_existing=True)
    rows = (await db.execute(stmt)).scalars().all()
    await db.commit()
    assert {r.status for r in rows} == {"session_cancelled"}
    failed = next(r for r in rows if r.id == paid[3].id)
    assert failed.payment_status == "paid"
    assert failed.refund_error == "processor unavailable"
    assert sum(1 for r in rows if r.payment_status == "refunded") == 4

    sess = await reload(db, SessionModel, sid)
    assert sess.status == "cancelled"
    assert sess.cancellation_reason == "Instructor is ill"

    # re-running is a no-op once every signup is terminal
    again = await cancel_session(db, session_id=sid, processor=processor, notifier=notifier)
    assert (again.refunds_processed, again.refunds_failed, again.notifications_sent) == (0, 0, 0)
    assert processor.count("refund") == 5
