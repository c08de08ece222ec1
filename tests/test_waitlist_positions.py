from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from coursebook.errors import SessionNotOpen
from coursebook.models import Signup
from coursebook.services.admission import try_admit
from coursebook.services.cancellation import Actor, cancel_signup
from coursebook.services.offer_sweeper import sweep_expired_offers
from coursebook.services.offers import Promoted
from tests.conftest import mk_participant, mk_session, reload

import pytest
pytestmark = pytest.mark.asyncio


async def test_positions_never_reused_after_withdrawal_and_expiry(db, processor):
    sid = await mk_session(db, capacity=1)
    a = await try_admit(db, session_id=sid, participant=mk_participant("a"))
    b = await try_admit(db, session_id=sid, participant=mk_participant("b"))
    c = await try_admit(db, session_id=sid, participant=mk_participant("c"))
    d = await try_admit(db, session_id=sid, participant=mk_participant("d"))
    assert a.confirmed
    assert (b.waitlist_position, c.waitlist_position, d.waitlist_position) == (1, 2, 3)

    # a waitlisted participant withdraws; nobody is promoted and the slot number is retired
    res = await cancel_signup(db, signup_id=c.signup_id, actor=Actor.operator(), processor=processor)
    assert res.promoted is None

    e = await try_admit(db, session_id=sid, participant=mk_participant("e"))
    assert e.waitlist_position == 4

    # freeing the seat offers it to the head of the queue
    res = await cancel_signup(db, signup_id=a.signup_id, actor=Actor.operator(), processor=processor)
    assert isinstance(res.promoted, Promoted)
    assert res.promoted.signup_id == b.signup_id

    # the offer lapses: b goes to the tail and d is next in line
    row = await reload(db, Signup, b.signup_id)
    row.offer_expires_at = datetime.now(timezone.utc) - timedelta(minutes=1)
    await db.commit()

    swept = await sweep_expired_offers(db, session_id=sid)
    assert swept.expired_count == 1

    b_row = await reload(db, Signup, b.signup_id)
    d_row = await reload(db, Signup, d.signup_id)
    assert b_row.offer_status == "expired"
    assert b_row.waitlist_position == 5
    assert b_row.offer_claim_token is None
    assert d_row.offer_status == "pending"

    rows = (await db.execute(select(Signup.waitlist_position).where(Signup.session_id == sid))).scalars().all()
    used = [p for p in rows if p is not None]
    assert len(used) == len(set(used))


async def test_newcomer_queues_behind_lapsed_offer(db, processor):
    sid = await mk_session(db, capacity=1)
    a = await try_admit(db, session_id=sid, participant=mk_participant("a"))
    b = await try_admit(db, session_id=sid, participant=mk_participant("b"))
    await cancel_signup(db, signup_id=a.signup_id, actor=Actor.operator(), processor=processor)

    # the offer has lapsed but no sweep has run, so the seat is technically free
    row = await reload(db, Signup, b.signup_id)
    row.offer_expires_at = datetime.now(timezone.utc) - timedelta(seconds=5)
    await db.commit()

    late = await try_admit(db, session_id=sid, participant=mk_participant("late"))
    assert late.status == "waitlist"
    assert late.waitlist_position == 2


async def test_closed_session_rejects_admission(db):
    sid = await mk_session(db, capacity=3, status="draft")
    with pytest.raises(SessionNotOpen):
        await try_admit(db, session_id=sid, participant=mk_participant(1))
