from datetime import datetime, timedelta, timezone

from coursebook.errors import OfferExpiredOrInvalid
from coursebook.models import Session as SessionModel, Signup
from coursebook.services.admission import try_admit
from coursebook.services.cancellation import Actor, cancel_signup
from coursebook.services.offers import Promoted, claim_offer, validate_claim_token
from coursebook.services.payments import claim_and_pay
from coursebook.services.session_lifecycle import update_session
from tests.conftest import mk_participant, mk_session, reload

import pytest
pytestmark = pytest.mark.asyncio


async def _offer_one(db, processor, *, price_cents: int = 0):
    sid = await mk_session(db, capacity=1, price_cents=price_cents)
    a = await try_admit(db, session_id=sid, participant=mk_participant("a"))
    b = await try_admit(db, session_id=sid, participant=mk_participant("b"))
    res = await cancel_signup(db, signup_id=a.signup_id, actor=Actor.operator(), processor=processor)
    return sid, b, res.promoted


async def test_claim_confirms_and_burns_the_token(db, processor, notifier):
    _, b, offer = await _offer_one(db, processor)

    res = await claim_offer(db, token=offer.claim_token, notifier=notifier)
    assert res.confirmed
    assert res.signup_id == b.signup_id

    row = await reload(db, Signup, b.signup_id)
    assert row.status == "confirmed"
    assert row.offer_status == "claimed"
    assert row.offer_claim_token is None
    assert notifier.templates() == ["signup-confirmation"]

    again = await claim_offer(db, token=offer.claim_token)
    assert again.outcome == "invalid_token"


async def test_lapsed_offer_unclaimable_before_any_sweep(db, processor):
    _, b, offer = await _offer_one(db, processor)

    row = await reload(db, Signup, b.signup_id)
    row.offer_expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    await db.commit()

    res = await claim_offer(db, token=offer.claim_token)
    assert res.outcome == "expired"
    with pytest.raises(OfferExpiredOrInvalid):
        res.ensure_confirmed()

    with pytest.raises(OfferExpiredOrInvalid) as exc:
        await validate_claim_token(db, offer.claim_token)
    assert exc.value.reason == "expired"
    await db.rollback()

    row = await reload(db, Signup, b.signup_id)
    assert row.status == "waitlist"


async def test_unknown_token(db):
    res = await claim_offer(db, token="no-such-token-anywhere")
    assert res.outcome == "invalid_token"


async def test_paid_claim_holds_then_captures(db, processor, notifier):
    _, b, offer = await _offer_one(db, processor, price_cents=18000)

    res = await claim_and_pay(
        db, token=offer.claim_token, payment_method="pm_card_visa", processor=processor, notifier=notifier
    )
    assert res.outcome == "confirmed"
    assert res.charged
    assert [k for k, _ in processor.calls] == ["authorize", "capture"]

    row = await reload(db, Signup, b.signup_id)
    assert row.status == "confirmed"
    assert row.payment_status == "paid"
    assert row.amount_cents == 18000
    assert row.payment_reference == res.payment_reference


async def test_paid_claim_on_lapsed_offer_never_touches_payment(db, processor):
    _, b, offer = await _offer_one(db, processor, price_cents=18000)
    row = await reload(db, Signup, b.signup_id)
    row.offer_expires_at = datetime.now(timezone.utc) - timedelta(seconds=1)
    await db.commit()

    with pytest.raises(OfferExpiredOrInvalid):
        await claim_and_pay(db, token=offer.claim_token, payment_method="pm_card_visa", processor=processor)
    assert processor.count("authorize") == 0


async def test_claim_losing_capacity_race_keeps_place_in_queue(db, processor):
    sid = await mk_session(db, capacity=1)
    a = await try_admit(db, session_id=sid, participant=mk_participant("a"))
    b = await try_admit(db, session_id=sid, participant=mk_participant("b"))
    c = await try_admit(db, session_id=sid, participant=mk_participant("c"))
    await update_session(db, session_id=sid, capacity=3)

    b_row = await reload(db, Signup, b.signup_id)
    c_row = await reload(db, Signup, c.signup_id)
    b_token, c_token = b_row.offer_claim_token, c_row.offer_claim_token

    # a writer outside the coordinator shrinks the session under two live offers
    sess = await reload(db, SessionModel, sid)
    sess.capacity = 2
    await db.commit()

    lost = await claim_offer(db, token=b_token)
    assert lost.outcome == "expired"
    assert lost.signup_id == b.signup_id

    b_row = await reload(db, Signup, b.signup_id)
    assert b_row.status == "waitlist"
    assert b_row.offer_status == "expired"
    assert b_row.offer_claim_token is None
    assert b_row.waitlist_position == 1

    won = await claim_offer(db, token=c_token)
    assert won.confirmed

    # once a seat frees up, the entry that lost the race is next in line
    res = await cancel_signup(db, signup_id=a.signup_id, actor=Actor.operator(), processor=processor)
    assert isinstance(res.promoted, Promoted)
    assert res.promoted.signup_id == b.signup_id
