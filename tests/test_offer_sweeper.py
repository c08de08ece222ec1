from datetime import datetime, timedelta, timezone

from coursebook.models import Signup
from coursebook.services.admission import try_admit
from coursebook.services.cancellation import Actor, cancel_signup
from coursebook.services.offer_sweeper import sweep_all_expired_offers, sweep_expired_offers
from coursebook.services.offers import Promoted
from tests.conftest import mk_participant, mk_session, reload

import pytest
pytestmark = pytest.mark.asyncio


async def _lapse(db, signup_id):
    row = await reload(db, Signup, signup_id)
    row.offer_expires_at = datetime.now(timezone.utc) - timedelta(minutes=5)
    await db.commit()


async def test_sweep_is_idempotent_and_reoffers(db, processor, notifier):
    sid = await mk_session(db, capacity=1)
    a = await try_admit(db, session_id=sid, participant=mk_participant("a"))
    b = await try_admit(db, session_id=sid, participant=mk_participant("b"))
    c = await try_admit(db, session_id=sid, participant=mk_participant("c"))
    await cancel_signup(db, signup_id=a.signup_id, actor=Actor.operator(), processor=processor)
    await _lapse(db, b.signup_id)

    first = await sweep_expired_offers(db, session_id=sid, notifier=notifier)
    second = await sweep_expired_offers(db, session_id=sid, notifier=notifier)

    assert first.expired_count == 1
    assert len(first.promoted) == 1
    assert isinstance(first.promoted[0], Promoted)
    assert first.promoted[0].signup_id == c.signup_id
    assert second.expired_count == 0
    assert second.promoted == []
    assert sorted(notifier.templates()) == ["offer-expired", "spot-available"]


async def test_sweep_all_covers_every_session(db, processor):
    expired_ids = []
    for n in range(3):
        sid = await mk_session(db, capacity=1, title=f"Class {n}")
        a = await try_admit(db, session_id=sid, participant=mk_participant(f"a{n}"))
        b = await try_admit(db, session_id=sid, participant=mk_participant(f"b{n}"))
        await cancel_signup(db, signup_id=a.signup_id, actor=Actor.operator(), processor=processor)
        await _lapse(db, b.signup_id)
        expired_ids.append(b.signup_id)

    assert await sweep_all_expired_offers(db) == 3
    assert await sweep_all_expired_offers(db) == 0

    for signup_id in expired_ids:
        row = await reload(db, Signup, signup_id)
        # alone in the queue, so the freed spot comes straight back with a new token
        assert row.offer_status == "pending"
        assert row.waitlist_position == 2
