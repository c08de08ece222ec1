import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest_asyncio

from coursebook.auth.jwt import create_jwt, create_operator_token
from coursebook.main import app
from coursebook.services.notifier import get_notifier
from coursebook.services.payment_processor import get_payment_processor

import pytest
pytestmark = pytest.mark.asyncio


@pytest_asyncio.fixture
async def client(processor, notifier):
    app.dependency_overrides[get_payment_processor] = lambda: processor
    app.dependency_overrides[get_notifier] = lambda: notifier
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def _operator() -> dict:
    return {"Authorization": f"Bearer {create_operator_token(str(uuid.uuid4()))}"}


async def _create_session(client, **overrides) -> str:
    body = {
        "title": "Evening ceramics",
        "starts_at": (datetime.now(timezone.utc) + timedelta(days=5)).isoformat(),
        "capacity": 1,
        **overrides,
    }
    r = await client.post("/admin/sessions", json=body, headers=_operator())
    assert r.status_code == 201, r.text
    return r.json()["id"]


async def test_signup_waitlist_and_guest_cancel_flow(client, notifier):
    sid = await _create_session(client)

    r = await client.post(f"/sessions/{sid}/signups", json={"name": "Ada", "email": "ada@example.com"})
    assert r.status_code == 201
    first = r.json()
    assert first["outcome"] == "confirmed"

    r = await client.post(f"/sessions/{sid}/signups", json={"name": "Bo", "email": "bo@example.com"})
    assert r.json()["outcome"] == "queued"
    assert r.json()["waitlist_position"] == 1

    r = await client.get(f"/sessions/{sid}/capacity")
    assert r.json() == {
        "session_id": sid,
        "capacity": 1,
        "confirmed_count": 1,
        "pending_offer_count": 0,
        "waitlist_count": 1,
        "available": 0,
    }

    # without the cancel token a guest cannot touch the signup
    r = await client.post(f"/signups/{first['signup_id']}/cancel", json={})
    assert r.status_code == 403

    r = await client.post(f"/signups/{first['signup_id']}/cancel", json={"cancel_token": first["cancel_token"]})
    assert r.status_code == 200
    assert r.json()["status"] == "cancelled"

    r = await client.get(f"/sessions/{sid}/waitlist", headers=_operator())
    [row] = r.json()
    assert row["offer_status"] == "pending"
    assert "spot-available" in notifier.templates()


async def test_bad_claim_token_is_gone(client):
    r = await client.post("/offers/claim", json={"token": "definitely-not-issued"})
    assert r.status_code == 410


async def test_operator_routes_need_operator_role(client):
    sid = await _create_session(client)

    r = await client.get(f"/sessions/{sid}/waitlist")
    assert r.status_code == 401

    participant = create_jwt({"sub": str(uuid.uuid4()), "role": "participant"})
    r = await client.get(f"/sessions/{sid}/waitlist", headers={"Authorization": f"Bearer {participant}"})
    assert r.status_code == 403


async def test_capacity_below_confirmed_is_a_conflict(client):
    sid = await _create_session(client, capacity=2)
    for name in ("a", "b"):
        await client.post(f"/sessions/{sid}/signups", json={"name": name, "email": f"{name}@example.com"})

    r = await client.patch(f"/admin/sessions/{sid}", json={"capacity": 1}, headers=_operator())
    assert r.status_code == 409


async def test_liveness_carries_request_id(client):
    r = await client.get("/health/liveness", headers={"X-Request-ID": "abc123"})
    assert r.json() == {"alive": True}
    assert r.headers["X-Request-ID"] == "abc123"


async def test_readiness_reports_undelivered_notifications(client, notifier):
    sid = await _create_session(client, capacity=2)
    notifier.fail = True
    r = await client.post(f"/sessions/{sid}/signups", json={"name": "a", "email": "a@example.com"})
    assert r.status_code == 201, r.text

    r = await client.get("/health/readiness")
    body = r.json()
    assert body["ready"] is True
    assert body["notifications"] == {"retrying": 1, "parked": 0}


async def test_metrics_series_do_not_grow_per_session(client):
    for title in ("Wheel one", "Wheel two"):
        sid = await _create_session(client, title=title, capacity=3)
        r = await client.post(f"/sessions/{sid}/signups", json={"name": "a", "email": "a@example.com"})
        assert r.status_code == 201, r.text

    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "signup_confirmed_total" in r.text
    assert "session_id=" not in r.text
