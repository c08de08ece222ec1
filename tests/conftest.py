import os
import secrets
import tempfile
import uuid
from datetime import datetime, timedelta, timezone

# IMPORTANT: settings are read on first import of coursebook.db, so point it at a
# throwaway SQLite file before anything from the package is imported.
_DB_FILE = os.path.join(tempfile.gettempdir(), f"coursebook_test_{os.getpid()}.db")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_DB_FILE}")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("METRICS_ENABLED", "true")

import pytest
import pytest_asyncio

from coursebook.db import engine, SessionLocal
from coursebook.models import Base, Signup
from coursebook.services.admission import Participant
from coursebook.services.payment_processor import PaymentProcessorError
from coursebook.services.session_lifecycle import create_session


# Fresh schema before each test, on the SAME loop as the test function.
# DISPOSE the engine afterwards so no pooled connection (bound to a previous
# loop) is reused by the next test.
@pytest_asyncio.fixture(autouse=True, loop_scope="function")
async def _db_clean():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def db():
    async with SessionLocal() as s:
        yield s


@pytest.fixture
def processor():
    return FakePaymentProcessor()


@pytest.fixture
def notifier():
    return FakeNotifier()


# ---------- fakes ----------
class FakePaymentProcessor:
    """Records every call; failures are scripted per test."""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.decline = False
        self.fail_capture = False
        self.fail_refund_for: set[str] = set()
        self.refunds: dict[str, str] = {}  # idempotency key -> capture ref
        self.on_authorize = None  # async hook run before the hold is returned
        self._seq = 0

    async def authorize(
        self,
        *,
        amount_cents,
        currency,
        payment_method,
        idempotency_key,
        fee_cents=0,
        destination=None,
        metadata=None,
    ) -> str:
        self.calls.append(("authorize", idempotency_key))
        if self.decline:
            raise PaymentProcessorError("Your card was declined.", code="card_declined")
        self._seq += 1
        hold = f"pi_test_{self._seq}"
        if self.on_authorize is not None:
            await self.on_authorize()
        return hold

    async def capture(self, hold_ref: str) -> None:
        self.calls.append(("capture", hold_ref))
        if self.fail_capture:
            raise PaymentProcessorError("capture window elapsed")

    async def void(self, hold_ref: str) -> None:
        self.calls.append(("void", hold_ref))

    async def refund(self, capture_ref: str, *, idempotency_key: str) -> None:
        self.calls.append(("refund", capture_ref))
        if capture_ref in self.fail_refund_for:
            raise PaymentProcessorError("processor unavailable")
        # the processor collapses repeats of the same key into one refund
        self.refunds.setdefault(idempotency_key, capture_ref)

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)


class FakeNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: list[tuple[str, str, dict]] = []

    async def send(self, template: str, recipient: str, data: dict) -> bool:
        if self.fail:
            return False
        self.sent.append((template, recipient, data))
        return True

    def templates(self) -> list[str]:
        return [t for t, _, _ in self.sent]


# ---------- helpers ----------
def mk_participant(i: int | str, *, phone: str | None = None) -> Participant:
    return Participant(name=f"P{i}", email=f"p{i}@example.com", phone=phone)


async def mk_session(
    db,
    *,
    capacity: int,
    price_cents: int = 0,
    starts_in: timedelta = timedelta(days=7),
    status: str = "upcoming",
    title: str = "Pottery basics",
) -> uuid.UUID:
    s = await create_session(
        db,
        title=title,
        starts_at=datetime.now(timezone.utc) + starts_in,
        capacity=capacity,
        price_cents=price_cents,
        status=status,
    )
    return s.id


async def mk_paid_signup(db, session_id: uuid.UUID, i: int, *, amount_cents: int = 25000) -> Signup:
    """Insert a confirmed, already-charged signup directly."""
    s = Signup(
        session_id=session_id,
        participant_name=f"Paid{i}",
        participant_email=f"paid{i}@example.com",
        status="confirmed",
        payment_status="paid",
        payment_reference=f"pi_paid_{i}",
        amount_cents=amount_cents,
        cancel_token=secrets.token_urlsafe(24),
    )
    db.add(s)
    await db.commit()
    return s


async def reload(db, model, pk):
    obj = await db.get(model, pk, populate_existing=True)
    # commit rather than rollback: the row stays readable and the SQLite write lock is released
    await db.commit()
    return obj
