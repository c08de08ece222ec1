from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

import sqlalchemy as sa
from sqlalchemy import CheckConstraint, ForeignKey, Index, UniqueConstraint
from sqlalchemy.dialects import postgresql as pg
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TZDateTime(sa.TypeDecorator):
    """Timezone-aware timestamps on every backend (SQLite hands back naive values)."""

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


JSONType = sa.JSON().with_variant(pg.JSONB(), "postgresql")


# ---------- Base & naming ----------
class Base(DeclarativeBase):
    # Keep index/constraint names stable for cleaner migrations
    metadata = sa.MetaData(
        naming_convention={
            "ix": "ix_%(column_0_label)s",
            "uq": "uq_%(table_name)s_%(column_0_name)s",
            "ck": "ck_%(table_name)s_%(constraint_name)s",
            "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
            "pk": "pk_%(table_name)s",
        }
    )


# ---------- SESSIONS (bookable courses) ----------
class Session(Base):
    __tablename__ = "sessions"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid, nullable=True)
    title: Mapped[str] = mapped_column(sa.Text, nullable=False)

    starts_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False)

    capacity: Mapped[int] = mapped_column(sa.Integer, nullable=False)  # 0 = unlimited
    price_cents: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(sa.Text, nullable=False)
    # Stripe Connect account receiving the organizer's share
    payout_account_id: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    status: Mapped[str] = mapped_column(
        sa.Text,
        nullable=False,
        default="upcoming",
        server_default=sa.text("'upcoming'"),
    )  # 'draft' | 'upcoming' | 'active' | 'completed' | 'cancelled'

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow)

    __table_args__ = (
        CheckConstraint("capacity >= 0", name="sessions_capacity_nonneg"),
        CheckConstraint("price_cents >= 0", name="sessions_price_nonneg"),
        CheckConstraint(
            "status in ('draft','upcoming','active','completed','cancelled')", name="sessions_status"
        ),
        Index("ix_sessions_starts_at", "starts_at"),
    )


# ---------- SIGNUPS (confirmed seats and waitlist entries) ----------
class Signup(Base):
    __tablename__ = "signups"

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, ForeignKey("sessions.id"), nullable=False)

    # participant identity; user_id is set when the participant has an account
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(sa.Uuid, nullable=True)
    participant_name: Mapped[str] = mapped_column(sa.Text, nullable=False)
    participant_email: Mapped[str] = mapped_column(sa.Text, nullable=False)
    participant_phone: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    status: Mapped[str] = mapped_column(sa.Text, nullable=False)
    payment_status: Mapped[str] = mapped_column(
        sa.Text, nullable=False, default="unpaid", server_default=sa.text("'unpaid'")
    )
    payment_reference: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    amount_cents: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    # 1-based, insertion order, never reused within a session
    waitlist_position: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    offer_status: Mapped[str] = mapped_column(
        sa.Text, nullable=False, default="none", server_default=sa.text("'none'")
    )
    offer_claim_token: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True, unique=True)
    offer_sent_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    offer_expires_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)

    # possession proof for guest self-cancellation
    cancel_token: Mapped[str] = mapped_column(sa.Text, nullable=False, unique=True)

    canceled_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    canceled_from_status: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    refund_error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint(
            "status in ('confirmed','waitlist','cancelled','session_cancelled')", name="signups_status"
        ),
        CheckConstraint("payment_status in ('unpaid','paid','refunded')", name="signups_payment_status"),
        CheckConstraint(
            "offer_status in ('none','pending','expired','skipped','claimed')", name="signups_offer_status"
        ),
        CheckConstraint("amount_cents >= 0", name="signups_amount_nonneg"),
        UniqueConstraint("session_id", "waitlist_position", name="uq_signups_session_position"),
        Index("ix_signups_session_status", "session_id", "status"),
        Index("ix_signups_offer_expiry", "offer_status", "offer_expires_at"),
    )


# ---------- EVENTS OUTBOX ----------
class EventsOutbox(Base):
    __tablename__ = "events_outbox"

    id: Mapped[int] = mapped_column(
        sa.BigInteger().with_variant(sa.Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    channel: Mapped[str] = mapped_column(sa.Text, nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    available_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow)
    sent_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime, nullable=True)
    attempts: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0, server_default=sa.text("0"))
    error: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TZDateTime, nullable=False, default=_utcnow)
