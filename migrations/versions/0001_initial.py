"""sessions, signups, events_outbox

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql as pg

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("capacity", sa.Integer(), nullable=False),
        sa.Column("price_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False),
        sa.Column("payout_account_id", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'upcoming'")),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id", name="pk_sessions"),
        sa.CheckConstraint("capacity >= 0", name="ck_sessions_sessions_capacity_nonneg"),
        sa.CheckConstraint("price_cents >= 0", name="ck_sessions_sessions_price_nonneg"),
        sa.CheckConstraint(
            "status in ('draft','upcoming','active','completed','cancelled')", name="ck_sessions_sessions_status"
        ),
    )
    op.create_index("ix_sessions_starts_at", "sessions", ["starts_at"])

    op.create_table(
        "signups",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("session_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("participant_name", sa.Text(), nullable=False),
        sa.Column("participant_email", sa.Text(), nullable=False),
        sa.Column("participant_phone", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("payment_status", sa.Text(), nullable=False, server_default=sa.text("'unpaid'")),
        sa.Column("payment_reference", sa.Text(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("waitlist_position", sa.Integer(), nullable=True),
        sa.Column("offer_status", sa.Text(), nullable=False, server_default=sa.text("'none'")),
        sa.Column("offer_claim_token", sa.Text(), nullable=True),
        sa.Column("offer_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("offer_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancel_token", sa.Text(), nullable=False),
        sa.Column("canceled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("canceled_from_status", sa.Text(), nullable=True),
        sa.Column("refund_error", sa.Text(), nullable=True),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id", name="pk_signups"),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"], name="fk_signups_session_id_sessions"),
        sa.UniqueConstraint("offer_claim_token", name="uq_signups_offer_claim_token"),
        sa.UniqueConstraint("cancel_token", name="uq_signups_cancel_token"),
        sa.UniqueConstraint("session_id", "waitlist_position", name="uq_signups_session_position"),
        sa.CheckConstraint(
            "status in ('confirmed','waitlist','cancelled','session_cancelled')", name="ck_signups_signups_status"
        ),
        sa.CheckConstraint("payment_status in ('unpaid','paid','refunded')", name="ck_signups_signups_payment_status"),
        sa.CheckConstraint(
            "offer_status in ('none','pending','expired','skipped','claimed')", name="ck_signups_signups_offer_status"
        ),
        sa.CheckConstraint("amount_cents >= 0", name="ck_signups_signups_amount_nonneg"),
    )
    op.create_index("ix_signups_session_status", "signups", ["session_id", "status"])
    op.create_index("ix_signups_offer_expiry", "signups", ["offer_status", "offer_expires_at"])

    op.create_table(
        "events_outbox",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column("channel", sa.Text(), nullable=False),
        sa.Column("payload", pg.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    )
    # Fast scan of unsent, ready events
    op.create_index(
        "ix_outbox_ready",
        "events_outbox",
        ["available_at", "id"],
        unique=False,
        postgresql_where=sa.text("sent_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_outbox_ready", table_name="events_outbox")
    op.drop_table("events_outbox")
    op.drop_index("ix_signups_offer_expiry", table_name="signups")
    op.drop_index("ix_signups_session_status", table_name="signups")
    op.drop_table("signups")
    op.drop_index("ix_sessions_starts_at", table_name="sessions")
    op.drop_table("sessions")
