from __future__ import annotations
import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from ...auth.deps import Caller, require_operator
from ...db import get_db
from ...domain.schemas.signup import (
    BulkCancelOut,
    CapacityOut,
    SessionCancelIn,
    SessionCreateIn,
    SessionOut,
    SessionUpdateIn,
    WaitlistRowOut,
)
from ...errors import BookingError
from ...repos import signups as signups_repo
from ...services.notifier import Notifier, get_notifier
from ...services.payment_processor import PaymentProcessor, get_payment_processor
from ...services.session_lifecycle import cancel_session, create_session, get_capacity_snapshot, update_session
from ..errors import to_http

router = APIRouter(tags=["sessions"])


def _session_out(s) -> SessionOut:
    return SessionOut(
        id=s.id,
        title=s.title,
        starts_at=s.starts_at,
        capacity=s.capacity,
        price_cents=s.price_cents,
        currency=s.currency,
        status=s.status,
    )


@router.get("/sessions/{session_id}/capacity", response_model=CapacityOut)
async def capacity(session_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    try:
        snap = await get_capacity_snapshot(db, session_id)
    except BookingError as e:
        raise to_http(e)
    return CapacityOut(
        session_id=session_id,
        capacity=snap.capacity,
        confirmed_count=snap.confirmed_count,
        pending_offer_count=snap.pending_offer_count,
        waitlist_count=snap.waitlist_count,
        available=snap.available,
    )


@router.get("/sessions/{session_id}/waitlist", response_model=list[WaitlistRowOut])
async def waitlist(
    session_id: uuid.UUID,
    _: Caller = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    rows = await signups_repo.list_waitlist(db, session_id)
    return [
        WaitlistRowOut(
            signup_id=s.id,
            participant_name=s.participant_name,
            participant_email=s.participant_email,
            waitlist_position=s.waitlist_position,
            offer_status=s.offer_status,
            offer_expires_at=s.offer_expires_at,
            created_at=s.created_at,
        )
        for s in rows
    ]


@router.post("/admin/sessions", response_model=SessionOut, status_code=status.HTTP_201_CREATED)
async def admin_create_session(
    payload: SessionCreateIn,
    _: Caller = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
):
    try:
        s = await create_session(db, **payload.model_dump())
    except BookingError as e:
        raise to_http(e)
    return _session_out(s)


@router.patch("/admin/sessions/{session_id}", response_model=SessionOut)
async def admin_update_session(
    session_id: uuid.UUID,
    payload: SessionUpdateIn,
    _: Caller = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        s = await update_session(
            db, session_id=session_id, capacity=payload.capacity, status=payload.status, notifier=notifier
        )
    except BookingError as e:
        raise to_http(e)
    return _session_out(s)


@router.post("/admin/sessions/{session_id}/cancel", response_model=BulkCancelOut)
async def admin_cancel_session(
    session_id: uuid.UUID,
    payload: SessionCancelIn,
    _: Caller = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        res = await cancel_session(
            db,
            session_id=session_id,
            processor=processor,
            notifier=notifier,
            reason=payload.reason,
            notify=payload.notify,
        )
    except BookingError as e:
        raise to_http(e)
    return BulkCancelOut(
        refunds_processed=res.refunds_processed,
        refunds_failed=res.refunds_failed,
        notifications_sent=res.notifications_sent,
        total_refunded_cents=res.total_refunded_cents,
    )
