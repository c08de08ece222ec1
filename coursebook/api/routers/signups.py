from __future__ import annotations
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, status
from sqlalchemy.ext.asyncio import AsyncSession

from ...auth.deps import Caller, get_optional_caller
from ...db import get_db
from ...domain.schemas.signup import CancelIn, CancelOut, CheckoutOut, SignupIn
from ...errors import BookingError
from ...services.admission import Participant
from ...services.cancellation import Actor, cancel_signup
from ...services.notifier import Notifier, get_notifier
from ...services.payment_processor import PaymentProcessor, get_payment_processor
from ...services.payments import checkout
from ..errors import to_http

router = APIRouter(tags=["signups"])


@router.post("/sessions/{session_id}/signups", response_model=CheckoutOut, status_code=status.HTTP_201_CREATED)
async def create_signup(
    session_id: uuid.UUID,
    payload: SignupIn,
    caller: Optional[Caller] = Depends(get_optional_caller),
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    notifier: Notifier = Depends(get_notifier),
):
    participant = Participant(
        name=payload.name,
        email=str(payload.email),
        phone=payload.phone,
        user_id=caller.user_id if caller else None,
    )
    try:
        res = await checkout(
            db,
            session_id=session_id,
            participant=participant,
            payment_method=payload.payment_method,
            processor=processor,
            notifier=notifier,
            idempotency_key=idempotency_key,
        )
    except BookingError as e:
        raise to_http(e)
    return CheckoutOut(
        outcome=res.outcome,
        signup_id=res.signup_id,
        status=res.status,
        waitlist_position=res.waitlist_position,
        charged=res.charged,
        cancel_token=res.cancel_token,
    )


@router.post("/signups/{signup_id}/cancel", response_model=CancelOut)
async def cancel(
    signup_id: uuid.UUID,
    payload: CancelIn,
    caller: Optional[Caller] = Depends(get_optional_caller),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    notifier: Notifier = Depends(get_notifier),
):
    if caller and caller.role == "operator":
        actor = Actor.operator(caller.user_id, reason=payload.reason)
    else:
        actor = Actor.participant(user_id=caller.user_id if caller else None, cancel_token=payload.cancel_token)
    try:
        res = await cancel_signup(
            db, signup_id=signup_id, actor=actor, want_refund=payload.refund, processor=processor, notifier=notifier
        )
    except BookingError as e:
        raise to_http(e)
    return CancelOut(
        signup_id=res.signup_id,
        status=res.status,
        refunded=res.refunded,
        refund_cents=res.refund_cents,
        already_cancelled=res.already_cancelled,
    )
