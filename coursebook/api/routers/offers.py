from __future__ import annotations
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from ...auth.deps import Caller, require_operator
from ...db import get_db
from ...domain.schemas.signup import CheckoutOut, ClaimIn, PromoteIn, PromotionOut, SweepOut
from ...errors import BookingError, OfferExpiredOrInvalid
from ...services.notifier import Notifier, get_notifier
from ...services.offer_sweeper import sweep_expired_offers
from ...services.offers import Promoted, offer_to_signup, promote_many
from ...services.payment_processor import PaymentProcessor, get_payment_processor
from ...services.payments import claim_and_pay
from ..errors import to_http

router = APIRouter(tags=["offers"])


def _promotion_out(outcome) -> PromotionOut:
    if isinstance(outcome, Promoted):
        return PromotionOut(outcome="promoted", signup_id=outcome.signup_id, expires_at=outcome.expires_at)
    return PromotionOut(outcome="no_eligible_entries", reason=outcome.reason)


@router.post("/offers/claim", response_model=CheckoutOut)
async def claim(
    payload: ClaimIn,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        res = await claim_and_pay(
            db,
            token=payload.token,
            payment_method=payload.payment_method,
            processor=processor,
            notifier=notifier,
            idempotency_key=idempotency_key,
        )
        if res.outcome in ("expired", "invalid_token"):
            raise OfferExpiredOrInvalid(res.outcome)
    except BookingError as e:
        raise to_http(e)
    return CheckoutOut(outcome=res.outcome, signup_id=res.signup_id, status=res.status, charged=res.charged)


@router.post("/sessions/{session_id}/promote", response_model=list[PromotionOut])
async def promote(
    session_id: uuid.UUID,
    payload: PromoteIn,
    _: Caller = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        outcomes = await promote_many(db, session_id=session_id, n=payload.count, notifier=notifier)
    except BookingError as e:
        raise to_http(e)
    return [_promotion_out(o) for o in outcomes]


@router.post("/signups/{signup_id}/offer", response_model=PromotionOut)
async def offer_specific(
    signup_id: uuid.UUID,
    _: Caller = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        promoted = await offer_to_signup(db, signup_id=signup_id, notifier=notifier)
    except BookingError as e:
        raise to_http(e)
    return _promotion_out(promoted)


@router.post("/sessions/{session_id}/sweep", response_model=SweepOut)
async def sweep(
    session_id: uuid.UUID,
    _: Caller = Depends(require_operator),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        res = await sweep_expired_offers(db, session_id=session_id, notifier=notifier)
    except BookingError as e:
        raise to_http(e)
    return SweepOut(expired_count=res.expired_count)
