from __future__ import annotations
from fastapi import HTTPException, status

from ..errors import (
    AlreadyCancelled,
    BookingError,
    CapacityBelowConfirmed,
    CapacityExceeded,
    Forbidden,
    InvalidTransition,
    NotFound,
    OfferExpiredOrInvalid,
    PaymentAuthorizationFailed,
    RefundFailed,
    SessionNotOpen,
)

_STATUS: list[tuple[type[BookingError], int]] = [
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (OfferExpiredOrInvalid, status.HTTP_410_GONE),
    (PaymentAuthorizationFailed, status.HTTP_402_PAYMENT_REQUIRED),
    (RefundFailed, status.HTTP_502_BAD_GATEWAY),
    (SessionNotOpen, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (CapacityBelowConfirmed, status.HTTP_409_CONFLICT),
    (CapacityExceeded, status.HTTP_409_CONFLICT),
    (AlreadyCancelled, status.HTTP_409_CONFLICT),
]


def to_http(exc: BookingError) -> HTTPException:
    for cls, code in _STATUS:
        if isinstance(exc, cls):
            return HTTPException(status_code=code, detail=f"{type(exc).__name__}: {exc}")
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
