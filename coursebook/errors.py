from __future__ import annotations
import uuid


class BookingError(Exception): ...


class NotFound(BookingError): ...
class Forbidden(BookingError): ...
class SessionNotOpen(BookingError): ...
class InvalidTransition(BookingError): ...
class CapacityBelowConfirmed(BookingError): ...


class CapacityExceeded(BookingError):
    """Admission lost the race for the last spot; the caller should queue instead."""


class AlreadyCancelled(BookingError):
    """Transition attempted from a terminal signup status."""


class OfferExpiredOrInvalid(BookingError):
    def __init__(self, reason: str = "invalid_token") -> None:
        super().__init__(reason)
        self.reason = reason  # 'invalid_token' | 'expired'


class RefundFailed(BookingError):
    def __init__(self, signup_id: uuid.UUID, reason: str) -> None:
        super().__init__(f"refund failed for signup {signup_id}: {reason}")
        self.signup_id = signup_id
        self.reason = reason


class PaymentAuthorizationFailed(BookingError):
    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
