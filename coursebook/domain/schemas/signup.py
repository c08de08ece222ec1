import uuid
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field, StringConstraints
from typing import Optional, Literal, Annotated

Name = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=120)]


class SignupIn(BaseModel):
    name: Name
    email: EmailStr
    phone: Optional[Annotated[str, StringConstraints(strip_whitespace=True, max_length=32)]] = None
    payment_method: Optional[str] = Field(default=None, description="processor payment method id, e.g. pm_...")


class CheckoutOut(BaseModel):
    outcome: str  # confirmed | queued | duplicate | lost_race | expired | capture_failed
    signup_id: Optional[uuid.UUID] = None
    status: Optional[str] = None
    waitlist_position: Optional[int] = None
    charged: bool = False
    cancel_token: Optional[str] = None


class CancelIn(BaseModel):
    cancel_token: Optional[str] = None
    refund: bool = True
    reason: Optional[Annotated[str, StringConstraints(strip_whitespace=True, max_length=500)]] = None


class CancelOut(BaseModel):
    signup_id: uuid.UUID
    status: str  # cancelled | session_cancelled
    refunded: bool
    refund_cents: int
    already_cancelled: bool


class ClaimIn(BaseModel):
    token: Annotated[str, StringConstraints(strip_whitespace=True, min_length=8)]
    payment_method: Optional[str] = None


class PromoteIn(BaseModel):
    count: Annotated[int, Field(ge=1, le=100)] = 1


class PromotionOut(BaseModel):
    outcome: Literal["promoted", "no_eligible_entries"]
    signup_id: Optional[uuid.UUID] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None


class SweepOut(BaseModel):
    expired_count: int


class CapacityOut(BaseModel):
    session_id: uuid.UUID
    capacity: int
    confirmed_count: int
    pending_offer_count: int
    waitlist_count: int
    available: Optional[int] = None  # null = unlimited


class WaitlistRowOut(BaseModel):
    signup_id: uuid.UUID
    participant_name: str
    participant_email: str
    waitlist_position: Optional[int] = None
    offer_status: str
    offer_expires_at: Optional[datetime] = None
    created_at: datetime


class SessionCreateIn(BaseModel):
    title: Name
    starts_at: datetime
    capacity: Annotated[int, Field(ge=0)]
    price_cents: Annotated[int, Field(ge=0)] = 0
    currency: Optional[Annotated[str, StringConstraints(strip_whitespace=True, to_lower=True, min_length=3, max_length=3)]] = None  # falls back to DEFAULT_CURRENCY
    organization_id: Optional[uuid.UUID] = None
    payout_account_id: Optional[str] = None
    status: Literal["draft", "upcoming", "active"] = "upcoming"


class SessionUpdateIn(BaseModel):
    capacity: Optional[Annotated[int, Field(ge=0)]] = None
    status: Optional[Literal["upcoming", "active", "completed"]] = None


class SessionOut(BaseModel):
    id: uuid.UUID
    title: str
    starts_at: datetime
    capacity: int
    price_cents: int
    currency: str
    status: str


class SessionCancelIn(BaseModel):
    reason: Optional[Annotated[str, StringConstraints(strip_whitespace=True, max_length=500)]] = None
    notify: bool = True


class BulkCancelOut(BaseModel):
    refunds_processed: int
    refunds_failed: int
    notifications_sent: int
    total_refunded_cents: int
