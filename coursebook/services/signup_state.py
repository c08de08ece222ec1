from __future__ import annotations
from datetime import datetime

from ..errors import AlreadyCancelled, InvalidTransition
from ..models import Signup
from ..repos.signups import TERMINAL_STATUSES

# from-status -> allowed to-statuses; (new) -> confirmed|waitlist happens at insert time
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "waitlist": frozenset({"confirmed", "cancelled", "session_cancelled"}),
    "confirmed": frozenset({"cancelled", "session_cancelled"}),
}


def ensure_active(signup: Signup) -> None:
    if signup.status in TERMINAL_STATUSES:
        raise AlreadyCancelled(f"signup {signup.id} is {signup.status}")


def transition(signup: Signup, to_status: str, *, now: datetime) -> str:
    """Move a signup along the state machine. Returns the status it left."""
    ensure_active(signup)
    from_status = signup.status
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, frozenset()):
        raise InvalidTransition(f"{from_status} -> {to_status} not allowed")

    if to_status in TERMINAL_STATUSES:
        signup.canceled_from_status = from_status
        signup.canceled_at = now
        if signup.offer_status == "pending":
            signup.offer_status = "expired"
        signup.offer_claim_token = None
        signup.offer_expires_at = None

    signup.status = to_status
    return from_status


def holds_live_offer(signup: Signup, now: datetime) -> bool:
    return (
        signup.status == "waitlist"
        and signup.offer_status == "pending"
        and signup.offer_expires_at is not None
        and signup.offer_expires_at > now
    )
