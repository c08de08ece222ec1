from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

import stripe

from ..config import get_settings

log = logging.getLogger(__name__)


class PaymentProcessorError(Exception):
    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class PaymentProcessor(Protocol):
    """Authorize-then-capture processor. Every call either succeeds or raises PaymentProcessorError."""

    async def authorize(
        self,
        *,
        amount_cents: int,
        currency: str,
        payment_method: str,
        idempotency_key: str,
        fee_cents: int = 0,
        destination: str | None = None,
        metadata: dict | None = None,
    ) -> str: ...

    async def capture(self, hold_ref: str) -> None: ...

    async def void(self, hold_ref: str) -> None: ...

    async def refund(self, capture_ref: str, *, idempotency_key: str) -> None: ...


class StripePaymentProcessor:
    """
    PaymentIntents with capture_method=manual. The hold reference and the capture
    reference are the same PaymentIntent id, so refunds go by payment_intent.
    """

    def __init__(self, secret_key: str | None = None) -> None:
        settings = get_settings()
        stripe.api_key = secret_key or settings.STRIPE_SECRET_KEY
        stripe.api_version = settings.STRIPE_API_VERSION
        stripe.max_network_retries = settings.STRIPE_MAX_RETRIES

    async def _call(self, fn, *args: Any, **kwargs: Any) -> Any:
        # stripe-python is synchronous
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, lambda: fn(*args, **kwargs))
        except stripe.CardError as e:
            raise PaymentProcessorError(e.user_message or "card declined", code=e.code) from e
        except stripe.StripeError as e:
            raise PaymentProcessorError(e.user_message or str(e), code=getattr(e, "code", None)) from e

    async def authorize(
        self,
        *,
        amount_cents: int,
        currency: str,
        payment_method: str,
        idempotency_key: str,
        fee_cents: int = 0,
        destination: str | None = None,
        metadata: dict | None = None,
    ) -> str:
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "payment_method": payment_method,
            "payment_method_types": ["card"],
            "capture_method": "manual",
            "confirm": True,
            "metadata": metadata or {},
        }
        if destination:
            params["transfer_data"] = {"destination": destination}
            if fee_cents:
                params["application_fee_amount"] = fee_cents

        intent = await self._call(stripe.PaymentIntent.create, idempotency_key=idempotency_key, **params)
        if intent.status != "requires_capture":
            raise PaymentProcessorError(f"authorization not held (status={intent.status})", code=intent.status)
        log.info("payment_authorized", extra={"payment_intent": intent.id, "amount_cents": amount_cents})
        return intent.id

    async def capture(self, hold_ref: str) -> None:
        await self._call(stripe.PaymentIntent.capture, hold_ref)

    async def void(self, hold_ref: str) -> None:
        await self._call(stripe.PaymentIntent.cancel, hold_ref)

    async def refund(self, capture_ref: str, *, idempotency_key: str) -> None:
        refund = await self._call(stripe.Refund.create, payment_intent=capture_ref, idempotency_key=idempotency_key)
        if refund.status == "failed":
            raise PaymentProcessorError("refund failed", code=getattr(refund, "failure_reason", None))


_processor: Optional[StripePaymentProcessor] = None


def get_payment_processor() -> PaymentProcessor:
    global _processor
    if _processor is None:
        _processor = StripePaymentProcessor()
    return _processor
