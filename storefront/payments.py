import logging
from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import stripe
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from shared.utils import PaymentProviderError, PaymentProviderUnavailableError

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"


class PaymentIntent(BaseModel):
    id: str
    status: str
    client_secret: Optional[str] = None
    amount: Optional[int] = None  # smallest currency unit


class Refund(BaseModel):
    id: str
    status: str


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


class PaymentGateway(ABC):
    """The payment provider as seen by checkout: create, look up and refund intents."""

    @abstractmethod
    async def create_payment_intent(self, amount: Decimal, currency: str) -> PaymentIntent: ...

    @abstractmethod
    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent: ...

    @abstractmethod
    async def create_refund(self, payment_intent_id: str) -> Refund: ...


class StripeGateway(PaymentGateway):
    def __init__(self, api_key: Optional[str], timeout: float = 20):
        self.client = None
        if api_key:
            self.client = stripe.StripeClient(
                api_key, max_network_retries=2, http_client=stripe.RequestsClient(timeout=timeout)
            )

    def _require_client(self) -> stripe.StripeClient:
        if self.client is None:
            raise PaymentProviderUnavailableError(
                "Stripe payment processing is unavailable. Please configure STRIPE_SECRET_KEY."
            )
        return self.client

    async def _call(self, operation: str, fn, *args, **kwargs):
        client = self._require_client()
        try:
            return await run_in_threadpool(fn(client), *args, **kwargs)
        except stripe.APIConnectionError as e:
            # Timeouts land here too; callers may retry, the payment state is unknown
            logger.warning(f"Stripe {operation} unreachable: {e}")
            raise PaymentProviderUnavailableError()
        except stripe.StripeError as e:
            message = getattr(e, "user_message", None) or str(e)
            logger.error(f"Stripe {operation} failed: {message}")
            raise PaymentProviderError(message)

    async def create_payment_intent(self, amount: Decimal, currency: str) -> PaymentIntent:
        intent = await self._call(
            "create_payment_intent",
            lambda c: c.payment_intents.create,
            params={
                "amount": to_minor_units(amount),
                "currency": currency,
                "payment_method_types": ["card"],
                "metadata": {"integration_check": "e_commerce_payment"},
            },
        )
        return PaymentIntent(id=intent.id, status=intent.status, client_secret=intent.client_secret, amount=intent.amount)

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        intent = await self._call("retrieve_payment_intent", lambda c: c.payment_intents.retrieve, payment_intent_id)
        return PaymentIntent(id=intent.id, status=intent.status, amount=intent.amount)

    async def create_refund(self, payment_intent_id: str) -> Refund:
        refund = await self._call(
            "create_refund",
            lambda c: c.refunds.create,
            params={"payment_intent": payment_intent_id},
            # Concurrent refunds of one intent collapse into a single provider refund
            options={"idempotency_key": f"refund-{payment_intent_id}"},
        )
        return Refund(id=refund.id, status=refund.status)
