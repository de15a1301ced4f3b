from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from shared.security_config import limiter
from shared.utils import SuccessResponse
from storefront.addresses import AddressBook
from storefront.checkout import CheckoutOrchestrator, PaymentVerification, lookup_promo
from storefront.dependencies import get_address_book, get_checkout, get_current_user, get_optional_user
from storefront.models import UserDB
from storefront.schemas import (
    CheckoutDetails, PaymentIntentCreate, PaymentIntentResponse, PaymentVerificationResponse, PromoRequest,
    PromoResponse, QuoteRequest, QuoteResponse, order_response, quote_response,
)

router = APIRouter(prefix="/api", tags=["checkout"])


@router.post("/apply-promo", response_model=SuccessResponse[PromoResponse])
async def apply_promo(body: PromoRequest):
    promo = lookup_promo(body.code)
    if promo is None:
        return SuccessResponse(data=PromoResponse(valid=False, message="Invalid promo code"))
    return SuccessResponse(data=PromoResponse(
        valid=True, code=promo.code, type=promo.type, discount=promo.value, message="Promo code applied",
    ))


@router.post("/checkout/quote", response_model=SuccessResponse[QuoteResponse])
async def quote(
    body: Optional[QuoteRequest] = None,
    user: UserDB = Depends(get_current_user),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    result = await checkout.quote(user.id, body.promo_code if body else None)
    return SuccessResponse(data=quote_response(result))


@router.post("/create-payment-intent", response_model=SuccessResponse[PaymentIntentResponse])
@limiter.limit("20/minute")
async def create_payment_intent(
    request: Request,
    body: PaymentIntentCreate,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    intent = await checkout.create_payment_intent(body.amount)
    return SuccessResponse(data=PaymentIntentResponse(client_secret=intent.client_secret, payment_intent_id=intent.id))


def _verification_response(result: PaymentVerification):
    order = order_response(result.order, result.items) if result.order else None
    data = PaymentVerificationResponse(
        payment_intent_id=result.intent.id, status=result.intent.status, paid=result.paid, order=order,
    )
    if not result.paid:
        return SuccessResponse(data=data, message="payment_failed")
    return SuccessResponse(data=data, message="Payment verified")


@router.get("/verify-payment/{payment_intent_id}", response_model=SuccessResponse[PaymentVerificationResponse])
async def verify_payment(
    payment_intent_id: str,
    promo_code: Optional[str] = Query(None, alias="promoCode"),
    user: Optional[UserDB] = Depends(get_optional_user),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
):
    result = await checkout.verify_payment(payment_intent_id, user, promo_code=promo_code)
    return _verification_response(result)


@router.post("/verify-payment/{payment_intent_id}", response_model=SuccessResponse[PaymentVerificationResponse])
async def verify_payment_with_details(
    payment_intent_id: str,
    body: CheckoutDetails,
    user: Optional[UserDB] = Depends(get_optional_user),
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    book: AddressBook = Depends(get_address_book),
):
    shipping_address = body.shipping_address
    if shipping_address is None and body.address_id and user is not None:
        shipping_address = await book.shipping_address(user.id, body.address_id)
    result = await checkout.verify_payment(
        payment_intent_id, user, promo_code=body.promo_code, shipping_address=shipping_address,
    )
    return _verification_response(result)
