"""
Cart-to-order transition.

An order is only ever created from a payment intent the provider reports as
``succeeded``. The cart is read, and the order row, its item snapshots and the
removal of the purchased lines from the cart are written, in one storage
transaction, so either all of it happens or none.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from shared.utils import (
    Settings, AppException, AuthenticationRequiredError, EmptyCartError, InvalidPromoCodeError,
    InvalidStatusTransitionError, NotFoundException, NotRefundableError, OrderNotRecordedError,
    OwnershipError, PaymentProviderError, UnauthorizedException,
)
from storefront.cart import CartLine, CartManager, subtotal, total_items
from storefront.models import (
    OrderDB, OrderItemDB, OrderStatus, ShippingAddress, UserDB, can_transition, money
)
from storefront.payments import SUCCEEDED, PaymentGateway, PaymentIntent, Refund, to_minor_units
from storefront.storage import DuplicateError, Storage, TransactionConflict

logger = logging.getLogger(__name__)

# Transaction conflicts are retried this many times before giving up
RECORD_ATTEMPTS = 3

# --- Promo codes ---

PERCENTAGE = "percentage"
FIXED = "fixed"


class Promo(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    type: str
    value: Decimal

    def discount_for(self, amount: Decimal) -> Decimal:
        if self.type == PERCENTAGE:
            return money(amount * self.value / Decimal(100))
        return money(min(self.value, amount))


PROMO_CODES = {
    "SUMMER2023": Promo(code="SUMMER2023", type=FIXED, value=Decimal("10")),
    "WELCOME15": Promo(code="WELCOME15", type=FIXED, value=Decimal("15")),
    "SAVE20": Promo(code="SAVE20", type=FIXED, value=Decimal("20")),
    "TAKE10": Promo(code="TAKE10", type=PERCENTAGE, value=Decimal("10")),
}


def lookup_promo(code: Optional[str]) -> Optional[Promo]:
    if not code:
        return None
    return PROMO_CODES.get(code.strip().upper())


# --- Totals ---

class Quote(BaseModel):
    total_items: int
    subtotal: Decimal
    discount: Decimal
    total: Decimal
    tax: Decimal
    shipping: Decimal
    promo_code: Optional[str] = None

    @property
    def grand_total(self) -> Decimal:
        return money(self.total + self.tax + self.shipping)


class PaymentVerification(BaseModel):
    intent: PaymentIntent
    order: Optional[OrderDB] = None
    items: List[OrderItemDB] = []

    @property
    def paid(self) -> bool:
        return self.intent.status == SUCCEEDED


class CheckoutOrchestrator:
    def __init__(self, storage: Storage, carts: CartManager, gateway: PaymentGateway, config: Settings):
        self.storage = storage
        self.carts = carts
        self.gateway = gateway
        self.config = config

    def compute_quote(self, lines: List[CartLine], promo: Optional[Promo] = None) -> Quote:
        gross = subtotal(lines)
        discount = promo.discount_for(gross) if promo else Decimal("0.00")
        total = money(gross - discount)
        return Quote(
            total_items=total_items(lines),
            subtotal=gross,
            discount=discount,
            total=total,
            tax=money(total * self.config.TAX_RATE),
            shipping=money(self.config.SHIPPING_FEE) if lines else Decimal("0.00"),
            promo_code=promo.code if promo else None,
        )

    async def quote(self, user_id: str, promo_code: Optional[str] = None) -> Quote:
        promo = lookup_promo(promo_code)
        if promo_code and promo is None:
            raise InvalidPromoCodeError()
        lines = [line for line in await self.carts.list_items(user_id) if line.available]
        return self.compute_quote(lines, promo)

    async def create_payment_intent(self, amount: Decimal) -> PaymentIntent:
        intent = await self.gateway.create_payment_intent(amount, self.config.CURRENCY)
        logger.info("Payment intent created", extra={"payment_intent_id": intent.id})
        return intent

    async def verify_payment(
        self,
        payment_intent_id: str,
        user: Optional[UserDB],
        promo_code: Optional[str] = None,
        shipping_address: Optional[ShippingAddress] = None,
    ) -> PaymentVerification:
        intent = await self.gateway.retrieve_payment_intent(payment_intent_id)
        if intent.status != SUCCEEDED:
            logger.info(f"Payment not completed: {intent.status}", extra={"payment_intent_id": payment_intent_id})
            return PaymentVerification(intent=intent)

        log_extra = {"payment_intent_id": payment_intent_id, "user_id": user.id if user else None}
        existing = await self.storage.get_order_by_payment_intent(payment_intent_id)
        if existing is not None:
            if user is None:
                raise UnauthorizedException("Order already recorded; please log in again to view it")
            return await self._already_recorded(existing, user, intent)

        if user is None:
            # Money has been captured; someone has to reconcile this by hand
            logger.error("Payment succeeded without an authenticated purchaser", extra={**log_extra, "error_code": "order_not_recorded"})
            raise AuthenticationRequiredError()

        promo = lookup_promo(promo_code)
        if promo_code and promo is None:
            # The charge already happened; record the order at full price rather than refuse it
            logger.warning(f"Ignoring invalid promo code {promo_code!r} at payment verification", extra=log_extra)

        for attempt in range(1, RECORD_ATTEMPTS + 1):
            try:
                order, items = await self._record_order(user, intent, promo, shipping_address, log_extra)
                break
            except TransactionConflict:
                if attempt == RECORD_ATTEMPTS:
                    logger.exception("Order could not be recorded", extra={**log_extra, "error_code": "order_not_recorded"})
                    raise OrderNotRecordedError()
                logger.warning(f"Order transaction conflicted, retrying ({attempt}/{RECORD_ATTEMPTS})", extra=log_extra)
            except DuplicateError:
                existing = await self.storage.get_order_by_payment_intent(payment_intent_id)
                return await self._already_recorded(existing, user, intent)
            except AppException:
                raise
            except Exception:
                logger.exception("Order could not be recorded", extra={**log_extra, "error_code": "order_not_recorded"})
                raise OrderNotRecordedError()

        logger.info("Order recorded", extra={**log_extra, "order_id": order.id})
        return PaymentVerification(intent=intent, order=order, items=items)

    async def _already_recorded(self, order: OrderDB, user: UserDB, intent: PaymentIntent) -> PaymentVerification:
        if order.user_id != user.id:
            raise OwnershipError("Order not found")
        return PaymentVerification(intent=intent, order=order, items=await self.storage.list_order_items(order.id))

    async def _record_order(self, user, intent, promo, shipping_address, log_extra):
        async with self.storage.transaction() as session:
            if await self.storage.get_order_by_payment_intent(intent.id, session=session):
                raise DuplicateError(intent.id)

            # Read inside the transaction so the order and the cart removal cover the same lines
            lines = [line for line in await self.carts.list_items(user.id, session=session) if line.available]
            if not lines:
                logger.error("Payment succeeded for an empty cart", extra={**log_extra, "error_code": "empty_cart"})
                raise EmptyCartError()

            quote = self.compute_quote(lines, promo)
            if intent.amount is not None and intent.amount != to_minor_units(quote.grand_total):
                logger.warning(
                    f"Charged amount {intent.amount} differs from order total {quote.grand_total}", extra=log_extra
                )

            order = await self.storage.insert_order(
                OrderDB(
                    user_id=user.id,
                    status=OrderStatus.PENDING,
                    total=quote.total,
                    tax=quote.tax,
                    shipping=quote.shipping,
                    discount=quote.discount,
                    promo_code=quote.promo_code,
                    payment_intent_id=intent.id,
                    shipping_address=shipping_address,
                ),
                session=session,
            )
            items = []
            for line in lines:
                items.append(await self.storage.insert_order_item(
                    OrderItemDB(
                        order_id=order.id,
                        product_id=line.item.product_id,
                        title=line.product.title,
                        price=line.unit_price,
                        quantity=line.item.quantity,
                        subtotal=line.subtotal,
                    ),
                    session=session,
                ))
            await self.carts.remove_purchased(lines[0].item.cart_id, lines, session=session)
        return order, items

    # --- Order administration ---

    async def get_order(self, order_id: str) -> OrderDB:
        order = await self.storage.get_order(order_id)
        if order is None:
            raise NotFoundException("Order not found")
        return order

    async def update_status(self, order_id: str, status: str) -> OrderDB:
        status = OrderStatus(status).value
        order = await self.get_order(order_id)
        if not can_transition(order.status, status):
            raise InvalidStatusTransitionError(order.status, status)
        updated = await self.storage.update_order_status(order.id, status, expected_status=order.status)
        if updated is None:
            # Someone else moved the order first
            current = await self.get_order(order_id)
            raise InvalidStatusTransitionError(current.status, status)
        logger.info(f"Order status {order.status} -> {status}", extra={"order_id": order.id})
        return updated


    async def refund(self, order_id: str, payment_intent_id: Optional[str] = None):
        order = await self.get_order(order_id)
        if not order.payment_intent_id:
            raise NotRefundableError()
        if payment_intent_id and payment_intent_id != order.payment_intent_id:
            raise NotRefundableError("Payment intent does not match this order")
        if order.status == OrderStatus.REFUNDED:
            raise NotRefundableError("Order already refunded")

        refund: Refund = await self.gateway.create_refund(order.payment_intent_id)
        if refund.status not in ("succeeded", "pending"):
            logger.error(f"Refund {refund.id} ended as {refund.status}", extra={"order_id": order.id})
            raise PaymentProviderError(f"Refund {refund.status}")

        updated = await self._mark_refunded(order)
        logger.info("Order refunded", extra={"order_id": order.id, "payment_intent_id": order.payment_intent_id})
        return updated, refund

    async def _mark_refunded(self, order: OrderDB) -> OrderDB:
        current = order
        while True:
            updated = await self.storage.update_order_status(
                current.id, OrderStatus.REFUNDED.value, expected_status=current.status
            )
            if updated is not None:
                return updated
            current = await self.get_order(order.id)
            if current.status == OrderStatus.REFUNDED:
                # A concurrent refund of the same order won
                raise NotRefundableError("Order already refunded")
