import logging
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel

from shared.utils import (
    InvalidQuantityError, OwnershipError, ProductUnavailableError, UnknownProductError
)
from storefront.models import CartDB, CartItemDB, ProductDB, money
from storefront.storage import Storage

logger = logging.getLogger(__name__)


class CartLine(BaseModel):
    """A cart item joined with the product's current catalog data."""
    item: CartItemDB
    product: Optional[ProductDB] = None

    @property
    def available(self) -> bool:
        return self.product is not None and self.product.is_active

    @property
    def unit_price(self) -> Decimal:
        # Products removed from the catalog contribute nothing
        return self.product.effective_price() if self.available else Decimal("0.00")

    @property
    def subtotal(self) -> Decimal:
        return money(self.unit_price * self.item.quantity)


def total_items(lines: List[CartLine]) -> int:
    return sum(line.item.quantity for line in lines)


def subtotal(lines: List[CartLine]) -> Decimal:
    return money(sum((line.subtotal for line in lines), Decimal(0)))


class CartManager:
    def __init__(self, storage: Storage):
        self.storage = storage

    async def get_cart(self, user_id: str) -> CartDB:
        return await self.storage.get_or_create_cart(user_id)

    async def list_items(self, user_id: str, session=None) -> List[CartLine]:
        cart = await self.get_cart(user_id)
        items = await self.storage.list_cart_items(cart.id, session=session)
        lines = []
        for item in items:
            product = await self.storage.get_product(item.product_id, session=session)
            lines.append(CartLine(item=item, product=product))
        return lines

    async def add_item(self, user_id: str, product_id: str, quantity: int = 1) -> CartLine:
        if quantity < 1:
            raise InvalidQuantityError()
        product = await self.storage.get_product(product_id)
        if product is None:
            raise UnknownProductError(product_id)
        if not product.is_active:
            raise ProductUnavailableError()

        cart = await self.get_cart(user_id)
        item = await self.storage.merge_cart_item(cart.id, product.id, quantity)
        logger.info("Cart item merged", extra={"user_id": user_id, "cart_id": cart.id})
        return CartLine(item=item, product=product)

    async def _owned_item(self, user_id: str, cart_item_id: str) -> CartItemDB:
        cart = await self.get_cart(user_id)
        item = await self.storage.get_cart_item(cart_item_id)
        if item is None or item.cart_id != cart.id:
            raise OwnershipError()
        return item

    async def update_quantity(self, user_id: str, cart_item_id: str, quantity: int) -> CartLine:
        if quantity < 1:
            raise InvalidQuantityError("Quantity must be at least 1; remove the item instead")
        item = await self._owned_item(user_id, cart_item_id)
        # cart_id is part of the write filter, so a concurrent removal shows up as None
        updated = await self.storage.set_cart_item_quantity(item.cart_id, item.id, quantity)
        if updated is None:
            raise OwnershipError()
        return CartLine(item=updated, product=await self.storage.get_product(updated.product_id))

    async def remove_item(self, user_id: str, cart_item_id: str) -> None:
        item = await self._owned_item(user_id, cart_item_id)
        if not await self.storage.delete_cart_item(item.cart_id, item.id):
            raise OwnershipError()

    async def clear_cart(self, cart_id: str, session=None) -> int:
        return await self.storage.clear_cart(cart_id, session=session)

    async def remove_purchased(self, cart_id: str, lines: List[CartLine], session=None) -> None:
        """Take the purchased quantities out of the cart, keeping anything added since they were read."""
        quantities: Dict[str, int] = {line.item.id: line.item.quantity for line in lines}
        await self.storage.remove_cart_quantities(cart_id, quantities, session=session)
