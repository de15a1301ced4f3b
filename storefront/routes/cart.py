from typing import List, Optional

from fastapi import APIRouter, Depends

from shared.utils import SuccessResponse
from storefront.cart import CartManager
from storefront.dependencies import get_cart_manager, get_current_user, get_optional_user
from storefront.models import UserDB
from storefront.schemas import CartItemAdd, CartItemResponse, CartItemUpdate, cart_item_response

router = APIRouter(prefix="/api/cart", tags=["cart"])


@router.get("/items", response_model=SuccessResponse[List[CartItemResponse]])
async def list_items(
    user: Optional[UserDB] = Depends(get_optional_user),
    carts: CartManager = Depends(get_cart_manager),
):
    if user is None:
        return SuccessResponse(data=[])
    lines = await carts.list_items(user.id)
    return SuccessResponse(data=[cart_item_response(line) for line in lines])


@router.post("/items", response_model=SuccessResponse[CartItemResponse])
async def add_item(
    body: CartItemAdd,
    user: UserDB = Depends(get_current_user),
    carts: CartManager = Depends(get_cart_manager),
):
    line = await carts.add_item(user.id, body.product_id, body.quantity)
    return SuccessResponse(data=cart_item_response(line), message="Item added to cart")


@router.put("/items/{item_id}", response_model=SuccessResponse[CartItemResponse])
async def update_item(
    item_id: str,
    body: CartItemUpdate,
    user: UserDB = Depends(get_current_user),
    carts: CartManager = Depends(get_cart_manager),
):
    line = await carts.update_quantity(user.id, item_id, body.quantity)
    return SuccessResponse(data=cart_item_response(line), message="Cart item updated")


@router.delete("/items/{item_id}", response_model=SuccessResponse[dict])
async def remove_item(
    item_id: str,
    user: UserDB = Depends(get_current_user),
    carts: CartManager = Depends(get_cart_manager),
):
    await carts.remove_item(user.id, item_id)
    return SuccessResponse(message="Item removed from cart")


@router.delete("/items", response_model=SuccessResponse[dict])
async def clear_cart(
    user: UserDB = Depends(get_current_user),
    carts: CartManager = Depends(get_cart_manager),
):
    cart = await carts.get_cart(user.id)
    removed = await carts.clear_cart(cart.id)
    return SuccessResponse(data={"removed": removed}, message="Cart cleared")
