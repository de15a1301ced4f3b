import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from shared.utils import SuccessResponse, ConflictError, NotFoundException
from storefront.checkout import CheckoutOrchestrator
from storefront.dependencies import get_checkout, get_storage, get_token_service, require_admin
from storefront.models import ProductDB
from storefront.schemas import (
    AdminUserUpdate, OrderResponse, OrderStatusUpdate, ProductCreate, ProductResponse, ProductUpdate,
    RefundRequest, RefundResponse, UserResponse, order_response, product_response, user_response,
)
from storefront.storage import DuplicateError, Storage
from storefront.tokens import TokenService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# --- Orders ---

@router.get("/orders", response_model=SuccessResponse[List[OrderResponse]])
async def list_orders(
    user_id: Optional[str] = Query(None, alias="userId"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    storage: Storage = Depends(get_storage),
):
    orders = await storage.list_orders(user_id=user_id, limit=limit, offset=offset)
    return SuccessResponse(data=[
        order_response(order, await storage.list_order_items(order.id)) for order in orders
    ])


@router.patch("/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(
    order_id: str,
    body: OrderStatusUpdate,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    storage: Storage = Depends(get_storage),
):
    order = await checkout.update_status(order_id, body.status)
    return SuccessResponse(
        data=order_response(order, await storage.list_order_items(order.id)),
        message=f"Order status updated to {order.status}",
    )


@router.post("/orders/{order_id}/refund", response_model=SuccessResponse[RefundResponse])
async def refund_order(
    order_id: str,
    body: Optional[RefundRequest] = None,
    checkout: CheckoutOrchestrator = Depends(get_checkout),
    storage: Storage = Depends(get_storage),
):
    order, refund = await checkout.refund(order_id, body.payment_intent_id if body else None)
    return SuccessResponse(
        data=RefundResponse(
            refund_id=refund.id,
            refund_status=refund.status,
            order=order_response(order, await storage.list_order_items(order.id)),
        ),
        message="Order refunded",
    )


# --- Users ---

@router.get("/users", response_model=SuccessResponse[List[UserResponse]])
async def list_users(storage: Storage = Depends(get_storage)):
    return SuccessResponse(data=[user_response(u) for u in await storage.list_users()])


@router.patch("/users/{user_id}", response_model=SuccessResponse[UserResponse])
async def update_user(user_id: str, body: AdminUserUpdate, storage: Storage = Depends(get_storage)):
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    try:
        user = await storage.update_user(user_id, fields) if fields else await storage.get_user(user_id)
    except DuplicateError:
        raise ConflictError("Email already registered")
    if user is None:
        raise NotFoundException("User not found")
    logger.info(f"Admin updated user fields: {sorted(fields)}", extra={"user_id": user_id})
    return SuccessResponse(data=user_response(user), message="User updated")


@router.post("/users/{user_id}/revoke-tokens", response_model=SuccessResponse[UserResponse])
async def revoke_tokens(
    user_id: str,
    storage: Storage = Depends(get_storage),
    tokens: TokenService = Depends(get_token_service),
):
    if await storage.get_user(user_id) is None:
        raise NotFoundException("User not found")
    user = await tokens.revoke_all(user_id)
    return SuccessResponse(data=user_response(user), message="All sessions revoked")


# --- Catalog ---

@router.post("/products", response_model=SuccessResponse[ProductResponse], status_code=status.HTTP_201_CREATED)
async def create_product(body: ProductCreate, storage: Storage = Depends(get_storage)):
    product = await storage.create_product(ProductDB(**body.model_dump()))
    logger.info(f"Product created: {product.id}")
    return SuccessResponse(data=product_response(product), message="Product created")


@router.patch("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def update_product(product_id: str, body: ProductUpdate, storage: Storage = Depends(get_storage)):
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    product = await storage.update_product(product_id, fields) if fields else await storage.get_product(product_id)
    if product is None:
        raise NotFoundException("Product not found")
    return SuccessResponse(data=product_response(product), message="Product updated")


@router.delete("/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def delete_product(product_id: str, storage: Storage = Depends(get_storage)):
    product = await storage.update_product(product_id, {"is_active": False})
    if product is None:
        raise NotFoundException("Product not found")
    logger.info(f"Product deactivated: {product_id}")
    return SuccessResponse(data=product_response(product), message="Product deactivated")
