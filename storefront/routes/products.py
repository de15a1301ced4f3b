from typing import List

from fastapi import APIRouter, Depends, Query

from shared.utils import SuccessResponse, NotFoundException
from storefront.dependencies import get_storage
from storefront.schemas import ProductResponse, product_response
from storefront.storage import Storage

router = APIRouter(prefix="/api/products", tags=["products"])


@router.get("", response_model=SuccessResponse[List[ProductResponse]])
async def list_products(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    storage: Storage = Depends(get_storage),
):
    products = await storage.list_products(limit=limit, offset=offset)
    return SuccessResponse(data=[product_response(p) for p in products])


@router.get("/{product_id}", response_model=SuccessResponse[ProductResponse])
async def get_product(product_id: str, storage: Storage = Depends(get_storage)):
    product = await storage.get_product(product_id)
    if product is None or not product.is_active:
        raise NotFoundException("Product not found")
    return SuccessResponse(data=product_response(product))
