from typing import List

from fastapi import APIRouter, Depends, status

from shared.utils import SuccessResponse
from storefront.addresses import AddressBook
from storefront.dependencies import get_address_book, get_current_user
from storefront.models import UserDB
from storefront.schemas import AddressCreate, AddressResponse, AddressUpdate, address_response

router = APIRouter(prefix="/api/user/addresses", tags=["addresses"])


@router.get("", response_model=SuccessResponse[List[AddressResponse]])
async def list_addresses(
    user: UserDB = Depends(get_current_user),
    book: AddressBook = Depends(get_address_book),
):
    return SuccessResponse(data=[address_response(a) for a in await book.list(user.id)])


@router.get("/default", response_model=SuccessResponse[AddressResponse])
async def default_address(
    user: UserDB = Depends(get_current_user),
    book: AddressBook = Depends(get_address_book),
):
    return SuccessResponse(data=address_response(await book.get_default(user.id)))


@router.post("", response_model=SuccessResponse[AddressResponse], status_code=status.HTTP_201_CREATED)
async def add_address(
    body: AddressCreate,
    user: UserDB = Depends(get_current_user),
    book: AddressBook = Depends(get_address_book),
):
    address = await book.add(user.id, body.model_dump())
    return SuccessResponse(data=address_response(address), message="Address added")


@router.put("/{address_id}", response_model=SuccessResponse[AddressResponse])
async def update_address(
    address_id: str,
    body: AddressUpdate,
    user: UserDB = Depends(get_current_user),
    book: AddressBook = Depends(get_address_book),
):
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if not fields:
        return SuccessResponse(data=address_response(await book.get(user.id, address_id)))
    address = await book.update(user.id, address_id, fields)
    return SuccessResponse(data=address_response(address), message="Address updated")


@router.put("/{address_id}/default", response_model=SuccessResponse[AddressResponse])
async def set_default_address(
    address_id: str,
    user: UserDB = Depends(get_current_user),
    book: AddressBook = Depends(get_address_book),
):
    address = await book.set_default(user.id, address_id)
    return SuccessResponse(data=address_response(address), message="Default address updated")


@router.delete("/{address_id}", response_model=SuccessResponse[dict])
async def delete_address(
    address_id: str,
    user: UserDB = Depends(get_current_user),
    book: AddressBook = Depends(get_address_book),
):
    await book.remove(user.id, address_id)
    return SuccessResponse(message="Address deleted")
