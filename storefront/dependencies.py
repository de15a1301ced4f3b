from typing import Optional

from fastapi import Depends, Request

from shared.utils import (
    ForbiddenException, InvalidTokenError, UnauthorizedException, UserNotFoundError, bearer_token
)
from storefront.addresses import AddressBook
from storefront.cart import CartManager
from storefront.checkout import CheckoutOrchestrator
from storefront.models import UserDB
from storefront.storage import Storage
from storefront.tokens import TokenService


# Services are attached to app.state by create_app
def get_storage(request: Request) -> Storage:
    return request.app.state.storage

def get_token_service(request: Request) -> TokenService:
    return request.app.state.tokens

def get_cart_manager(request: Request) -> CartManager:
    return request.app.state.carts

def get_address_book(request: Request) -> AddressBook:
    return request.app.state.addresses

def get_checkout(request: Request) -> CheckoutOrchestrator:
    return request.app.state.checkout


async def _resolve_user(request: Request, token: str) -> UserDB:
    payload = get_token_service(request).verify_access_token(token)
    user = await get_storage(request).get_user(payload.user_id)
    if user is None:
        raise UserNotFoundError()
    if user.token_version != payload.token_version:
        raise InvalidTokenError("Token has been revoked")
    request.state.user_id = user.id
    return user


async def get_current_user(request: Request, token: Optional[str] = Depends(bearer_token)) -> UserDB:
    if token is None:
        raise UnauthorizedException("Not authenticated")
    return await _resolve_user(request, token)


async def get_optional_user(request: Request, token: Optional[str] = Depends(bearer_token)) -> Optional[UserDB]:
    """Anonymous callers get None; a token that is present but invalid is still rejected."""
    if token is None:
        return None
    return await _resolve_user(request, token)


async def require_admin(user: UserDB = Depends(get_current_user)) -> UserDB:
    if not user.is_admin:
        raise ForbiddenException()
    return user
