import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Request, status

from shared.security_config import limiter, login_rate_limit
from shared.utils import (
    SuccessResponse, ConflictError, InvalidCredentialsError, get_password_hash, verify_password
)
from storefront.dependencies import get_current_user, get_storage, get_token_service
from storefront.models import UserDB
from storefront.schemas import (
    AuthResponse, LogoutRequest, OrderResponse, PasswordChange, ProfileUpdate, RefreshTokenRequest,
    TokenResponse, UserLogin, UserRegister, UserResponse, order_response, user_response,
)
from storefront.storage import DuplicateError, Storage
from storefront.tokens import TokenService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["auth"])


def _auth_response(user: UserDB, tokens: TokenService) -> AuthResponse:
    pair = tokens.issue_token_pair(user)
    return AuthResponse(access_token=pair.access_token, refresh_token=pair.refresh_token, user=user_response(user))


@router.post("/register", response_model=SuccessResponse[AuthResponse], status_code=status.HTTP_201_CREATED)
@limiter.limit(login_rate_limit)
async def register(
    request: Request,
    body: UserRegister,
    storage: Storage = Depends(get_storage),
    tokens: TokenService = Depends(get_token_service),
):
    if await storage.get_user_by_username(body.username):
        raise ConflictError("Username already registered")
    if await storage.get_user_by_email(body.email):
        raise ConflictError("Email already registered")

    try:
        user = await storage.create_user(UserDB(
            username=body.username,
            email=body.email,
            password_hash=get_password_hash(body.password),
            first_name=body.first_name,
            last_name=body.last_name,
            preferred_language=body.preferred_language,
        ))
    except DuplicateError as e:
        raise ConflictError(str(e))

    request.state.user_id = user.id
    logger.info("User registered", extra={"user_id": user.id})
    return SuccessResponse(data=_auth_response(user, tokens), message="User registered successfully")


@router.post("/login", response_model=SuccessResponse[AuthResponse])
@limiter.limit(login_rate_limit)
async def login(
    request: Request,
    credentials: UserLogin,
    storage: Storage = Depends(get_storage),
    tokens: TokenService = Depends(get_token_service),
):
    user = await storage.get_user_by_username(credentials.username)
    if not user or not verify_password(credentials.password, user.password_hash):
        logger.warning("Failed login attempt")
        raise InvalidCredentialsError()

    request.state.user_id = user.id
    return SuccessResponse(data=_auth_response(user, tokens))


@router.post("/refresh", response_model=SuccessResponse[TokenResponse])
@limiter.limit("30/minute")
async def refresh_token(
    request: Request,
    body: RefreshTokenRequest,
    tokens: TokenService = Depends(get_token_service),
):
    pair = await tokens.rotate_from_refresh_token(body.refresh_token)
    return SuccessResponse(data=TokenResponse(access_token=pair.access_token, refresh_token=pair.refresh_token))


@router.post("/logout", response_model=SuccessResponse[dict])
async def logout(
    body: Optional[LogoutRequest] = None,
    user: UserDB = Depends(get_current_user),
    tokens: TokenService = Depends(get_token_service),
):
    # Tokens are stateless; only "everywhere" has a server-side effect
    if body is not None and body.everywhere:
        await tokens.revoke_all(user.id)
        return SuccessResponse(message="Logged out on all devices")
    return SuccessResponse(message="Logged out successfully")


@router.get("/me", response_model=SuccessResponse[UserResponse])
async def me(user: UserDB = Depends(get_current_user)):
    return SuccessResponse(data=user_response(user))


@router.put("/me", response_model=SuccessResponse[UserResponse])
async def update_profile(
    body: ProfileUpdate,
    user: UserDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    fields = body.model_dump(exclude_unset=True, exclude_none=True)
    if not fields:
        return SuccessResponse(data=user_response(user))
    try:
        updated = await storage.update_user(user.id, fields)
    except DuplicateError:
        raise ConflictError("Email already registered")
    return SuccessResponse(data=user_response(updated), message="Profile updated successfully")


@router.post("/me/password", response_model=SuccessResponse[TokenResponse])
async def change_password(
    body: PasswordChange,
    user: UserDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
    tokens: TokenService = Depends(get_token_service),
):
    if not verify_password(body.current_password, user.password_hash):
        raise InvalidCredentialsError("Current password is incorrect")

    await storage.update_user(user.id, {"password_hash": get_password_hash(body.new_password)})
    # Every other session has to log in again with the new password
    user = await tokens.revoke_all(user.id)
    pair = tokens.issue_token_pair(user)
    return SuccessResponse(
        data=TokenResponse(access_token=pair.access_token, refresh_token=pair.refresh_token),
        message="Password changed",
    )


@router.get("/me/orders", response_model=SuccessResponse[List[OrderResponse]])
async def my_orders(
    limit: int = 50,
    offset: int = 0,
    user: UserDB = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    orders = await storage.list_orders(user_id=user.id, limit=limit, offset=offset)
    return SuccessResponse(data=[
        order_response(order, await storage.list_order_items(order.id)) for order in orders
    ])
