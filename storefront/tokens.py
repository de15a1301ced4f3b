import logging
from datetime import timedelta
from typing import Optional

from pydantic import BaseModel

from shared.utils import (
    Settings, create_access_token, create_refresh_token, verify_token, verify_refresh_token,
    InvalidTokenError, UserNotFoundError,
)
from storefront.models import UserDB
from storefront.storage import Storage

logger = logging.getLogger(__name__)


class TokenPayload(BaseModel):
    user_id: str
    username: str
    token_version: int = 0


class TokenPair(BaseModel):
    access_token: str
    refresh_token: str


def _claims(user: UserDB) -> dict:
    return {"sub": user.id, "username": user.username, "ver": user.token_version}


def _payload(claims: dict) -> TokenPayload:
    return TokenPayload(
        user_id=claims["sub"],
        username=claims.get("username", ""),
        token_version=claims.get("ver", 0),
    )


class TokenService:
    """
    Issues and checks signed access/refresh pairs. Verification is stateless
    (signature, expiry and token type); only rotation touches storage, to
    re-load the user and compare the embedded token version.
    """

    def __init__(self, storage: Storage, config: Settings):
        self.storage = storage
        self.config = config

    def issue_token_pair(
        self,
        user: UserDB,
        access_expires: Optional[timedelta] = None,
        refresh_expires: Optional[timedelta] = None,
    ) -> TokenPair:
        claims = _claims(user)
        return TokenPair(
            access_token=create_access_token(claims, access_expires, config=self.config),
            refresh_token=create_refresh_token(claims, refresh_expires, config=self.config),
        )

    def verify_access_token(self, token: str) -> TokenPayload:
        return _payload(verify_token(token, config=self.config))

    def verify_refresh_token(self, token: str) -> TokenPayload:
        return _payload(verify_refresh_token(token, config=self.config))

    async def rotate_from_refresh_token(self, refresh_token: str) -> TokenPair:
        payload = self.verify_refresh_token(refresh_token)
        user = await self.storage.get_user(payload.user_id)
        if user is None:
            logger.warning("Refresh token for missing user", extra={"user_id": payload.user_id})
            raise UserNotFoundError()
        if user.token_version != payload.token_version:
            raise InvalidTokenError("Token has been revoked")
        # Both tokens are reissued so no single refresh token outlives its rotation window
        return self.issue_token_pair(user)

    async def revoke_all(self, user_id: str) -> UserDB:
        user = await self.storage.increment_token_version(user_id)
        if user is None:
            raise UserNotFoundError()
        logger.info("Revoked outstanding tokens", extra={"user_id": user_id})
        return user
