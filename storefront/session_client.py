"""
Async API client that keeps an authenticated storefront session valid.

Tokens live in a ``TokenStore`` under the keys ``accessToken`` and
``refreshToken``. Every request carries the current access token; a 401 is
answered by rotating the pair once through ``POST /api/refresh`` and retrying
the original request exactly once. Concurrent callers that hit a 401 at the
same time share a single rotation.

    async with SessionClient("http://localhost:8000", store=FileTokenStore()) as session:
        await session.login("alice", "Secret123")
        await session.add_to_cart(product_id, 2)
"""
import asyncio
import contextlib
import json
import logging
import os
import tempfile
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from jose import JWTError, jwt

logger = logging.getLogger(__name__)

ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"

# Access tokens live 15 minutes; rotate one minute before they lapse
REFRESH_INTERVAL_SECONDS = 14 * 60

# Statuses with which /api/refresh rejects the refresh token itself
REFRESH_REJECTED = {400, 401, 403, 404, 422}


class SessionExpiredError(Exception):
    """The refresh token was rejected; the user has to log in again."""


class APIError(Exception):
    def __init__(self, status_code: int, error: str, code: Optional[str] = None):
        super().__init__(f"{status_code}: {error}")
        self.status_code = status_code
        self.error = error
        self.code = code


# --- Token storage ---

class TokenStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set(self, key: str, value: str) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...


class MemoryTokenStore(TokenStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._values: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str) -> None:
        self._values[key] = value

    def delete(self, key: str) -> None:
        self._values.pop(key, None)


class FileTokenStore(TokenStore):
    """JSON file readable only by its owner; every write replaces the file atomically."""

    def __init__(self, path: Optional[os.PathLike] = None):
        self.path = Path(path) if path else Path.home() / ".storefront" / "session.json"

    def _read(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except ValueError:
            logger.warning(f"Ignoring unreadable session file {self.path}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".session-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            os.unlink(tmp)
            raise

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str) -> None:
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


def token_expired(token: str, leeway: int = 0) -> bool:
    try:
        exp = jwt.get_unverified_claims(token).get("exp")
    except JWTError:
        return True
    return exp is None or exp <= time.time() + leeway


# --- Client ---

class SessionClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        store: Optional[TokenStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        auto_refresh: bool = True,
        refresh_interval: float = REFRESH_INTERVAL_SECONDS,
    ):
        self.store = store or MemoryTokenStore()
        self.client = httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self.auto_refresh = auto_refresh
        self.refresh_interval = refresh_interval
        self._rotation: Optional[asyncio.Future] = None
        self._refresher: Optional[asyncio.Task] = None
        self._profile: Optional[dict] = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self) -> None:
        await self.stop_background_refresh()
        if self._rotation is not None and not self._rotation.done():
            with contextlib.suppress(SessionExpiredError, httpx.HTTPError):
                await self._rotation
        await self.client.aclose()

    @property
    def access_token(self) -> Optional[str]:
        return self.store.get(ACCESS_TOKEN_KEY)

    @property
    def refresh_token(self) -> Optional[str]:
        return self.store.get(REFRESH_TOKEN_KEY)

    def _save_pair(self, data: dict) -> None:
        self.store.set(ACCESS_TOKEN_KEY, data["accessToken"])
        self.store.set(REFRESH_TOKEN_KEY, data["refreshToken"])

    def clear_session(self) -> None:
        self.store.delete(ACCESS_TOKEN_KEY)
        self.store.delete(REFRESH_TOKEN_KEY)
        self._profile = None

    # --- Rotation ---

    async def rotate(self) -> str:
        """Rotate the token pair, joining a rotation already in flight. Returns the new access token."""
        if self._rotation is None or self._rotation.done():
            self._rotation = asyncio.ensure_future(self._rotate())
        # A cancelled caller must not cancel the rotation the others are waiting on
        return await asyncio.shield(self._rotation)

    async def _rotate(self) -> str:
        refresh_token = self.refresh_token
        if not refresh_token:
            self.clear_session()
            raise SessionExpiredError("No refresh token")

        # Transport errors propagate with the tokens left in place
        response = await self.client.post("/api/refresh", json={"refreshToken": refresh_token})
        if response.status_code in REFRESH_REJECTED:
            logger.info("Refresh token rejected, session cleared")
            self.clear_session()
            raise SessionExpiredError(_error_message(response))
        response.raise_for_status()

        data = response.json()["data"]
        self._save_pair(data)
        logger.debug("Session tokens rotated")
        return data["accessToken"]

    def start_background_refresh(self) -> None:
        if self._refresher is None or self._refresher.done():
            self._refresher = asyncio.ensure_future(self._refresh_loop())

    async def stop_background_refresh(self) -> None:
        if self._refresher is None:
            return
        self._refresher.cancel()
        try:
            await self._refresher
        except asyncio.CancelledError:
            pass
        self._refresher = None

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            if not self.refresh_token:
                continue
            try:
                await self.rotate()
            except SessionExpiredError:
                logger.warning("Background refresh stopped: session expired")
                return
            except httpx.HTTPError as e:
                logger.warning(f"Background token refresh failed: {e}")

    # --- Requests ---

    async def _send(self, method: str, url: str, token: Optional[str], headers: Optional[dict], **kwargs) -> httpx.Response:
        headers = dict(headers or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return await self.client.request(method, url, headers=headers, **kwargs)

    async def request(
        self, method: str, url: str, *, authenticated: bool = True, headers: Optional[dict] = None, **kwargs
    ) -> httpx.Response:
        if not authenticated:
            return await self.client.request(method, url, headers=headers, **kwargs)

        sent = self.access_token
        response = await self._send(method, url, sent, headers, **kwargs)
        if response.status_code != 401 or not self.refresh_token:
            return response

        current = self.access_token
        if current and current != sent:
            # Someone else rotated while this request was in flight
            token = current
        else:
            token = await self.rotate()
        return await self._send(method, url, token, headers, **kwargs)

    async def whoami(self) -> Optional[dict]:
        """Current profile, or None when there is no usable session. Never raises for auth failures."""
        token = self.access_token
        if not token and not self.refresh_token:
            return None
        if token and self._profile is not None and not token_expired(token):
            return self._profile

        try:
            response = await self.request("GET", "/api/me")
        except SessionExpiredError:
            return None
        except httpx.HTTPError as e:
            logger.warning(f"Profile lookup failed: {e}")
            return None
        if response.status_code != 200:
            return None
        self._profile = response.json()["data"]
        return self._profile

    # --- Auth ---

    async def _start_session(self, data: dict) -> dict:
        self._save_pair(data)
        self._profile = data.get("user")
        if self.auto_refresh:
            self.start_background_refresh()
        return self._profile

    async def login(self, username: str, password: str) -> dict:
        response = await self.request(
            "POST", "/api/login", authenticated=False, json={"username": username, "password": password}
        )
        return await self._start_session(_data(response))

    async def register(self, username: str, email: str, password: str, **profile: Any) -> dict:
        body = {"username": username, "email": email, "password": password, **profile}
        response = await self.request("POST", "/api/register", authenticated=False, json=body)
        return await self._start_session(_data(response))

    async def logout(self, everywhere: bool = False) -> None:
        try:
            if self.access_token:
                await self.request("POST", "/api/logout", json={"everywhere": everywhere})
        finally:
            await self.stop_background_refresh()
            self.clear_session()

    # --- Cart ---

    async def get_cart(self) -> list:
        return _data(await self.request("GET", "/api/cart/items"))

    async def add_to_cart(self, product_id: str, quantity: int = 1) -> dict:
        return _data(await self.request("POST", "/api/cart/items", json={"productId": product_id, "quantity": quantity}))

    async def update_cart_item(self, item_id: str, quantity: int) -> dict:
        return _data(await self.request("PUT", f"/api/cart/items/{item_id}", json={"quantity": quantity}))

    async def remove_cart_item(self, item_id: str) -> None:
        _data(await self.request("DELETE", f"/api/cart/items/{item_id}"))

    async def clear_cart(self) -> None:
        _data(await self.request("DELETE", "/api/cart/items"))

    # --- Address book ---

    async def list_addresses(self) -> list:
        return _data(await self.request("GET", "/api/user/addresses"))

    async def add_address(self, is_default: bool = False, **fields: Any) -> dict:
        return _data(await self.request("POST", "/api/user/addresses", json={**fields, "isDefault": is_default}))

    async def set_default_address(self, address_id: str) -> dict:
        return _data(await self.request("PUT", f"/api/user/addresses/{address_id}/default"))

    async def remove_address(self, address_id: str) -> None:
        _data(await self.request("DELETE", f"/api/user/addresses/{address_id}"))

    # --- Checkout ---

    async def quote(self, promo_code: Optional[str] = None) -> dict:
        return _data(await self.request("POST", "/api/checkout/quote", json={"promoCode": promo_code}))

    async def create_payment_intent(self, amount: Decimal) -> dict:
        response = await self.request(
            "POST", "/api/create-payment-intent", authenticated=False, json={"amount": str(amount)}
        )
        return _data(response)

    async def verify_payment(
        self,
        payment_intent_id: str,
        promo_code: Optional[str] = None,
        shipping_address: Optional[dict] = None,
        address_id: Optional[str] = None,
    ) -> dict:
        url = f"/api/verify-payment/{payment_intent_id}"
        if shipping_address is not None or address_id is not None:
            body = {"promoCode": promo_code, "shippingAddress": shipping_address, "addressId": address_id}
            return _data(await self.request("POST", url, json=body))
        params = {"promoCode": promo_code} if promo_code else None
        return _data(await self.request("GET", url, params=params))


def _body(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _error_message(response: httpx.Response) -> str:
    return _body(response).get("error") or response.reason_phrase or str(response.status_code)


def _data(response: httpx.Response):
    body = _body(response)
    if response.is_success:
        return body.get("data")
    details = body.get("details") if isinstance(body.get("details"), dict) else {}
    raise APIError(response.status_code, _error_message(response), details.get("code"))
