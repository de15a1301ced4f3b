import asyncio
import json
import os
import stat
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from conftest import PASSWORD
from storefront.models import ProductDB
from storefront.session_client import (
    ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, FileTokenStore, MemoryTokenStore, SessionClient, SessionExpiredError,
)


@pytest.fixture
async def session(app):
    client = SessionClient("http://testserver", transport=httpx.ASGITransport(app=app), auto_refresh=False)
    yield client
    await client.aclose()


def mock_session(handler, store=None, **kwargs) -> SessionClient:
    store = store or MemoryTokenStore({ACCESS_TOKEN_KEY: "old-access", REFRESH_TOKEN_KEY: "old-refresh"})
    return SessionClient("http://testserver", store=store, transport=httpx.MockTransport(handler), **kwargs)


def envelope(data, status_code=200) -> httpx.Response:
    return httpx.Response(status_code, json={"success": True, "data": data})


def unauthorized() -> httpx.Response:
    return httpx.Response(401, json={"success": False, "error": "Could not validate credentials", "details": {"code": "invalid_token"}})


# --- Against the real app ---

async def test_login_persists_tokens_under_known_keys(session):
    await session.register("alice", "alice@example.com", PASSWORD)
    session.clear_session()

    profile = await session.login("alice", PASSWORD)

    assert profile["username"] == "alice"
    assert session.store.get(ACCESS_TOKEN_KEY)
    assert session.store.get(REFRESH_TOKEN_KEY)
    assert (await session.whoami())["username"] == "alice"


async def test_expired_access_token_is_rotated_transparently(session, storage, tokens):
    await session.register("alice", "alice@example.com", PASSWORD)
    user = await storage.get_user_by_username("alice")
    stale = tokens.issue_token_pair(user, access_expires=timedelta(seconds=-1))
    session.store.set(ACCESS_TOKEN_KEY, stale.access_token)
    old_refresh = session.refresh_token

    assert await session.get_cart() == []

    assert session.access_token != stale.access_token
    assert session.refresh_token != old_refresh


async def test_revoked_session_expires(session):
    await session.register("alice", "alice@example.com", PASSWORD)
    await session.request("POST", "/api/logout", json={"everywhere": True})

    with pytest.raises(SessionExpiredError):
        await session.get_cart()

    assert session.access_token is None
    assert session.refresh_token is None
    assert await session.whoami() is None


async def test_whoami_without_tokens(session):
    assert await session.whoami() is None


async def test_checkout_through_session(session, storage, gateway):
    await session.register("alice", "alice@example.com", PASSWORD)
    first = await storage.create_product(ProductDB(title="Product 1", price=Decimal("20.00")))
    second = await storage.create_product(ProductDB(title="Product 2", price=Decimal("15.00")))
    await session.add_to_cart(first.id)
    line = await session.add_to_cart(second.id, 2)
    assert line["subtotal"] == "30.00"

    quote = await session.quote()
    intent = await session.create_payment_intent(Decimal(quote["grandTotal"]))
    gateway.succeed(intent["paymentIntentId"])
    result = await session.verify_payment(intent["paymentIntentId"])

    assert result["paid"] is True
    assert len(result["order"]["items"]) == 2
    assert await session.get_cart() == []


async def test_checkout_to_saved_address(session, storage, gateway):
    await session.register("alice", "alice@example.com", PASSWORD)
    home = await session.add_address(street="1 Main St", city="Springfield", state="IL", country="US", zipCode="62701")
    assert home["isDefault"] is True
    product = await storage.create_product(ProductDB(title="Product 1", price=Decimal("20.00")))
    await session.add_to_cart(product.id)

    quote = await session.quote()
    intent = await session.create_payment_intent(Decimal(quote["grandTotal"]))
    gateway.succeed(intent["paymentIntentId"])
    result = await session.verify_payment(intent["paymentIntentId"], address_id=home["id"])

    assert result["order"]["shippingAddress"]["city"] == "Springfield"
    await session.remove_address(home["id"])
    assert await session.list_addresses() == []


async def test_logout_clears_store(session):
    await session.register("alice", "alice@example.com", PASSWORD)

    await session.logout()

    assert session.access_token is None
    assert session.refresh_token is None


# --- Against a scripted server ---

async def test_concurrent_401s_share_one_rotation():
    refreshes = 0

    async def handler(request: httpx.Request):
        nonlocal refreshes
        if request.url.path == "/api/refresh":
            refreshes += 1
            await asyncio.sleep(0.05)
            return envelope({"accessToken": "new-access", "refreshToken": "new-refresh"})
        if request.headers.get("Authorization") == "Bearer new-access":
            return envelope([])
        return unauthorized()

    async with mock_session(handler) as session:
        results = await asyncio.gather(*(session.get_cart() for _ in range(5)))

    assert results == [[]] * 5
    assert refreshes == 1
    assert session.refresh_token == "new-refresh"


async def test_retry_happens_only_once():
    calls = {"cart": 0, "refresh": 0}

    def handler(request: httpx.Request):
        if request.url.path == "/api/refresh":
            calls["refresh"] += 1
            return envelope({"accessToken": f"access-{calls['refresh']}", "refreshToken": "r"})
        calls["cart"] += 1
        return unauthorized()

    async with mock_session(handler) as session:
        response = await session.request("GET", "/api/cart/items")

    assert response.status_code == 401
    assert calls == {"cart": 2, "refresh": 1}


async def test_transport_error_during_rotation_keeps_tokens():
    def handler(request: httpx.Request):
        if request.url.path == "/api/refresh":
            raise httpx.ConnectError("connection refused", request=request)
        return unauthorized()

    async with mock_session(handler) as session:
        with pytest.raises(httpx.ConnectError):
            await session.get_cart()

    assert session.access_token == "old-access"
    assert session.refresh_token == "old-refresh"


async def test_server_error_during_rotation_keeps_tokens():
    def handler(request: httpx.Request):
        if request.url.path == "/api/refresh":
            return httpx.Response(503, json={"success": False, "error": "down"})
        return unauthorized()

    async with mock_session(handler) as session:
        with pytest.raises(httpx.HTTPStatusError):
            await session.get_cart()

    assert session.refresh_token == "old-refresh"


async def test_request_retried_with_token_rotated_elsewhere():
    store = MemoryTokenStore({ACCESS_TOKEN_KEY: "old-access", REFRESH_TOKEN_KEY: "old-refresh"})
    refreshes = 0

    def handler(request: httpx.Request):
        nonlocal refreshes
        if request.url.path == "/api/refresh":
            refreshes += 1
            return envelope({"accessToken": "unexpected", "refreshToken": "unexpected"})
        if request.headers.get("Authorization") == "Bearer rotated-elsewhere":
            return envelope([])
        # Another caller finishes a rotation while this request is in flight
        store.set(ACCESS_TOKEN_KEY, "rotated-elsewhere")
        return unauthorized()

    async with mock_session(handler, store=store) as session:
        assert await session.get_cart() == []

    assert refreshes == 0


async def test_whoami_uses_cached_profile_while_token_is_fresh(session):
    await session.register("alice", "alice@example.com", PASSWORD)
    seen = []
    original = session.client.request

    async def spy(method, url, **kwargs):
        seen.append(url)
        return await original(method, url, **kwargs)

    session.client.request = spy
    profile = await session.whoami()

    assert profile["username"] == "alice"
    assert seen == []


async def test_background_refresh_rotates_periodically():
    refreshes = 0

    def handler(request: httpx.Request):
        nonlocal refreshes
        refreshes += 1
        return envelope({"accessToken": f"a{refreshes}", "refreshToken": f"r{refreshes}"})

    async with mock_session(handler, refresh_interval=0.01) as session:
        session.start_background_refresh()
        await asyncio.sleep(0.1)

    assert refreshes >= 2
    assert session.access_token.startswith("a")


# --- Token storage ---

def test_file_token_store_round_trip(tmp_path):
    path = tmp_path / "nested" / "session.json"
    store = FileTokenStore(path)

    store.set(ACCESS_TOKEN_KEY, "a")
    store.set(REFRESH_TOKEN_KEY, "r")

    reopened = FileTokenStore(path)
    assert reopened.get(ACCESS_TOKEN_KEY) == "a"
    assert json.loads(path.read_text()) == {ACCESS_TOKEN_KEY: "a", REFRESH_TOKEN_KEY: "r"}
    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    reopened.delete(ACCESS_TOKEN_KEY)
    assert store.get(ACCESS_TOKEN_KEY) is None
    assert store.get(REFRESH_TOKEN_KEY) == "r"


def test_file_token_store_tolerates_corrupt_file(tmp_path):
    path = tmp_path / "session.json"
    path.write_text("{not json")

    assert FileTokenStore(path).get(ACCESS_TOKEN_KEY) is None
