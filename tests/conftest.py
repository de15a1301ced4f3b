from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from shared.utils import Settings, PaymentProviderError
from storefront.cart import CartManager
from storefront.checkout import CheckoutOrchestrator
from storefront.main import create_app
from storefront.payments import PaymentGateway, PaymentIntent, Refund, to_minor_units
from storefront.storage import MemoryStorage
from storefront.tokens import TokenService

ADMIN_USERNAME = "admin"
ADMIN_PASSWORD = "AdminPass1"
PASSWORD = "Secret123"


class FakeGateway(PaymentGateway):
    """In-process stand-in for Stripe. Intents stay unpaid until ``succeed`` is called."""

    def __init__(self):
        self.intents = {}
        self.refunds = []
        self.refund_status = "succeeded"

    async def create_payment_intent(self, amount: Decimal, currency: str) -> PaymentIntent:
        intent_id = f"pi_test_{len(self.intents) + 1}"
        intent = PaymentIntent(
            id=intent_id,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret",
            amount=to_minor_units(amount),
        )
        self.intents[intent_id] = intent
        return intent

    async def retrieve_payment_intent(self, payment_intent_id: str) -> PaymentIntent:
        if payment_intent_id not in self.intents:
            raise PaymentProviderError(f"No such payment_intent: '{payment_intent_id}'")
        return self.intents[payment_intent_id]

    async def create_refund(self, payment_intent_id: str) -> Refund:
        refund = Refund(id=f"re_test_{len(self.refunds) + 1}", status=self.refund_status)
        self.refunds.append((payment_intent_id, refund))
        return refund

    def add_intent(self, status: str = "succeeded", amount=None) -> PaymentIntent:
        intent_id = f"pi_test_{len(self.intents) + 1}"
        intent = PaymentIntent(id=intent_id, status=status, client_secret=f"{intent_id}_secret", amount=amount)
        self.intents[intent_id] = intent
        return intent

    def succeed(self, payment_intent_id: str) -> None:
        self.intents[payment_intent_id].status = "succeeded"


@pytest.fixture
def config():
    return Settings(
        _env_file=None,
        STORAGE_BACKEND="memory",
        SECRET_KEY="test-access-secret",
        REFRESH_SECRET_KEY="test-refresh-secret",
        RATE_LIMIT_ENABLED=False,
        ADMIN_USERNAME=ADMIN_USERNAME,
        ADMIN_PASSWORD=ADMIN_PASSWORD,
        ADMIN_EMAIL="admin@example.com",
    )


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def tokens(storage, config):
    return TokenService(storage, config)


@pytest.fixture
def carts(storage):
    return CartManager(storage)


@pytest.fixture
def checkout(storage, carts, gateway, config):
    return CheckoutOrchestrator(storage, carts, gateway, config)


@pytest.fixture
def app(config, storage, gateway):
    return create_app(config=config, storage=storage, gateway=gateway)


@pytest.fixture
def client(app):
    # Entering the context runs startup, which seeds the admin user
    with TestClient(app) as c:
        yield c


def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class Api:
    """Shortcuts for driving the HTTP API from synchronous tests."""

    def __init__(self, client: TestClient):
        self.client = client
        self._admin = None

    def register(self, username: str = "alice", password: str = PASSWORD, email: str = None) -> dict:
        response = self.client.post("/api/register", json={
            "username": username,
            "email": email or f"{username}@example.com",
            "password": password,
        })
        assert response.status_code == 201, response.text
        return response.json()["data"]

    def login(self, username: str, password: str = PASSWORD) -> dict:
        response = self.client.post("/api/login", json={"username": username, "password": password})
        assert response.status_code == 200, response.text
        return response.json()["data"]

    def headers(self, username: str = "alice") -> dict:
        return auth_headers(self.register(username)["accessToken"])

    @property
    def admin(self) -> dict:
        if self._admin is None:
            self._admin = auth_headers(self.login(ADMIN_USERNAME, ADMIN_PASSWORD)["accessToken"])
        return self._admin

    def create_product(self, title: str = "Widget", price: str = "20.00", **fields) -> dict:
        response = self.client.post(
            "/api/admin/products", json={"title": title, "price": price, **fields}, headers=self.admin
        )
        assert response.status_code == 201, response.text
        return response.json()["data"]

    def add_to_cart(self, headers: dict, product_id: str, quantity: int = 1) -> dict:
        response = self.client.post(
            "/api/cart/items", json={"productId": product_id, "quantity": quantity}, headers=headers
        )
        assert response.status_code == 200, response.text
        return response.json()["data"]


@pytest.fixture
def api(client):
    return Api(client)
