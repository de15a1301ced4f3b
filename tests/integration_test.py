#!/usr/bin/env python3
"""
Integration Test Suite for the Storefront API

Usage:
    1. Start the API: storefront (with ADMIN_USERNAME/ADMIN_PASSWORD set so an admin is seeded)
    2. Install dependencies: pip install -e .[test]
    3. Run the script: python tests/integration_test.py

Environment:
    STOREFRONT_URL       base URL (default http://localhost:8000)
    ADMIN_USERNAME       seeded admin credentials
    ADMIN_PASSWORD
    STRIPE_SECRET_KEY    test-mode key; payment confirmation is skipped without it

This script tests the full flow:
    - Authentication (Register/Login/Refresh)
    - Catalog population through the admin API
    - Shopping Cart
    - Payment intent, confirmation and order materialization
    - Admin refund
    - Security/Negative Tests

Output:
    - Console logs with pass/fail status
    - integration_test_results.json report
"""
import requests
import json
import os
import time
import sys
from datetime import datetime, timezone
from typing import Dict, Any

import stripe

# Configuration
BASE_URL = os.environ.get("STOREFRONT_URL", "http://localhost:8000")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "AdminPass1")
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
RESULTS_FILE = "integration_test_results.json"

# Colors
class Colors:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    GREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'

class SkipTest(Exception):
    pass

class TestRunner:
    def __init__(self):
        self.results = []
        self.session = requests.Session()
        self.store: Dict[str, Any] = {}
        self.start_time = time.time()

    def log(self, message: str, color: str = Colors.ENDC):
        print(f"{color}{message}{Colors.ENDC}")

    def save_result(self, name: str, status: str, duration: float, error: str = None):
        self.results.append({
            "test_name": name,
            "status": status,
            "duration": duration,
            "error": error,
            "timestamp": datetime.now(timezone.utc).isoformat()
        })
        color = {"PASS": Colors.GREEN, "SKIP": Colors.WARNING}.get(status, Colors.FAIL)
        self.log(f"[{status}] {name} ({duration:.4f}s)", color)
        if error:
            self.log(f"  {error}", color)

    def run_test(self, name: str, func, *args, **kwargs):
        start = time.time()
        try:
            func(*args, **kwargs)
            self.save_result(name, "PASS", time.time() - start)
        except SkipTest as e:
            self.save_result(name, "SKIP", time.time() - start, str(e))
        except AssertionError as e:
            self.save_result(name, "FAIL", time.time() - start, str(e))
        except Exception as e:
            self.save_result(name, "ERROR", time.time() - start, str(e))

    def assert_status(self, response, expected: int):
        if response.status_code != expected:
            raise AssertionError(f"Expected status {expected}, got {response.status_code}. Body: {response.text}")

    def headers(self, key: str = "user_token") -> dict:
        return {"Authorization": f"Bearer {self.store[key]}"}

    def save_report(self):
        with open(RESULTS_FILE, "w") as f:
            json.dump({
                "summary": {
                    "total": len(self.results),
                    "passed": len([r for r in self.results if r["status"] == "PASS"]),
                    "skipped": len([r for r in self.results if r["status"] == "SKIP"]),
                    "failed": len([r for r in self.results if r["status"] not in ("PASS", "SKIP")]),
                    "total_duration": time.time() - self.start_time
                },
                "results": self.results
            }, f, indent=2)
        self.log(f"\nTest results saved to {RESULTS_FILE}", Colors.BLUE)

# --- Test Functions ---

def check_health(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/health")
    runner.assert_status(resp, 200)
    if resp.json()["status"] != "healthy":
        raise AssertionError("System is not healthy")

# Phase 1: Authentication

def register_user(runner: TestRunner):
    username = f"user_{int(time.time())}"
    resp = runner.session.post(f"{BASE_URL}/api/register", json={
        "username": username,
        "email": f"{username}@test.com",
        "password": "Password123",
        "firstName": "Test",
    })
    runner.assert_status(resp, 201)
    runner.store["username"] = username

def login_users(runner: TestRunner):
    resp = runner.session.post(f"{BASE_URL}/api/login", json={
        "username": runner.store["username"], "password": "Password123"
    })
    runner.assert_status(resp, 200)
    data = resp.json()["data"]
    runner.store["user_token"] = data["accessToken"]
    runner.store["refresh_token"] = data["refreshToken"]

    resp = runner.session.post(f"{BASE_URL}/api/login", json={
        "username": ADMIN_USERNAME, "password": ADMIN_PASSWORD
    })
    runner.assert_status(resp, 200)
    if not resp.json()["data"]["user"]["isAdmin"]:
        raise AssertionError(f"{ADMIN_USERNAME} is not an admin")
    runner.store["admin_token"] = resp.json()["data"]["accessToken"]

def refresh_tokens(runner: TestRunner):
    resp = runner.session.post(f"{BASE_URL}/api/refresh", json={"refreshToken": runner.store["refresh_token"]})
    runner.assert_status(resp, 200)
    data = resp.json()["data"]
    if data["refreshToken"] == runner.store["refresh_token"]:
        raise AssertionError("Refresh token was not rotated")
    runner.store["user_token"] = data["accessToken"]
    runner.store["refresh_token"] = data["refreshToken"]

# Phase 2: Products

def create_products(runner: TestRunner):
    ids = []
    for title, price in (("Integration Product 1", "20.00"), ("Integration Product 2", "15.00")):
        resp = runner.session.post(
            f"{BASE_URL}/api/admin/products",
            json={"title": title, "price": price, "stock": 100, "category": "test"},
            headers=runner.headers("admin_token"),
        )
        runner.assert_status(resp, 201)
        ids.append(resp.json()["data"]["id"])
    runner.store["product_ids"] = ids

def get_product_details(runner: TestRunner):
    pid = runner.store["product_ids"][0]
    resp = runner.session.get(f"{BASE_URL}/api/products/{pid}")
    runner.assert_status(resp, 200)
    if resp.json()["data"]["title"] != "Integration Product 1":
        raise AssertionError("Product details mismatch")

# Phase 3: Cart

def add_to_cart(runner: TestRunner):
    first, second = runner.store["product_ids"]
    for product_id, quantity in ((first, 1), (second, 2)):
        resp = runner.session.post(
            f"{BASE_URL}/api/cart/items",
            json={"productId": product_id, "quantity": quantity},
            headers=runner.headers(),
        )
        runner.assert_status(resp, 200)

def view_cart(runner: TestRunner):
    resp = runner.session.get(f"{BASE_URL}/api/cart/items", headers=runner.headers())
    runner.assert_status(resp, 200)
    items = resp.json()["data"]
    if sorted(i["quantity"] for i in items) != [1, 2]:
        raise AssertionError(f"Unexpected cart contents: {items}")

def quote(runner: TestRunner):
    resp = runner.session.post(f"{BASE_URL}/api/checkout/quote", json={}, headers=runner.headers())
    runner.assert_status(resp, 200)
    data = resp.json()["data"]
    if data["subtotal"] != "50.00":
        raise AssertionError(f"Expected subtotal 50.00, got {data['subtotal']}")
    runner.store["grand_total"] = data["grandTotal"]

# Phase 4: Payment and order

def create_payment_intent(runner: TestRunner):
    if not STRIPE_SECRET_KEY:
        raise SkipTest("STRIPE_SECRET_KEY not set")
    resp = runner.session.post(f"{BASE_URL}/api/create-payment-intent", json={"amount": runner.store["grand_total"]})
    runner.assert_status(resp, 200)
    runner.store["payment_intent_id"] = resp.json()["data"]["paymentIntentId"]

def verify_unpaid_intent(runner: TestRunner):
    if "payment_intent_id" not in runner.store:
        raise SkipTest("No payment intent")
    resp = runner.session.get(
        f"{BASE_URL}/api/verify-payment/{runner.store['payment_intent_id']}", headers=runner.headers()
    )
    runner.assert_status(resp, 200)
    if resp.json()["data"]["paid"]:
        raise AssertionError("Unconfirmed intent reported as paid")

def confirm_and_verify(runner: TestRunner):
    if "payment_intent_id" not in runner.store:
        raise SkipTest("No payment intent")
    # Stands in for the browser-side card form
    client = stripe.StripeClient(STRIPE_SECRET_KEY)
    client.payment_intents.confirm(runner.store["payment_intent_id"], params={"payment_method": "pm_card_visa"})

    resp = runner.session.get(
        f"{BASE_URL}/api/verify-payment/{runner.store['payment_intent_id']}", headers=runner.headers()
    )
    runner.assert_status(resp, 200)
    order = resp.json()["data"]["order"]
    if order is None or len(order["items"]) != 2:
        raise AssertionError(f"Order not materialized: {resp.text}")
    runner.store["order_id"] = order["id"]

def verify_cart_cleared(runner: TestRunner):
    if "order_id" not in runner.store:
        raise SkipTest("No order")
    resp = runner.session.get(f"{BASE_URL}/api/cart/items", headers=runner.headers())
    runner.assert_status(resp, 200)
    if resp.json()["data"]:
        raise AssertionError("Cart not cleared after order")

def refund_order(runner: TestRunner):
    if "order_id" not in runner.store:
        raise SkipTest("No order")
    resp = runner.session.post(
        f"{BASE_URL}/api/admin/orders/{runner.store['order_id']}/refund",
        json={"paymentIntentId": runner.store["payment_intent_id"]},
        headers=runner.headers("admin_token"),
    )
    runner.assert_status(resp, 200)
    if resp.json()["data"]["order"]["status"] != "refunded":
        raise AssertionError("Order status not updated to refunded")

# Phase 5: Negative Tests

def negative_tests(runner: TestRunner):
    # Invalid Token
    resp = runner.session.get(f"{BASE_URL}/api/cart/items", headers={"Authorization": "Bearer invalid_token"})
    if resp.status_code != 401:
        raise AssertionError(f"Expected 401 for invalid token, got {resp.status_code}")

    # Non-admin on the admin API
    resp = runner.session.get(f"{BASE_URL}/api/admin/orders", headers=runner.headers())
    if resp.status_code != 403:
        raise AssertionError(f"Expected 403 for non-admin, got {resp.status_code}")

    # Unknown product into the cart
    resp = runner.session.post(
        f"{BASE_URL}/api/cart/items", json={"productId": "000000000000000000000000"}, headers=runner.headers()
    )
    if resp.status_code != 404:
        raise AssertionError(f"Expected 404 for unknown product, got {resp.status_code}")

    # Bad Data (Product create with negative price)
    resp = runner.session.post(
        f"{BASE_URL}/api/admin/products", json={"title": "Bad", "price": "-10"}, headers=runner.headers("admin_token")
    )
    if resp.status_code != 422:
        raise AssertionError(f"Expected 422 for negative price, got {resp.status_code}")


def main():
    runner = TestRunner()
    runner.log("Starting Integration Tests...\n", Colors.HEADER)

    runner.run_test("Health Check", check_health, runner)

    runner.run_test("Register User", register_user, runner)
    runner.run_test("Login Users", login_users, runner)
    runner.run_test("Refresh Tokens", refresh_tokens, runner)

    runner.run_test("Create Products", create_products, runner)
    runner.run_test("Get Product Details", get_product_details, runner)

    runner.run_test("Add to Cart", add_to_cart, runner)
    runner.run_test("View Cart", view_cart, runner)
    runner.run_test("Checkout Quote", quote, runner)

    runner.run_test("Create Payment Intent", create_payment_intent, runner)
    runner.run_test("Verify Unpaid Intent", verify_unpaid_intent, runner)
    runner.run_test("Confirm and Verify Payment", confirm_and_verify, runner)
    runner.run_test("Verify Cart Cleared", verify_cart_cleared, runner)
    runner.run_test("Refund Order", refund_order, runner)

    runner.run_test("Negative Tests", negative_tests, runner)

    runner.save_report()

    if any(r["status"] not in ("PASS", "SKIP") for r in runner.results):
        sys.exit(1)

if __name__ == "__main__":
    main()
