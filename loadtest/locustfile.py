"""Locust load test for the storefront API

Simulates concurrent shoppers performing:
1. Register (one throwaway account per simulated user)
2. Browse products (first page, category, search query)
3. Price a cart (server-side totals + coupon)
4. Checkout (COD order with an Idempotency-Key)

Environment variables:
- BASE_URL (default http://localhost:5000)
- SHARED_PASSWORD (default Customer@123) for the generated accounts
- PRODUCT_SEARCH_TERM (default 'lavender')
- CART_PRODUCT_ID (must exist with stock; default 1)
- COUPON_CODE (default WELCOME10)

Run:
  locust -f loadtest/locustfile.py --users 50 --spawn-rate 5

Prereq: Seed products via scripts/seed_products.py (use --stock high enough for the run).
Orders return 409 once stock runs out; those are counted as expected, not failures.
"""
import os
import random
import uuid
from locust import HttpUser, task, between

BASE_URL = os.getenv("BASE_URL", "http://localhost:5000")
SHARED_PASSWORD = os.getenv("SHARED_PASSWORD", "Customer@123")
PRODUCT_SEARCH_TERM = os.getenv("PRODUCT_SEARCH_TERM", "lavender")
CART_PRODUCT_ID = int(os.getenv("CART_PRODUCT_ID", "1"))
COUPON_CODE = os.getenv("COUPON_CODE", "WELCOME10")

SHIPPING_ADDRESS = {"fullName": "Load Test", "address": "1 Test Street", "city": "Karachi", "country": "Pakistan"}

class Shopper(HttpUser):
    wait_time = between(1, 3)

    def on_start(self):
        self._register()

    def _register(self):
        email = f"load_{uuid.uuid4().hex[:12]}@example.com"
        with self.client.post(
            f"{BASE_URL}/api/auth/register",
            json={"firstName": "Load", "lastName": "Tester", "email": email, "password": SHARED_PASSWORD},
            catch_response=True,
        ) as resp:
            if resp.status_code != 201:
                resp.failure(f"register failed {resp.status_code}")
                return
            token = resp.json().get("access_token")
            if not token:
                resp.failure("missing token")
                return
            self.token = token

    def _auth_headers(self):
        return {"Authorization": f"Bearer {getattr(self, 'token', '')}"}

    @task(3)
    def list_products(self):
        self.client.get(f"{BASE_URL}/api/products?page=1&limit=20")

    @task(1)
    def browse_category(self):
        self.client.get(f"{BASE_URL}/api/products/category/bath-bombs", name="/api/products/category/[c]")

    @task(1)
    def search_products(self):
        self.client.get(f"{BASE_URL}/api/products?page=1&limit=20&search={PRODUCT_SEARCH_TERM}")

    @task(2)
    def price_cart(self):
        qty = random.randint(1, 3)
        self.client.get(f"{BASE_URL}/api/inventory/check/{CART_PRODUCT_ID}", name="/api/inventory/check/[id]")
        self.client.post(
            f"{BASE_URL}/api/cart/calculate",
            json={"items": [{"productId": CART_PRODUCT_ID, "quantity": qty}], "couponCode": COUPON_CODE},
        )

    @task(1)
    def checkout_flow(self):
        headers = dict(self._auth_headers(), **{"Idempotency-Key": uuid.uuid4().hex})
        with self.client.post(
            f"{BASE_URL}/api/orders",
            json={
                "items": [{"productId": CART_PRODUCT_ID, "quantity": 1}],
                "shippingAddress": SHIPPING_ADDRESS,
                "paymentMethod": "cod",
            },
            headers=headers,
            catch_response=True,
        ) as resp:
            if resp.status_code in (200, 201, 409):
                resp.success()
            else:
                resp.failure(f"checkout failed {resp.status_code}")

    @task(1)
    def my_orders(self):
        self.client.get(f"{BASE_URL}/api/orders", headers=self._auth_headers())
