from datetime import datetime, timedelta, timezone

import pytest

from storefront.app import create_app
from storefront.auth import hash_password
from storefront.memory_store import MemoryStore

TEST_CONFIG = {
    "SECRET_KEY": "test-secret",
    "APPROVAL_TOKEN_SECRET": "test-approval-secret",
    "STORE_BACKEND": "memory",
    "CACHE_ENABLED": False,
    "RESERVATION_SWEEP": False,
    "LOG_TIMING": True,
    "ENV": "testing",
    "TAX_RATE": 0.17,
    "BACKEND_URL": "http://api.test",
}

ADMIN_PASSWORD = "Admin!234"
CUSTOMER_PASSWORD = "Shopper!234"


class FakeClock:
    """Settable clock so reservation expiry can be tested without sleeping."""

    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class ApprovalInbox:
    def __init__(self):
        self.sent = []

    def __call__(self, order, token, links):
        self.sent.append({"order_id": order["order_id"], "token": token, "links": links})

    def token_for(self, order_id):
        for entry in reversed(self.sent):
            if entry["order_id"] == order_id:
                return entry["token"]
        return None


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def inbox():
    return ApprovalInbox()


@pytest.fixture
def app(store, clock, inbox):
    app = create_app(dict(TEST_CONFIG), store=store)
    app.config["TESTING"] = True
    for name in ("storefront.inventory", "storefront.orders"):
        app.extensions[name].clock = clock
    app.extensions["storefront.approval_notifier"] = inbox
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def inventory(app):
    return app.extensions["storefront.inventory"]


@pytest.fixture
def cart(app):
    return app.extensions["storefront.cart"]


def _make_user(store, email, password, role="customer", first="Test", last="User"):
    return store.create_user({
        "first_name": first,
        "last_name": last,
        "email": email,
        "password_hash": hash_password(password),
        "role": role,
    })


def _login(client, email, password):
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.get_json()
    return r.get_json()["access_token"]


@pytest.fixture
def admin_user(store):
    return _make_user(store, "admin@omnora.com", ADMIN_PASSWORD, role="admin", first="Store", last="Admin")


@pytest.fixture
def customer_user(store):
    return _make_user(store, "ayesha@example.com", CUSTOMER_PASSWORD, first="Ayesha", last="Khan")


@pytest.fixture
def admin_headers(client, admin_user):
    return {"Authorization": f"Bearer {_login(client, admin_user['email'], ADMIN_PASSWORD)}"}


@pytest.fixture
def customer_headers(client, customer_user):
    return {"Authorization": f"Bearer {_login(client, customer_user['email'], CUSTOMER_PASSWORD)}"}


@pytest.fixture
def make_product(app, store, inventory):
    def _make(name="Calm Lavender Bath Bomb", price=899, stock=10, threshold=5, category="bath-bombs", **extra):
        product = store.create_product({
            "name": name,
            "price": price,
            "description": extra.pop("description", f"{name} with essential oils and shea butter."),
            "image": extra.pop("image", "/images/lavender.jpg"),
            "category": category,
            **extra,
        })
        with app.app_context():
            inventory.initialize_inventory(product["product_id"], stock, threshold)
        return product

    return _make


@pytest.fixture
def lavender(make_product):
    return make_product()


@pytest.fixture
def eucalyptus(make_product):
    return make_product(name="Breathe Eucalyptus Bath Bomb", price=949, stock=4, image="/images/eucalyptus.jpg")


@pytest.fixture
def shipping_address():
    return {"fullName": "Ayesha Khan", "address": "12 Canal View", "city": "Lahore", "postalCode": "54000", "country": "Pakistan"}


@pytest.fixture
def other_customer_headers(client, store):
    user = _make_user(store, "bilal@example.com", "Other!2345", first="Bilal", last="Ahmed")
    return {"Authorization": f"Bearer {_login(client, user['email'], 'Other!2345')}"}
