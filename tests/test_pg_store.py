import os
import threading
from contextlib import contextmanager, nullcontext
from pathlib import Path

import psycopg
import pytest

import storefront.db as db
import storefront.pg_store as pg_store
from storefront.errors import ConflictError, InsufficientStockError
from storefront.pg_store import PostgresStore

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "")
SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"
TABLES = (
    "wishlist_items", "reviews", "admin_action_log", "order_items", "orders",
    "stock_alerts", "stock_reservations", "inventory", "products", "users",
)

NUM_THREADS = 12
ORDER_QTY = 10
TARGET_STOCK = 50

needs_db = pytest.mark.skipif(not TEST_DATABASE_URL, reason="TEST_DATABASE_URL not set")


def _run_threads(target, count):
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(index):
        barrier.wait()
        results[index] = target(index)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return results


@pytest.fixture
def store():
    """Postgres store on an emptied test database; overrides the in-memory one from conftest."""
    if not TEST_DATABASE_URL:
        pytest.skip("TEST_DATABASE_URL not set")
    with psycopg.connect(TEST_DATABASE_URL, autocommit=True) as conn:
        conn.execute(SCHEMA_PATH.read_text(encoding="utf-8"))
        conn.execute(f"TRUNCATE {', '.join(TABLES)} RESTART IDENTITY CASCADE")
    return PostgresStore(TEST_DATABASE_URL)


def _cod_payload(product, quantity):
    return {
        "items": [{"productId": product["product_id"], "quantity": quantity}],
        "shippingAddress": {"address": "4 Mall Road", "city": "Lahore", "country": "Pakistan", "phone": "03001234567"},
        "paymentMethod": "cod",
    }


@needs_db
def test_pg_concurrent_reservations_never_oversell(app, inventory, make_product, store):
    pid = make_product(name="Glow Citrus Bath Bomb", stock=TARGET_STOCK)["product_id"]

    def reserve(_):
        try:
            inventory.reserve_stock(pid, ORDER_QTY)
            return "ok"
        except InsufficientStockError:
            return "insufficient"

    results = _run_threads(reserve, NUM_THREADS)
    assert results.count("ok") == TARGET_STOCK // ORDER_QTY
    rec = store.get_inventory(pid, inventory.clock())
    assert (rec["quantity"], rec["reserved"], rec["available"]) == (TARGET_STOCK, TARGET_STOCK, 0)


@needs_db
def test_pg_concurrent_cod_orders_never_oversell(app, inventory, make_product, store, customer_headers):
    product = make_product(name="Glow Citrus Bath Bomb", stock=TARGET_STOCK)

    def place(_):
        return app.test_client().post("/api/orders", json=_cod_payload(product, ORDER_QTY), headers=customer_headers).status_code

    statuses = _run_threads(place, NUM_THREADS)
    assert statuses.count(201) == TARGET_STOCK // ORDER_QTY
    assert statuses.count(409) == NUM_THREADS - TARGET_STOCK // ORDER_QTY
    assert store.get_inventory(product["product_id"], inventory.clock())["quantity"] == 0
    assert store.count_orders() == TARGET_STOCK // ORDER_QTY


@needs_db
def test_pg_idempotency_key_is_per_caller(app, inventory, make_product, store, customer_headers, other_customer_headers):
    product = make_product(name="Glow Citrus Bath Bomb", stock=TARGET_STOCK)
    headers = dict(customer_headers, **{"Idempotency-Key": "double-click-1"})

    def place(_):
        r = app.test_client().post("/api/orders", json=_cod_payload(product, 2), headers=headers)
        return r.status_code, r.get_json()["order"]["order_id"]

    results = _run_threads(place, 6)
    assert [s for s, _ in results].count(201) == 1
    assert len({oid for _, oid in results}) == 1

    other = app.test_client().post(
        "/api/orders", json=_cod_payload(product, 1), headers=dict(other_customer_headers, **{"Idempotency-Key": "double-click-1"})
    )
    assert other.status_code == 201
    assert other.get_json()["order"]["order_id"] != results[0][1]
    assert store.count_orders() == 2
    assert store.get_inventory(product["product_id"], inventory.clock())["quantity"] == TARGET_STOCK - 3


@needs_db
def test_pg_order_rows_round_trip_and_guard_status(app, client, inventory, lavender, store, customer_headers):
    body = client.post("/api/orders", json=_cod_payload(lavender, 2), headers=customer_headers).get_json()
    order = store.get_order(body["order"]["order_id"])
    assert order["shipping_address"]["phone"] == "03001234567"
    assert order["billing_address"] == order["shipping_address"]
    assert [(i["product_id"], i["quantity"]) for i in order["items"]] == [(lavender["product_id"], 2)]

    # compare-and-set: a stale expected status leaves the row alone
    assert store.update_order(order["order_id"], {"status": "cancelled"}, expected_statuses=("pending",)) is None
    assert store.get_order(order["order_id"])["status"] == "approved"

    with pytest.raises(ConflictError):
        store.create_order(
            {k: order[k] for k in ("order_number", "shipping_address", "payment_method", "subtotal", "total")}, []
        )


@needs_db
def test_pg_commit_of_reference_deducts_once(app, inventory, lavender, store):
    inventory.reserve_items([(lavender["product_id"], 2), (lavender["product_id"], 1)], reference="ORD-PG-1")
    inventory.commit_reference("ORD-PG-1")
    rec = store.get_inventory(lavender["product_id"], inventory.clock())
    assert (rec["quantity"], rec["reserved"]) == (7, 0)
    assert inventory.commit_reference("ORD-PG-1") == []
    assert store.get_inventory(lavender["product_id"], inventory.clock())["quantity"] == 7


class _FlakyConnection:
    """Stands in for a pooled connection that drops once, at a chosen step."""

    def __init__(self, drop_on):
        self.drop_on = drop_on
        self.commits = 0
        self.rollbacks = 0

    def cursor(self):
        return nullcontext(self)

    def fail(self, step):
        if self.drop_on == step:
            self.drop_on = None
            raise psycopg.OperationalError("server closed the connection unexpectedly")

    def commit(self):
        self.fail("commit")
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1


@pytest.fixture
def flaky_store(monkeypatch):
    resets = []
    monkeypatch.setattr(pg_store, "init_pool", lambda url: None)
    monkeypatch.setattr(db, "reset_pool", lambda: resets.append(1))
    monkeypatch.setattr(db.time, "sleep", lambda s: None)

    def _make(conn):
        @contextmanager
        def _get_connection():
            yield conn

        monkeypatch.setattr(pg_store, "get_connection", _get_connection)
        return PostgresStore("postgresql://shop@localhost/shop"), resets

    return _make


def test_dropped_connection_before_commit_is_retried(flaky_store):
    conn = _FlakyConnection(drop_on="work")
    pg, resets = flaky_store(conn)
    calls = []

    def work(cur):
        calls.append(1)
        cur.fail("work")
        return "done"

    assert pg._run(work) == "done"
    assert (len(calls), conn.rollbacks, conn.commits, len(resets)) == (2, 1, 1, 1)


def test_dropped_connection_during_commit_is_not_retried(flaky_store):
    conn = _FlakyConnection(drop_on="commit")
    pg, resets = flaky_store(conn)
    calls = []

    with pytest.raises(psycopg.OperationalError):
        pg._run(lambda cur: calls.append(1))
    assert (len(calls), conn.rollbacks, len(resets)) == (1, 0, 0)
