import threading

from storefront.errors import InsufficientStockError

NUM_THREADS = 12
ORDER_QTY = 10
TARGET_STOCK = 50


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
        t.join(timeout=30)
    return results


def test_concurrent_reservations_never_oversell(inventory, make_product, store):
    product = make_product(name="Glow Citrus Bath Bomb", stock=TARGET_STOCK)
    pid = product["product_id"]

    def reserve(_):
        try:
            inventory.reserve_stock(pid, ORDER_QTY)
            return "ok"
        except InsufficientStockError:
            return "insufficient"

    results = _run_threads(reserve, NUM_THREADS)
    assert results.count("ok") == TARGET_STOCK // ORDER_QTY
    assert results.count("insufficient") == NUM_THREADS - TARGET_STOCK // ORDER_QTY
    rec = store.get_inventory(pid, inventory.clock())
    assert (rec["quantity"], rec["reserved"], rec["available"]) == (TARGET_STOCK, TARGET_STOCK, 0)


def test_concurrent_cod_orders_never_oversell(app, make_product, store, customer_headers):
    product = make_product(name="Glow Citrus Bath Bomb", stock=TARGET_STOCK)
    payload = {
        "items": [{"productId": product["product_id"], "quantity": ORDER_QTY}],
        "shippingAddress": {"address": "4 Mall Road", "city": "Lahore", "country": "Pakistan"},
        "paymentMethod": "cod",
    }

    def place(_):
        client = app.test_client()
        return client.post("/api/orders", json=payload, headers=customer_headers).status_code

    statuses = _run_threads(place, NUM_THREADS)
    assert statuses.count(201) == TARGET_STOCK // ORDER_QTY
    assert statuses.count(409) == NUM_THREADS - TARGET_STOCK // ORDER_QTY
    assert store.get_inventory(product["product_id"], app.extensions["storefront.inventory"].clock())["quantity"] == 0
    assert store.count_orders() == TARGET_STOCK // ORDER_QTY


def test_same_idempotency_key_from_parallel_requests_places_one_order(app, make_product, store, customer_headers):
    product = make_product(name="Glow Citrus Bath Bomb", stock=TARGET_STOCK)
    payload = {
        "items": [{"productId": product["product_id"], "quantity": 2}],
        "shippingAddress": {"address": "4 Mall Road", "city": "Lahore", "country": "Pakistan"},
        "paymentMethod": "jazzcash",
    }
    headers = dict(customer_headers, **{"Idempotency-Key": "double-click-1"})

    def place(_):
        r = app.test_client().post("/api/orders", json=payload, headers=headers)
        return r.status_code, r.get_json()["order"]["order_id"]

    results = _run_threads(place, 6)
    assert sorted(s for s, _ in results).count(201) == 1
    assert len({oid for _, oid in results}) == 1
    assert store.count_orders() == 1
    rec = store.get_inventory(product["product_id"], app.extensions["storefront.inventory"].clock())
    assert rec["reserved"] == 2
