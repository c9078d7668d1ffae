def _review(client, pid, headers, rating=5, comment="Fizzes for ages and smells amazing."):
    return client.post(f"/api/products/{pid}/reviews", json={"rating": rating, "comment": comment}, headers=headers)


def test_review_summary(client, lavender, customer_headers, other_customer_headers):
    pid = lavender["product_id"]
    r = _review(client, pid, customer_headers, 5)
    assert r.status_code == 201
    review = r.get_json()["review"]
    assert review["user_name"] == "Ayesha Khan"
    assert review["verified_purchase"] is False

    assert _review(client, pid, other_customer_headers, 4).status_code == 201

    body = client.get(f"/api/products/{pid}/reviews").get_json()
    assert body["total_reviews"] == 2
    assert body["average_rating"] == 4.5
    assert body["distribution"] == {"5": 1, "4": 1, "3": 0, "2": 0, "1": 0}
    assert len(body["reviews"]) == 2


def test_empty_review_summary(client, lavender):
    body = client.get(f"/api/products/{lavender['product_id']}/reviews").get_json()
    assert (body["average_rating"], body["total_reviews"]) == (0.0, 0)


def test_review_rules(client, lavender, customer_headers):
    pid = lavender["product_id"]
    assert _review(client, pid, customer_headers, rating=6).status_code == 400
    assert _review(client, pid, customer_headers, comment="meh").status_code == 400
    assert _review(client, 999, customer_headers).status_code == 404
    assert _review(client, pid, {}).status_code == 401
    assert client.get("/api/products/999/reviews").status_code == 404

    assert _review(client, pid, customer_headers).status_code == 201
    r = _review(client, pid, customer_headers)
    assert r.status_code == 409
    assert r.get_json()["error"] == "You have already reviewed this product"


def test_review_after_shipment_is_verified(client, lavender, customer_headers, admin_headers):
    pid = lavender["product_id"]
    r = client.post("/api/orders", json={
        "items": [{"productId": pid, "quantity": 1}],
        "shippingAddress": {"address": "12 Canal View", "city": "Lahore", "country": "Pakistan"},
        "paymentMethod": "cod",
    }, headers=customer_headers)
    order_id = r.get_json()["order"]["order_id"]
    client.put(f"/api/orders/{order_id}/status", json={"status": "shipped"}, headers=admin_headers)

    review = _review(client, pid, customer_headers).get_json()["review"]
    assert review["verified_purchase"] is True


def test_wishlist_flow(client, lavender, customer_headers):
    pid = lavender["product_id"]
    r = client.post("/api/wishlist", json={"productId": pid}, headers=customer_headers)
    assert r.status_code == 201
    r = client.post("/api/wishlist", json={"productId": pid}, headers=customer_headers)
    assert r.status_code == 200
    assert r.get_json()["message"] == "Already in wishlist"

    body = client.get("/api/wishlist", headers=customer_headers).get_json()
    assert body["count"] == 1
    assert body["items"][0]["product"]["name"] == "Calm Lavender Bath Bomb"
    assert body["items"][0]["product"]["available_stock"] == 10

    assert client.delete(f"/api/wishlist/{pid}", headers=customer_headers).status_code == 200
    assert client.delete(f"/api/wishlist/{pid}", headers=customer_headers).status_code == 404
    assert client.get("/api/wishlist", headers=customer_headers).get_json()["count"] == 0


def test_wishlist_errors(client, customer_headers):
    assert client.get("/api/wishlist").status_code == 401
    assert client.post("/api/wishlist", json={"productId": 999}, headers=customer_headers).status_code == 404
    assert client.post("/api/wishlist", json={}, headers=customer_headers).status_code == 400


def test_wishlists_are_per_user(client, lavender, customer_headers, other_customer_headers):
    client.post("/api/wishlist", json={"productId": lavender["product_id"]}, headers=customer_headers)
    assert client.get("/api/wishlist", headers=other_customer_headers).get_json()["count"] == 0
