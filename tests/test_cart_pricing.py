from datetime import datetime, timezone

import pytest

from storefront.errors import InsufficientStockError, NotFoundError, ValidationError
from storefront.pricing import CartService


def test_breakdown_with_welcome_coupon(cart, lavender):
    result = cart.calculate_cart_total(
        [{"product_id": lavender["product_id"], "quantity": 2}], "standard", "WELCOME10"
    )
    b = result["breakdown"]
    assert b["subtotal"] == 1798.0
    assert b["discount"] == {"code": "WELCOME10", "amount": 179.8, "percentage": 10}
    assert b["subtotal_after_discount"] == 1618.2
    assert b["tax"] == {"rate": 17.0, "amount": 275.09}
    assert b["shipping"] == {"method": "standard", "cost": 250.0}
    assert b["total"] == 2143.29

    [line] = result["items"]
    assert line["unit_price"] == 899.0
    assert line["line_total"] == 1798.0
    assert line["stock_available"] == 10


def test_client_supplied_price_is_ignored(cart, lavender):
    result = cart.calculate_cart_total([{"productId": lavender["product_id"], "quantity": 1, "price": 1}])
    assert result["items"][0]["unit_price"] == 899.0


def test_coupon_below_minimum_is_reported_and_ignored(cart, lavender):
    b = cart.calculate_cart_total([{"product_id": lavender["product_id"], "quantity": 2}], coupon_code="SAVE20")["breakdown"]
    assert b["discount"]["amount"] == 0.0
    assert b["discount"]["error"] == "Minimum order amount required: PKR 2000"
    assert b["tax"]["amount"] == 305.66
    assert b["total"] == 2353.66


def test_unknown_coupon_is_reported(cart, lavender):
    b = cart.calculate_cart_total([{"product_id": lavender["product_id"], "quantity": 1}], coupon_code="NOPE")["breakdown"]
    assert b["discount"]["error"] == "Invalid coupon code"
    assert b["discount"]["code"] is None


def test_free_shipping_threshold(cart, lavender):
    b = cart.calculate_cart_total([{"product_id": lavender["product_id"], "quantity": 4}])["breakdown"]
    assert b["subtotal"] == 3596.0
    assert b["shipping"]["cost"] == 0.0
    assert b["total"] == 4207.32


def test_unknown_shipping_method_falls_back_to_standard(cart, lavender):
    b = cart.calculate_cart_total([{"product_id": lavender["product_id"], "quantity": 1}], "teleport")["breakdown"]
    assert b["shipping"] == {"method": "standard", "cost": 250.0}
    b = cart.calculate_cart_total([{"product_id": lavender["product_id"], "quantity": 1}], "EXPRESS")["breakdown"]
    assert b["shipping"] == {"method": "express", "cost": 500.0}


def test_cart_checks_available_stock(cart, inventory, eucalyptus):
    pid = eucalyptus["product_id"]
    inventory.reserve_stock(pid, 2)
    with pytest.raises(InsufficientStockError) as exc:
        cart.calculate_cart_total([{"product_id": pid, "quantity": 2}, {"product_id": pid, "quantity": 1}])
    assert exc.value.available == 2
    assert exc.value.requested == 3


def test_cart_rejects_bad_items(cart, lavender):
    with pytest.raises(ValidationError):
        cart.calculate_cart_total([])
    with pytest.raises(ValidationError):
        cart.calculate_cart_total([{"product_id": lavender["product_id"], "quantity": 0}])
    with pytest.raises(NotFoundError):
        cart.calculate_cart_total([{"product_id": 404, "quantity": 1}])


def test_validate_coupon(cart):
    assert cart.validate_coupon("save20", 2500)["percentage"] == 20
    assert cart.validate_coupon("SAVE20")["code"] == "SAVE20"
    with pytest.raises(ValidationError, match="Minimum order amount"):
        cart.validate_coupon("SAVE20", 100)
    with pytest.raises(ValidationError, match="Invalid coupon code"):
        cart.validate_coupon("BOGUS", 100)


@pytest.mark.parametrize(
    "quantities,expected",
    [([4], 0), ([3, 2], 5), ([10], 10), ([12, 13], 15)],
)
def test_bulk_discount_tiers(quantities, expected):
    result = CartService.calculate_bulk_discount([{"quantity": q} for q in quantities])
    assert result["percentage"] == expected
    assert result["applicable"] is (expected > 0)
    assert result["total_quantity"] == sum(quantities)


def test_installment_options():
    options = CartService.get_installment_options(6000)
    assert options["available"] is True
    assert [p["monthly_amount"] for p in options["plans"]] == [2000.0, 1000.0, 500.0]
    assert CartService.get_installment_options(5000)["available"] is False


def test_estimate_delivery_date():
    today = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    assert CartService.estimate_delivery_date("express", today) == {
        "method": "express", "estimated_date": "2026-03-03", "estimated_days": 2,
    }
    assert CartService.estimate_delivery_date("pickup", today)["estimated_days"] == 0
    assert CartService.estimate_delivery_date("unknown", today)["estimated_days"] == 5


def test_cart_summary(cart, lavender):
    assert cart.cart_summary([]) == {"subtotal": 0, "tax": 0, "shipping": 0, "discount": 0, "total": 0, "item_count": 0}
    summary = cart.cart_summary([{"product_id": lavender["product_id"], "quantity": 6}])
    assert summary["item_count"] == 1
    assert summary["bulk_discount"]["percentage"] == 5
    assert summary["installment_options"]["available"] is True


def test_calculate_endpoint(client, lavender):
    r = client.post("/api/cart/calculate", json={
        "items": [{"productId": lavender["product_id"], "quantity": 2}],
        "shippingMethod": "standard",
        "couponCode": "WELCOME10",
    })
    assert r.status_code == 200
    body = r.get_json()
    assert body["success"] is True
    assert body["breakdown"]["total"] == 2143.29


def test_calculate_endpoint_errors(client, eucalyptus):
    r = client.post("/api/cart/calculate", json={"items": [{"productId": eucalyptus["product_id"], "quantity": 9}]})
    assert r.status_code == 409
    body = r.get_json()
    assert body["success"] is False
    assert body["available"] == 4
    assert "Breathe Eucalyptus Bath Bomb" in body["error"]

    r = client.post("/api/cart/calculate", json={"items": [{"productId": "abc", "quantity": 1}]})
    assert r.status_code == 400

    r = client.post("/api/cart/calculate", json={"items": [{"productId": 777, "quantity": 1}]})
    assert r.status_code == 404


def test_coupon_and_shipping_endpoints(client):
    r = client.post("/api/cart/validate-coupon", json={})
    assert r.status_code == 400
    r = client.post("/api/cart/validate-coupon", json={"couponCode": "summer15", "subtotal": 1500})
    assert r.status_code == 200
    assert r.get_json()["coupon"]["percentage"] == 15
    r = client.post("/api/cart/validate-coupon", json={"couponCode": "SUMMER15", "subtotal": "-3"})
    assert r.status_code == 400

    codes = [c["code"] for c in client.get("/api/cart/coupons").get_json()["coupons"]]
    assert codes == ["WELCOME10", "SAVE20", "SUMMER15", "FLASH25"]
    methods = client.get("/api/cart/shipping-methods").get_json()["methods"]
    assert [m["id"] for m in methods] == ["standard", "express", "overnight", "pickup"]


def test_misc_calculator_endpoints(client):
    r = client.post("/api/cart/bulk-discount", json={"items": [{"quantity": 10}]})
    assert r.get_json()["discount"]["percentage"] == 10
    r = client.post("/api/cart/installments", json={})
    assert r.status_code == 400
    r = client.post("/api/cart/installments", json={"totalAmount": 9000})
    assert r.get_json()["installments"]["plans"][0] == {"months": 3, "monthly_amount": 3000.0}
    r = client.post("/api/cart/estimate-delivery", json={"shippingMethod": "overnight"})
    assert r.get_json()["estimate"]["estimated_days"] == 1
    r = client.post("/api/cart/summary", json={"items": []})
    assert r.get_json()["summary"]["item_count"] == 0
