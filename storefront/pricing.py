import logging
from datetime import timedelta
from decimal import Decimal

from flask import current_app, jsonify, request

from .errors import InsufficientStockError, NotFoundError, ValidationError, require_int
from .store import jsonable, money, utcnow

log = logging.getLogger("storefront.pricing")

COUPONS = {
    "WELCOME10": {"percentage": 10, "min_amount": 0, "description": "Welcome bonus - 10% off on first purchase"},
    "SAVE20": {"percentage": 20, "min_amount": 2000, "description": "Save 20% on orders above PKR 2000"},
    "SUMMER15": {"percentage": 15, "min_amount": 1500, "description": "Summer sale - 15% off on orders above PKR 1500"},
    "FLASH25": {"percentage": 25, "min_amount": 3000, "description": "Flash sale - 25% off on orders above PKR 3000"},
}

SHIPPING_METHODS = {
    "standard": {"name": "Standard Delivery (3-5 days)", "base_cost": 250, "free_above": 3000, "estimated_days": "3-5"},
    "express": {"name": "Express Delivery (1-2 days)", "base_cost": 500, "free_above": 5000, "estimated_days": "1-2"},
    "overnight": {"name": "Overnight Delivery", "base_cost": 750, "free_above": 7000, "estimated_days": "Next day"},
    "pickup": {"name": "Store Pickup (Free)", "base_cost": 0, "free_above": 0, "estimated_days": "Same day"},
}

DELIVERY_DAYS = {"standard": 5, "express": 2, "overnight": 1, "pickup": 0}

# (minimum total quantity, percent), checked from the largest tier down
BULK_TIERS = ((20, 15), (10, 10), (5, 5))

INSTALLMENT_MONTHS = (3, 6, 12)
INSTALLMENT_MIN_TOTAL = Decimal("5000")


def normalize_shipping_method(method) -> str:
    method = str(method or "standard").lower()
    return method if method in SHIPPING_METHODS else "standard"


class CartService:
    """Server-side cart pricing. Unit prices always come from the catalog."""

    def __init__(self, store, inventory, config):
        self.store = store
        self.inventory = inventory
        self.config = config

    def calculate_cart_total(self, items, shipping_method: str = "standard", coupon_code: str | None = None) -> dict:
        lines = self._validate_items(items)
        subtotal = sum((line["line_total"] for line in lines), Decimal("0"))

        discount = {"code": None, "amount": 0.0, "percentage": 0}
        discount_amount = Decimal("0")
        if coupon_code:
            coupon = self._check_coupon(coupon_code, subtotal)
            if coupon["valid"]:
                discount_amount = money(subtotal * Decimal(coupon["percentage"]) / 100)
                discount = {"code": coupon["code"], "amount": float(discount_amount), "percentage": coupon["percentage"]}
            else:
                discount["error"] = coupon["message"]

        discounted = subtotal - discount_amount
        tax_rate = Decimal(str(self.config.TAX_RATE))
        tax = money(discounted * tax_rate)
        method = normalize_shipping_method(shipping_method)
        shipping = self.calculate_shipping(discounted, method)
        total = money(discounted + tax + shipping)

        return {
            "breakdown": {
                "subtotal": float(money(subtotal)),
                "discount": discount,
                "subtotal_after_discount": float(money(discounted)),
                "tax": {"rate": float(tax_rate * 100), "amount": float(tax)},
                "shipping": {"method": method, "cost": float(shipping)},
                "total": float(total),
            },
            "items": jsonable(lines),
        }

    def _validate_items(self, items) -> list[dict]:
        if not isinstance(items, list) or not items:
            raise ValidationError("Cart items are required")
        parsed = []
        for item in items:
            if not isinstance(item, dict):
                raise ValidationError("Each cart item must be an object")
            product_id = require_int(item.get("product_id", item.get("productId")), "productId", minimum=1)
            quantity = require_int(item.get("quantity"), "quantity", minimum=1)
            parsed.append((product_id, quantity))
        products = self.store.get_products(pid for pid, _ in parsed)
        requested: dict[int, int] = {}
        for product_id, quantity in parsed:
            requested[product_id] = requested.get(product_id, 0) + quantity
        lines = []
        for product_id, quantity in parsed:
            product = products.get(product_id)
            if product is None:
                raise NotFoundError(f"Product {product_id} not found", product_id=product_id)
            available = self.inventory.get_available_stock(product_id)
            if available < requested[product_id]:
                raise InsufficientStockError(product_id, requested[product_id], available, name=product["name"])
            unit_price = money(product["price"])
            lines.append({
                "product_id": product_id,
                "name": product["name"],
                "image": product.get("image"),
                "unit_price": unit_price,
                "quantity": quantity,
                "line_total": money(unit_price * quantity),
                "stock_available": available,
            })
        return lines

    @staticmethod
    def _check_coupon(code, subtotal: Decimal | None) -> dict:
        key = str(code or "").strip().upper()
        coupon = COUPONS.get(key)
        if coupon is None:
            return {"valid": False, "message": "Invalid coupon code"}
        if subtotal is not None and subtotal < coupon["min_amount"]:
            return {"valid": False, "message": f"Minimum order amount required: PKR {coupon['min_amount']}"}
        return {"valid": True, "code": key, "percentage": coupon["percentage"], "min_amount": coupon["min_amount"]}

    def validate_coupon(self, code, subtotal=None) -> dict:
        result = self._check_coupon(code, money(subtotal) if subtotal is not None else None)
        if not result["valid"]:
            raise ValidationError(result["message"])
        return {
            "code": result["code"],
            "percentage": result["percentage"],
            "min_amount": result["min_amount"],
            "message": f"{result['percentage']}% discount applied!",
        }

    @staticmethod
    def get_available_coupons() -> list[dict]:
        return [
            {"code": code, "description": c["description"], "discount": c["percentage"], "min_amount": c["min_amount"]}
            for code, c in COUPONS.items()
        ]

    @staticmethod
    def calculate_shipping(subtotal: Decimal, method: str = "standard") -> Decimal:
        rate = SHIPPING_METHODS[normalize_shipping_method(method)]
        if subtotal >= rate["free_above"]:
            return Decimal("0.00")
        return money(rate["base_cost"])

    @staticmethod
    def get_shipping_methods() -> list[dict]:
        return [
            {"id": key, "name": m["name"], "base_cost": m["base_cost"], "free_above": m["free_above"],
             "estimated_days": m["estimated_days"]}
            for key, m in SHIPPING_METHODS.items()
        ]

    @staticmethod
    def calculate_bulk_discount(items) -> dict:
        if not isinstance(items, list):
            raise ValidationError("Items array is required")
        total_quantity = 0
        for item in items:
            if isinstance(item, dict):
                total_quantity += require_int(item.get("quantity", 0), "quantity", minimum=0)
        percentage = next((pct for min_qty, pct in BULK_TIERS if total_quantity >= min_qty), 0)
        return {"applicable": percentage > 0, "percentage": percentage, "total_quantity": total_quantity}

    @staticmethod
    def get_installment_options(total) -> dict:
        total = money(total)
        return {
            "available": total > INSTALLMENT_MIN_TOTAL,
            "plans": [{"months": m, "monthly_amount": float(money(total / m))} for m in INSTALLMENT_MONTHS],
            "provider": "JazzCash/EasyPaisa Installments",
        }

    @staticmethod
    def estimate_delivery_date(shipping_method: str = "standard", today=None) -> dict:
        method = str(shipping_method or "standard").lower()
        days = DELIVERY_DAYS.get(method, 5)
        start = (today or utcnow()).date()
        return {"method": method, "estimated_date": (start + timedelta(days=days)).isoformat(), "estimated_days": days}

    def cart_summary(self, items, shipping_method: str = "standard", coupon_code: str | None = None) -> dict:
        if not items:
            return {"subtotal": 0, "tax": 0, "shipping": 0, "discount": 0, "total": 0, "item_count": 0}
        calculation = self.calculate_cart_total(items, shipping_method, coupon_code)
        breakdown = calculation["breakdown"]
        return {
            "item_count": len(items),
            **breakdown,
            "bulk_discount": self.calculate_bulk_discount(items),
            "estimated_delivery": self.estimate_delivery_date(shipping_method),
            "installment_options": self.get_installment_options(breakdown["total"]),
        }


def cart_service() -> CartService:
    return current_app.extensions["storefront.cart"]


def _money_field(value, name: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f"Valid {name} is required")
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"Valid {name} is required")
    return amount


def register_pricing(app):
    def _body() -> dict:
        return request.get_json(silent=True) or {}

    @app.post("/api/cart/calculate")
    def cart_calculate():
        body = _body()
        result = cart_service().calculate_cart_total(
            body.get("items"),
            body.get("shipping_method", body.get("shippingMethod", "standard")),
            body.get("coupon_code", body.get("couponCode")),
        )
        return jsonify({"success": True, **result})

    @app.post("/api/cart/validate-coupon")
    def cart_validate_coupon():
        body = _body()
        code = body.get("coupon_code", body.get("couponCode"))
        if not code:
            return jsonify({"success": False, "error": "Coupon code is required"}), 400
        subtotal = body.get("subtotal")
        if subtotal is not None:
            subtotal = _money_field(subtotal, "subtotal")
        return jsonify({"success": True, "coupon": cart_service().validate_coupon(code, subtotal)})

    @app.get("/api/cart/coupons")
    def cart_coupons():
        return jsonify({"success": True, "coupons": CartService.get_available_coupons()})

    @app.get("/api/cart/shipping-methods")
    def cart_shipping_methods():
        return jsonify({"success": True, "methods": CartService.get_shipping_methods()})

    @app.post("/api/cart/bulk-discount")
    def cart_bulk_discount():
        return jsonify({"success": True, "discount": CartService.calculate_bulk_discount(_body().get("items"))})

    @app.post("/api/cart/installments")
    def cart_installments():
        body = _body()
        total = body.get("total_amount", body.get("totalAmount"))
        if total is None:
            return jsonify({"success": False, "error": "Total amount is required"}), 400
        amount = _money_field(total, "totalAmount")
        return jsonify({"success": True, "installments": CartService.get_installment_options(amount)})

    @app.post("/api/cart/estimate-delivery")
    def cart_estimate_delivery():
        body = _body()
        method = body.get("shipping_method", body.get("shippingMethod", "standard"))
        return jsonify({"success": True, "estimate": CartService.estimate_delivery_date(method)})

    @app.post("/api/cart/summary")
    def cart_summary():
        body = _body()
        summary = cart_service().cart_summary(
            body.get("items") or [],
            body.get("shipping_method", body.get("shippingMethod", "standard")),
            body.get("coupon_code", body.get("couponCode")),
        )
        return jsonify({"success": True, "summary": summary})
