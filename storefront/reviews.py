import logging
from decimal import Decimal, ROUND_HALF_UP

from flask import jsonify, request

from .auth import current_user_id, requires_auth
from .errors import NotFoundError, ValidationError, require_int
from .store import current_store, jsonable

log = logging.getLogger("storefront.reviews")

PURCHASED_STATUSES = ("shipped", "delivered")


def summarize(reviews: list[dict]) -> dict:
    distribution = {str(star): 0 for star in range(5, 0, -1)}
    for review in reviews:
        distribution[str(review["rating"])] += 1
    total = len(reviews)
    average = (Decimal(sum(r["rating"] for r in reviews)) / total).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP) if total else Decimal("0")
    return {"average_rating": float(average), "total_reviews": total, "distribution": distribution}


def has_purchased(store, user_id: int, product_id: int) -> bool:
    for order in store.list_orders(user_id=user_id):
        if order["status"] in PURCHASED_STATUSES and any(i.get("product_id") == product_id for i in order.get("items") or []):
            return True
    return False


def register_reviews(app):
    @app.post("/api/products/<int:product_id>/reviews")
    @requires_auth()
    def create_review(product_id: int):
        store = current_store()
        if store.get_product(product_id) is None:
            raise NotFoundError("Product not found")
        body = request.get_json(silent=True) or {}
        rating = require_int(body.get("rating"), "rating", minimum=1, maximum=5)
        comment = str(body.get("comment") or "").strip()
        if not 10 <= len(comment) <= 1000:
            raise ValidationError("Comment must be between 10 and 1000 characters")
        user = store.get_user(current_user_id())
        if user is None:
            raise NotFoundError("User not found")
        review = store.create_review({
            "product_id": product_id,
            "user_id": user["user_id"],
            "user_name": f"{user['first_name']} {user['last_name']}",
            "rating": rating,
            "comment": comment,
            "verified_purchase": has_purchased(store, user["user_id"], product_id),
        })
        log.info("review created product_id=%s user_id=%s rating=%s", product_id, user["user_id"], rating)
        return jsonify({"success": True, "review": jsonable(review)}), 201

    @app.get("/api/products/<int:product_id>/reviews")
    def list_reviews(product_id: int):
        store = current_store()
        if store.get_product(product_id) is None:
            raise NotFoundError("Product not found")
        reviews = store.list_reviews(product_id)
        return jsonify({"success": True, "reviews": jsonable(reviews), **summarize(reviews)})
