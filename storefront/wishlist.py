from flask import jsonify, request

from .auth import current_user_id, requires_auth
from .errors import NotFoundError, require_int
from .inventory import inventory_service
from .products import with_stock
from .store import current_store, jsonable, utcnow


def register_wishlist(app):
    @app.get("/api/wishlist")
    @requires_auth()
    def get_wishlist():
        store = current_store()
        entries = store.list_wishlist(current_user_id())
        products = store.get_products(e["product_id"] for e in entries)
        svc = inventory_service()
        items = []
        for entry in entries:
            product = products.get(entry["product_id"])
            if product is None:
                continue
            items.append({"added_at": jsonable(entry["added_at"]), "product": with_stock(product, svc)})
        return jsonify({"success": True, "items": items, "count": len(items)})

    @app.post("/api/wishlist")
    @requires_auth()
    def add_to_wishlist():
        body = request.get_json(silent=True) or {}
        product_id = require_int(body.get("product_id", body.get("productId")), "productId", minimum=1)
        store = current_store()
        if store.get_product(product_id) is None:
            raise NotFoundError("Product not found")
        added = store.add_wishlist_item(current_user_id(), product_id, utcnow())
        message = "Added to wishlist" if added else "Already in wishlist"
        return jsonify({"success": True, "message": message, "product_id": product_id}), (201 if added else 200)

    @app.delete("/api/wishlist/<int:product_id>")
    @requires_auth()
    def remove_from_wishlist(product_id: int):
        if not current_store().remove_wishlist_item(current_user_id(), product_id):
            raise NotFoundError("Product not in wishlist")
        return jsonify({"success": True, "message": "Removed from wishlist", "product_id": product_id})
