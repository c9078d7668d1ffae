import logging
import re
from decimal import Decimal, InvalidOperation

from flask import current_app, jsonify, request

from .auth import requires_auth
from .cache import PRODUCTS_PREFIX, cache_get, cache_set, invalidate_stock_views
from .config import current_config
from .errors import NotFoundError, ValidationError, require_int
from .inventory import DEFAULT_THRESHOLD, InventoryService, inventory_service
from .store import current_store, jsonable, utcnow

log = logging.getLogger("storefront.products")

SORT_OPTIONS = ("price_asc", "price_desc", "newest", "oldest")
MAX_PAGE_SIZE = 100


def _flag(value):
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true", "yes", "on")


def validate_product(payload: dict, partial: bool = False) -> dict:
    """Return the cleaned product fields; with partial=True only the keys present are checked."""
    clean: dict = {}
    errors: list[str] = []

    def present(key):
        return key in payload or not partial

    if present("name"):
        name = str(payload.get("name") or "").strip()
        if not 2 <= len(name) <= 120:
            errors.append("Product name must be between 2 and 120 characters")
        clean["name"] = name
    if present("price"):
        try:
            price = Decimal(str(payload.get("price")))
            if not price.is_finite() or price < 0:
                raise InvalidOperation
            clean["price"] = price
        except (InvalidOperation, ValueError):
            errors.append("Price must be a positive number")
    if present("description"):
        description = str(payload.get("description") or "").strip()
        if not 10 <= len(description) <= 2000:
            errors.append("Description must be between 10 and 2000 characters")
        clean["description"] = description
    if present("image"):
        image = str(payload.get("image") or "").strip()
        if not image:
            errors.append("Image URL is required")
        clean["image"] = image
    if present("category"):
        category = str(payload.get("category") or "").strip().lower()
        if not 2 <= len(category) <= 80:
            errors.append("Category must be between 2 and 80 characters")
        clean["category"] = category
    for key, alias in (("is_new", "isNew"), ("is_featured", "isFeatured")):
        if key in payload or alias in payload:
            clean[key] = bool(_flag(payload.get(key, payload.get(alias))))
        elif not partial:
            clean[key] = False
    if errors:
        raise ValidationError(errors[0], errors=errors)
    return clean


def with_stock(product: dict, svc: InventoryService) -> dict:
    rec = svc.store.get_inventory(product["product_id"], svc.clock())
    out = dict(product)
    out["available_stock"] = rec["available"] if rec else 0
    out["stock_status"] = svc.describe(rec)
    return jsonable(out)


def search_tokens(raw: str | None) -> list[str]:
    return [t for t in re.split(r"\s+", raw or "") if len(t) >= 2]


def list_catalog(filters: dict, sort: str, page: int, limit: int) -> dict:
    cfg = current_config()
    key_parts = [f"{k}={filters.get(k)}" for k in sorted(filters)]
    cache_key = f"{PRODUCTS_PREFIX}:list:{':'.join(key_parts)}:sort={sort}:page={page}:limit={limit}"
    cached = cache_get(cache_key)
    if cached is not None:
        return cached
    rows, total = current_store().list_products(filters, sort, limit, (page - 1) * limit)
    svc = inventory_service()
    body = {
        "products": [with_stock(p, svc) for p in rows],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit,
        },
    }
    cache_set(cache_key, body, cfg.CACHE_TTL_PRODUCTS)
    return body


def _listing_args() -> tuple[dict, str, int, int]:
    args = request.args
    page = require_int(args.get("page", 1), "page", minimum=1)
    limit = min(require_int(args.get("limit", 20), "limit", minimum=1), MAX_PAGE_SIZE)
    sort = args.get("sort", "newest")
    if sort not in SORT_OPTIONS:
        raise ValidationError(f"sort must be one of {', '.join(SORT_OPTIONS)}")
    filters: dict = {}
    if args.get("category"):
        filters["category"] = args["category"].strip().lower()
    for flag in ("is_featured", "is_new"):
        value = _flag(args.get(flag))
        if value is not None:
            filters[flag] = value
    for bound in ("min_price", "max_price"):
        if args.get(bound) not in (None, ""):
            try:
                value = Decimal(args[bound])
            except InvalidOperation:
                raise ValidationError(f"{bound} must be a number")
            if not value.is_finite():
                raise ValidationError(f"{bound} must be a number")
            filters[bound] = value
    search = args.get("search")
    if search:
        filters["search_tokens"] = search_tokens(search)
    return filters, sort, page, limit


def register_products(app):
    @app.get("/api/products")
    def list_products():
        filters, sort, page, limit = _listing_args()
        if "search_tokens" in filters and not filters["search_tokens"]:
            # search given but nothing long enough to match on
            return jsonify({
                "success": True,
                "products": [],
                "pagination": {"total": 0, "page": page, "limit": limit, "pages": 0},
            })
        body = list_catalog(filters, sort, page, limit)
        resp = jsonify({"success": True, **body})
        resp.headers["Cache-Control"] = "public, max-age=30"
        return resp

    @app.get("/api/products/new-arrivals")
    def new_arrivals():
        limit = min(require_int(request.args.get("limit", 8), "limit", minimum=1), MAX_PAGE_SIZE)
        body = list_catalog({"is_new": True}, "newest", 1, limit)
        return jsonify({"success": True, "products": body["products"]})

    @app.get("/api/products/featured")
    def featured():
        limit = min(require_int(request.args.get("limit", 8), "limit", minimum=1), MAX_PAGE_SIZE)
        body = list_catalog({"is_featured": True}, "newest", 1, limit)
        return jsonify({"success": True, "products": body["products"]})

    @app.get("/api/products/category/<category>")
    def by_category(category: str):
        page = require_int(request.args.get("page", 1), "page", minimum=1)
        limit = min(require_int(request.args.get("limit", 20), "limit", minimum=1), MAX_PAGE_SIZE)
        body = list_catalog({"category": category.strip().lower()}, "newest", page, limit)
        return jsonify({"success": True, **body})

    @app.get("/api/products/<int:product_id>")
    def get_product(product_id: int):
        product = current_store().get_product(product_id)
        if not product:
            raise NotFoundError("Product not found")
        return jsonify({"success": True, "product": with_stock(product, inventory_service())})

    @app.post("/api/products")
    @requires_auth(role="admin")
    def create_product():
        body = request.get_json(silent=True) or {}
        data = validate_product(body)
        stock = require_int(body.get("stock", 0), "stock", minimum=0)
        threshold = require_int(
            body.get("low_stock_threshold", body.get("lowStockThreshold", DEFAULT_THRESHOLD)), "lowStockThreshold", minimum=0
        )
        product = current_store().create_product(data)
        inventory_service().initialize_inventory(product["product_id"], stock, threshold)
        log.info("product created product_id=%s name=%s stock=%s", product["product_id"], product["name"], stock)
        return jsonify({"success": True, "product": with_stock(product, inventory_service())}), 201

    @app.put("/api/products/<int:product_id>")
    @requires_auth(role="admin")
    def update_product(product_id: int):
        body = request.get_json(silent=True) or {}
        fields = validate_product(body, partial=True)
        store = current_store()
        if store.get_product(product_id) is None:
            raise NotFoundError("Product not found")
        product = store.update_product(product_id, fields) if fields else store.get_product(product_id)
        if "stock" in body:
            inventory_service().set_inventory(product_id, require_int(body["stock"], "stock", minimum=0))
        invalidate_stock_views()
        log.info("product updated product_id=%s fields=%s", product_id, ",".join(sorted(fields)))
        return jsonify({"success": True, "product": with_stock(product, inventory_service())})

    @app.delete("/api/products/<int:product_id>")
    @requires_auth(role="admin")
    def delete_product(product_id: int):
        if not current_store().delete_product(product_id):
            raise NotFoundError("Product not found")
        invalidate_stock_views()
        current_app.logger.info("product deleted product_id=%s at=%s", product_id, utcnow().isoformat())
        return jsonify({"success": True, "message": "Product deleted"})
