"""Stock levels, reservations and alerts.

Quantities only move through the store's locked operations; this service adds
status bookkeeping, alerts and cache invalidation around them. A reservation
is a hold with an expiry, referenced by id (cart holds) or by an order number
(checkout holds). Releasing or committing goes through that reference, never
through a caller-supplied quantity.
"""
import logging
import threading
import time
from datetime import timedelta

from flask import current_app, jsonify, request

from .auth import requires_auth
from .cache import INVENTORY_PREFIX, cache_memo, invalidate_stock_views
from .errors import NotFoundError, StorefrontError, ValidationError, require_int
from .store import (
    ALERT_TYPES,
    STOCK_DISCONTINUED,
    STOCK_IN,
    STOCK_LOW,
    STOCK_OUT,
    current_store,
    jsonable,
    utcnow,
)

log = logging.getLogger("storefront.inventory")

DEFAULT_THRESHOLD = 5
DEFAULT_RESTOCK_LEVEL = 20
BULK_ACTIONS = ("set", "add", "subtract")
SUMMARY_TTL_SECONDS = 10


class InventoryService:
    def __init__(self, store, config, clock=utcnow):
        self.store = store
        self.config = config
        self.clock = clock

    # ---------- Queries ----------

    def get_available_stock(self, product_id: int) -> int:
        rec = self.store.get_inventory(product_id, self.clock())
        return rec["available"] if rec else 0

    def is_in_stock(self, product_id: int, quantity: int = 1) -> bool:
        return self.get_available_stock(product_id) >= quantity

    def get_stock_status(self, product_id: int) -> dict:
        rec = self.store.get_inventory(product_id, self.clock())
        return self.describe(rec)

    @staticmethod
    def describe(rec: dict | None) -> dict:
        if not rec:
            return {"status": "unknown", "text": "Stock info unavailable"}
        available = rec["available"]
        if rec["status"] == STOCK_DISCONTINUED:
            return {"status": STOCK_DISCONTINUED, "text": "Discontinued"}
        if rec["quantity"] == 0:
            return {"status": STOCK_OUT, "text": "Out of Stock", "available": 0}
        if available < rec["low_stock_threshold"]:
            return {"status": STOCK_LOW, "text": f"Only {available} left!", "available": available, "urgency": "high"}
        if available < 10:
            return {"status": STOCK_LOW, "text": f"{available} items available", "available": available, "urgency": "medium"}
        return {"status": STOCK_IN, "text": "In Stock", "available": available}

    def get_low_stock_products(self, limit: int = 20) -> list[dict]:
        return self.store.low_stock(limit, self.clock())

    def get_all_inventory(self, skip: int = 0, limit: int = 20) -> list[dict]:
        return self.store.list_inventory(skip, limit, self.clock())

    def get_total_inventory_count(self) -> int:
        return self.store.count_inventory()

    def get_inventory_summary(self) -> dict:
        return self.store.inventory_summary(self.clock())

    def get_stock_alerts(self, alert_type: str | None = None, limit: int = 50) -> list[dict]:
        if alert_type in (None, "", "all"):
            alert_type = None
        elif alert_type not in ALERT_TYPES:
            raise ValidationError(f"Unknown alert type {alert_type!r}")
        return self.store.list_alerts(alert_type, limit)

    def acknowledge_alert(self, alert_id: int) -> None:
        if not self.store.acknowledge_alert(alert_id):
            raise NotFoundError("Alert not found")

    # ---------- Reservations ----------

    def reserve_stock(self, product_id: int, quantity: int, expiry_minutes: int | None = None,
                      reference: str | None = None) -> dict:
        return self.reserve_items([(product_id, quantity)], expiry_minutes, reference)[0]

    def reserve_items(self, lines, expiry_minutes: int | None = None, reference: str | None = None) -> list[dict]:
        """Hold every line or none of them."""
        lines = [(pid, qty) for pid, qty in lines]
        if any(qty <= 0 for _, qty in lines):
            raise ValidationError("Quantity must be positive")
        minutes = expiry_minutes if expiry_minutes is not None else self.config.CART_RESERVATION_MINUTES
        now = self.clock()
        holds = self.store.reserve(lines, now + timedelta(minutes=minutes), reference, now)
        for hold in holds:
            log.info(
                "stock reserved product_id=%s qty=%s reservation_id=%s reference=%s expires_at=%s",
                hold["product_id"], hold["quantity"], hold["reservation_id"], reference, hold["expires_at"].isoformat(),
            )
        invalidate_stock_views()
        return holds

    def release_stock(self, reservation_id: str) -> dict:
        hold = self.store.get_reservation(reservation_id)
        if hold is None:
            raise NotFoundError("Reservation not found")
        released = self.store.release_reservations(self.clock(), reservation_ids=[reservation_id])
        log.info("stock released reservation_id=%s released=%s", reservation_id, bool(released))
        invalidate_stock_views()
        return {"reservation_id": reservation_id, "product_id": hold["product_id"], "released": bool(released)}

    def release_reference(self, reference: str) -> int:
        released = self.store.release_reservations(self.clock(), reference=reference)
        if released:
            log.info("stock released reference=%s holds=%s", reference, len(released))
            invalidate_stock_views()
        return len(released)

    def commit_reference(self, reference: str) -> list[dict]:
        """Turn the holds for ``reference`` into deductions."""
        now = self.clock()
        touched = self.store.commit_reservations(reference, now)
        for rec in touched:
            log.info("stock committed reference=%s product_id=%s quantity=%s", reference, rec["product_id"], rec["quantity"])
            self._after_change(rec, now)
        return touched

    def sweep_expired_reservations(self, now=None) -> int:
        count = self.store.expire_reservations(now or self.clock())
        if count:
            log.info("expired reservations swept count=%s", count)
            invalidate_stock_views()
        return count

    # ---------- Stock movements ----------

    def deduct_stock(self, product_id: int, quantity: int) -> dict:
        return self.deduct_items([(product_id, quantity)])[0]

    def deduct_items(self, lines) -> list[dict]:
        lines = [(pid, qty) for pid, qty in lines]
        if any(qty <= 0 for _, qty in lines):
            raise ValidationError("Quantity must be positive")
        now = self.clock()
        out = self.store.deduct(lines, now)
        for rec in out:
            log.info("stock deducted product_id=%s remaining=%s", rec["product_id"], rec["quantity"])
            self._after_change(rec, now)
        return out

    def add_stock(self, product_id: int, quantity: int, notes: str = "") -> dict:
        if quantity <= 0:
            raise ValidationError("Quantity must be positive")
        self._require_product(product_id)
        now = self.clock()
        rec = self.store.add_stock(product_id, quantity, now)
        message = f"Product restocked: +{quantity} units."
        if notes:
            message = f"{message} {notes}"
        self.store.create_alert(product_id, "restocked", message, now)
        log.info("stock added product_id=%s qty=%s total=%s", product_id, quantity, rec["quantity"])
        return self._after_change(rec, now)

    def set_inventory(self, product_id: int, quantity: int) -> dict:
        if quantity < 0:
            raise ValidationError("Quantity cannot be negative")
        self._require_product(product_id)
        now = self.clock()
        rec = self.store.set_inventory_quantity(product_id, quantity, now)
        log.info("stock set product_id=%s quantity=%s", product_id, quantity)
        return self._after_change(rec, now)

    def initialize_inventory(self, product_id: int, quantity: int = 0,
                             low_stock_threshold: int = DEFAULT_THRESHOLD) -> dict:
        if quantity < 0 or low_stock_threshold < 0:
            raise ValidationError("Quantity and threshold cannot be negative")
        self._require_product(product_id)
        now = self.clock()
        rec = self.store.create_inventory(
            product_id, quantity, low_stock_threshold, max(quantity, DEFAULT_RESTOCK_LEVEL), now
        )
        log.info("inventory initialized product_id=%s quantity=%s threshold=%s", product_id, quantity, low_stock_threshold)
        return self._after_change(rec, now)

    def discontinue(self, product_id: int) -> dict:
        rec = self.store.update_inventory_status(product_id, STOCK_DISCONTINUED, self.clock())
        if rec is None:
            raise NotFoundError(f"No inventory record for product {product_id}")
        invalidate_stock_views()
        return rec

    def bulk_update(self, updates: list) -> list[dict]:
        results = []
        for update in updates:
            try:
                if not isinstance(update, dict):
                    raise ValidationError("Each update must be an object")
                product_id = require_int(update.get("product_id", update.get("productId")), "productId")
                action = update.get("action")
                if action not in BULK_ACTIONS:
                    raise ValidationError(f"action must be one of {', '.join(BULK_ACTIONS)}")
                quantity = require_int(update.get("quantity"), "quantity", minimum=0)
                if action == "set":
                    rec = self.set_inventory(product_id, quantity)
                elif action == "add":
                    rec = self.add_stock(product_id, quantity)
                else:
                    rec = self.deduct_stock(product_id, quantity)
                results.append({"product_id": product_id, "success": True, "inventory": rec})
            except StorefrontError as e:
                results.append(dict(e.to_dict(), product_id=update.get("product_id", update.get("productId")) if isinstance(update, dict) else None))
        return results

    # ---------- Internals ----------

    def _require_product(self, product_id: int) -> None:
        if self.store.get_product(product_id) is None:
            raise NotFoundError(f"Product {product_id} not found")

    def _after_change(self, rec: dict, now) -> dict:
        """Recompute status and raise alerts after quantity moved."""
        previous = rec["status"]
        if previous != STOCK_DISCONTINUED:
            if rec["quantity"] == 0:
                status = STOCK_OUT
            elif rec["quantity"] < rec["low_stock_threshold"]:
                status = STOCK_LOW
            else:
                status = STOCK_IN
            if status != previous:
                rec = self.store.update_inventory_status(rec["product_id"], status, now) or rec
                log.info("stock status product_id=%s %s -> %s", rec["product_id"], previous, status)
            self._raise_alerts(rec, previous, now)
        invalidate_stock_views()
        return rec

    def _raise_alerts(self, rec: dict, previous: str, now) -> None:
        pid, qty = rec["product_id"], rec["quantity"]
        if qty == 0 and previous != STOCK_OUT:
            self.store.create_alert(pid, "out-of-stock", f"Product {pid} is out of stock", now)
            log.warning("out of stock product_id=%s", pid)
        elif 0 < qty < rec["low_stock_threshold"]:
            since = now - timedelta(minutes=self.config.LOW_STOCK_ALERT_WINDOW_MINUTES)
            if not self.store.has_recent_alert(pid, "low-stock", since):
                self.store.create_alert(pid, "low-stock", f"Product {pid} low stock: {qty} remaining", now)
                log.warning("low stock product_id=%s remaining=%s", pid, qty)


def inventory_service() -> InventoryService:
    return current_app.extensions["storefront.inventory"]


def start_reservation_sweeper(app) -> threading.Thread:
    """Daemon thread that marks expired holds; availability never depends on it running."""
    service = app.extensions["storefront.inventory"]
    interval = max(1, int(app.extensions["storefront.config"].RESERVATION_SWEEP_INTERVAL))

    def _sweep_loop():
        while True:
            time.sleep(interval)
            try:
                service.sweep_expired_reservations()
            except Exception as e:
                app.logger.warning("reservation sweep failed: %s", e)

    t = threading.Thread(target=_sweep_loop, name="reservation-sweeper", daemon=True)
    t.start()
    return t


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _product_id(body: dict) -> int:
    return require_int(body.get("product_id", body.get("productId")), "productId", minimum=1)


def register_inventory(app):
    @app.get("/api/inventory/status/<int:product_id>")
    def inventory_status(product_id: int):
        return jsonify({"success": True, "status": inventory_service().get_stock_status(product_id)})

    @app.get("/api/inventory/check/<int:product_id>")
    def inventory_check(product_id: int):
        svc = inventory_service()
        available = svc.get_available_stock(product_id)
        return jsonify({"success": True, "in_stock": available >= 1, "available_quantity": available})

    @app.post("/api/inventory/reserve")
    def inventory_reserve():
        body = _body()
        product_id = _product_id(body)
        quantity = require_int(body.get("quantity"), "quantity", minimum=1)
        minutes = require_int(
            body.get("expiry_minutes", body.get("expiryMinutes", current_app.extensions["storefront.config"].CART_RESERVATION_MINUTES)),
            "expiryMinutes", minimum=1, maximum=1440,
        )
        hold = inventory_service().reserve_stock(product_id, quantity, minutes)
        return jsonify({"success": True, "message": f"Reserved {quantity} units", "reservation": jsonable(hold)}), 201

    @app.post("/api/inventory/release")
    def inventory_release():
        body = _body()
        reservation_id = body.get("reservation_id") or body.get("reservationId")
        if not reservation_id or not isinstance(reservation_id, str):
            return jsonify({"success": False, "error": "Valid reservationId is required"}), 400
        result = inventory_service().release_stock(reservation_id)
        return jsonify({"success": True, **result})

    @app.post("/api/inventory/deduct")
    @requires_auth(role="admin")
    def inventory_deduct():
        body = _body()
        product_id = _product_id(body)
        quantity = require_int(body.get("quantity"), "quantity", minimum=1)
        rec = inventory_service().deduct_stock(product_id, quantity)
        return jsonify({"success": True, "inventory": jsonable(rec)})

    @app.post("/api/inventory/add")
    @requires_auth(role="admin")
    def inventory_add():
        body = _body()
        product_id = _product_id(body)
        quantity = require_int(body.get("quantity"), "quantity", minimum=1)
        rec = inventory_service().add_stock(product_id, quantity, str(body.get("notes") or ""))
        return jsonify({"success": True, "inventory": jsonable(rec)})

    @app.post("/api/inventory/initialize")
    @requires_auth(role="admin")
    def inventory_initialize():
        body = _body()
        product_id = _product_id(body)
        quantity = require_int(body.get("quantity", 0), "quantity", minimum=0)
        threshold = require_int(
            body.get("low_stock_threshold", body.get("lowStockThreshold", DEFAULT_THRESHOLD)), "lowStockThreshold", minimum=0
        )
        rec = inventory_service().initialize_inventory(product_id, quantity, threshold)
        return jsonify({"success": True, "inventory": jsonable(rec)}), 201

    @app.post("/api/inventory/bulk-update")
    @requires_auth(role="admin")
    def inventory_bulk_update():
        updates = _body().get("updates")
        if not isinstance(updates, list) or not updates:
            return jsonify({"success": False, "error": "Updates array is required"}), 400
        results = inventory_service().bulk_update(updates)
        return jsonify({"success": True, "results": jsonable(results)})

    @app.get("/api/inventory/low-stock")
    @requires_auth(role="admin")
    def inventory_low_stock():
        limit = require_int(request.args.get("limit", 20), "limit", minimum=1, maximum=100)
        return jsonify({"success": True, "products": jsonable(inventory_service().get_low_stock_products(limit))})

    @app.get("/api/inventory/summary")
    @requires_auth(role="admin")
    def inventory_summary():
        summary = cache_memo(f"{INVENTORY_PREFIX}:summary", SUMMARY_TTL_SECONDS, inventory_service().get_inventory_summary)
        return jsonify({"success": True, "summary": summary})

    @app.get("/api/inventory/all")
    @requires_auth(role="admin")
    def inventory_all():
        page = require_int(request.args.get("page", 1), "page", minimum=1)
        limit = require_int(request.args.get("limit", 20), "limit", minimum=1, maximum=100)
        svc = inventory_service()
        rows = svc.get_all_inventory((page - 1) * limit, limit)
        total = svc.get_total_inventory_count()
        return jsonify({
            "success": True,
            "inventories": jsonable(rows),
            "pagination": {"total": total, "page": page, "pages": (total + limit - 1) // limit},
        })

    @app.get("/api/inventory/alerts")
    @requires_auth(role="admin")
    def inventory_alerts():
        limit = require_int(request.args.get("limit", 50), "limit", minimum=1, maximum=200)
        alerts = inventory_service().get_stock_alerts(request.args.get("type", "all"), limit)
        return jsonify({"success": True, "alerts": jsonable(alerts)})

    @app.post("/api/inventory/alerts/<int:alert_id>/acknowledge")
    @requires_auth(role="admin")
    def inventory_acknowledge(alert_id: int):
        inventory_service().acknowledge_alert(alert_id)
        return jsonify({"success": True, "alert_id": alert_id})

    @app.post("/api/inventory/sweep")
    @requires_auth(role="admin")
    def inventory_sweep():
        return jsonify({"success": True, "expired": inventory_service().sweep_expired_reservations()})
