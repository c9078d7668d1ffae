import copy
import threading
import uuid
from datetime import datetime

from .errors import ConflictError, InsufficientStockError, NotFoundError
from .store import (
    ORDER_FIELDS,
    RESERVATION_ACTIVE,
    RESERVATION_COMMITTED,
    RESERVATION_EXPIRED,
    RESERVATION_RELEASED,
    STOCK_DISCONTINUED,
    STOCK_IN,
    merge_lines,
    money,
    utcnow,
)


class MemoryStore:
    """In-process store; every public method runs under one lock."""

    name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._seq: dict[str, int] = {}
        self._products: dict[int, dict] = {}
        self._inventory: dict[int, dict] = {}
        self._reservations: dict[str, dict] = {}
        self._alerts: dict[int, dict] = {}
        self._users: dict[int, dict] = {}
        self._orders: dict[int, dict] = {}
        self._admin_log: list[dict] = []
        self._reviews: dict[int, dict] = {}
        self._wishlist: dict[tuple[int, int], dict] = {}

    def _next_id(self, kind: str) -> int:
        self._seq[kind] = self._seq.get(kind, 0) + 1
        return self._seq[kind]

    def ping(self) -> bool:
        return True

    # ---------- Products ----------

    def create_product(self, data: dict) -> dict:
        with self._lock:
            now = utcnow()
            product_id = self._next_id("product")
            rec = {
                "product_id": product_id,
                "name": data["name"],
                "price": money(data["price"]),
                "description": data["description"],
                "image": data["image"],
                "category": data["category"],
                "is_new": bool(data.get("is_new", False)),
                "is_featured": bool(data.get("is_featured", False)),
                "created_at": now,
                "updated_at": now,
            }
            self._products[product_id] = rec
            return dict(rec)

    def get_product(self, product_id: int) -> dict | None:
        with self._lock:
            rec = self._products.get(product_id)
            return dict(rec) if rec else None

    def get_products(self, product_ids) -> dict[int, dict]:
        with self._lock:
            return {pid: dict(self._products[pid]) for pid in set(product_ids) if pid in self._products}

    def update_product(self, product_id: int, fields: dict) -> dict | None:
        with self._lock:
            rec = self._products.get(product_id)
            if rec is None:
                return None
            for key, value in fields.items():
                rec[key] = money(value) if key == "price" else value
            rec["updated_at"] = utcnow()
            return dict(rec)

    def delete_product(self, product_id: int) -> bool:
        with self._lock:
            if self._products.pop(product_id, None) is None:
                return False
            self._inventory.pop(product_id, None)
            for rid in [r for r, res in self._reservations.items() if res["product_id"] == product_id]:
                del self._reservations[rid]
            for key in [k for k in self._wishlist if k[1] == product_id]:
                del self._wishlist[key]
            for rid in [r for r, rev in self._reviews.items() if rev["product_id"] == product_id]:
                del self._reviews[rid]
            return True

    def list_products(self, filters: dict, sort: str, limit: int, offset: int) -> tuple[list[dict], int]:
        with self._lock:
            rows = [p for p in self._products.values() if self._matches(p, filters)]
            if sort == "price_asc":
                rows.sort(key=lambda p: (p["price"], p["product_id"]))
            elif sort == "price_desc":
                rows.sort(key=lambda p: (-p["price"], p["product_id"]))
            elif sort == "oldest":
                rows.sort(key=lambda p: (p["created_at"], p["product_id"]))
            else:
                rows.sort(key=lambda p: (p["created_at"], p["product_id"]), reverse=True)
            return [dict(p) for p in rows[offset:offset + limit]], len(rows)

    @staticmethod
    def _matches(p: dict, filters: dict) -> bool:
        if filters.get("category") and p["category"] != filters["category"]:
            return False
        for flag in ("is_featured", "is_new"):
            if filters.get(flag) is not None and p[flag] != filters[flag]:
                return False
        if filters.get("min_price") is not None and p["price"] < money(filters["min_price"]):
            return False
        if filters.get("max_price") is not None and p["price"] > money(filters["max_price"]):
            return False
        haystack = f"{p['name']} {p['description']} {p['category']}".lower()
        return all(tok.lower() in haystack for tok in filters.get("search_tokens") or [])

    # ---------- Inventory ----------

    def _reserved(self, product_id: int, now: datetime, exclude: set | None = None) -> int:
        return sum(
            r["quantity"]
            for r in self._reservations.values()
            if r["product_id"] == product_id
            and r["status"] == RESERVATION_ACTIVE
            and r["expires_at"] > now
            and (not exclude or r["reservation_id"] not in exclude)
        )

    def _inventory_view(self, rec: dict, now: datetime) -> dict:
        view = dict(rec)
        view["reserved"] = self._reserved(rec["product_id"], now)
        view["available"] = max(0, view["quantity"] - view["reserved"])
        return view

    def _require_inventory(self, product_id: int) -> dict:
        rec = self._inventory.get(product_id)
        if rec is None:
            raise NotFoundError(f"No inventory record for product {product_id}")
        return rec

    def get_inventory(self, product_id: int, now: datetime) -> dict | None:
        with self._lock:
            rec = self._inventory.get(product_id)
            return self._inventory_view(rec, now) if rec else None

    def list_inventory(self, offset: int, limit: int, now: datetime) -> list[dict]:
        with self._lock:
            rows = sorted(self._inventory.values(), key=lambda r: (r["updated_at"], r["product_id"]), reverse=True)
            return [self._inventory_view(r, now) for r in rows[offset:offset + limit]]

    def count_inventory(self) -> int:
        with self._lock:
            return len(self._inventory)

    def create_inventory(self, product_id: int, quantity: int, low_stock_threshold: int,
                         restock_level: int, now: datetime) -> dict:
        with self._lock:
            if product_id in self._inventory:
                raise ConflictError(f"Inventory already initialized for product {product_id}")
            rec = {
                "product_id": product_id,
                "quantity": quantity,
                "low_stock_threshold": low_stock_threshold,
                "restock_level": restock_level,
                "status": STOCK_IN,
                "last_restocked": now,
                "updated_at": now,
            }
            self._inventory[product_id] = rec
            return self._inventory_view(rec, now)

    def _upsert(self, product_id: int, now: datetime) -> dict:
        rec = self._inventory.get(product_id)
        if rec is None:
            rec = {
                "product_id": product_id,
                "quantity": 0,
                "low_stock_threshold": 5,
                "restock_level": 20,
                "status": STOCK_IN,
                "last_restocked": now,
                "updated_at": now,
            }
            self._inventory[product_id] = rec
        return rec

    def set_inventory_quantity(self, product_id: int, quantity: int, now: datetime) -> dict:
        with self._lock:
            reserved = self._reserved(product_id, now)
            if quantity < reserved:
                raise ConflictError(
                    f"Cannot set quantity below reserved stock ({reserved})",
                    product_id=product_id, reserved=reserved,
                )
            rec = self._upsert(product_id, now)
            rec["quantity"] = quantity
            rec["restock_level"] = max(rec["restock_level"], quantity)
            rec["updated_at"] = now
            return self._inventory_view(rec, now)

    def add_stock(self, product_id: int, quantity: int, now: datetime) -> dict:
        with self._lock:
            rec = self._upsert(product_id, now)
            rec["quantity"] += quantity
            rec["last_restocked"] = now
            rec["updated_at"] = now
            return self._inventory_view(rec, now)

    def update_inventory_status(self, product_id: int, status: str, now: datetime) -> dict | None:
        with self._lock:
            rec = self._inventory.get(product_id)
            if rec is None:
                return None
            rec["status"] = status
            rec["updated_at"] = now
            return self._inventory_view(rec, now)

    def low_stock(self, limit: int, now: datetime) -> list[dict]:
        with self._lock:
            rows = [
                r for r in self._inventory.values()
                if r["quantity"] < r["low_stock_threshold"] and r["status"] != STOCK_DISCONTINUED
            ]
            rows.sort(key=lambda r: (r["quantity"], r["product_id"]))
            return [self._inventory_view(r, now) for r in rows[:limit]]

    def inventory_summary(self, now: datetime) -> dict:
        with self._lock:
            rows = list(self._inventory.values())
            return {
                "total_products": len(rows),
                "total_quantity": sum(r["quantity"] for r in rows),
                "total_reserved": sum(self._reserved(r["product_id"], now) for r in rows),
                "low_stock_count": sum(1 for r in rows if r["quantity"] < r["low_stock_threshold"]),
                "out_of_stock_count": sum(1 for r in rows if r["quantity"] == 0),
            }

    # ---------- Reservations ----------

    def reserve(self, lines, expires_at: datetime, reference: str | None, now: datetime) -> list[dict]:
        with self._lock:
            merged = merge_lines(lines)
            for product_id, quantity in merged:
                rec = self._require_inventory(product_id)
                available = rec["quantity"] - self._reserved(product_id, now)
                if available < quantity:
                    raise InsufficientStockError(product_id, quantity, max(0, available))
            created = []
            for product_id, quantity in merged:
                res = {
                    "reservation_id": uuid.uuid4().hex,
                    "product_id": product_id,
                    "quantity": quantity,
                    "reference": reference,
                    "status": RESERVATION_ACTIVE,
                    "expires_at": expires_at,
                    "created_at": now,
                    "updated_at": now,
                }
                self._reservations[res["reservation_id"]] = res
                self._inventory[product_id]["updated_at"] = now
                created.append(dict(res))
            return created

    def get_reservation(self, reservation_id: str) -> dict | None:
        with self._lock:
            res = self._reservations.get(reservation_id)
            return dict(res) if res else None

    def release_reservations(self, now: datetime, reservation_ids=None, reference: str | None = None) -> list[dict]:
        with self._lock:
            released = []
            for res in self._reservations.values():
                if reservation_ids is not None and res["reservation_id"] not in reservation_ids:
                    continue
                if reference is not None and res["reference"] != reference:
                    continue
                if res["status"] != RESERVATION_ACTIVE:
                    continue
                # an already-expired hold no longer counts; record it as expired, not released
                res["status"] = RESERVATION_RELEASED if res["expires_at"] > now else RESERVATION_EXPIRED
                res["updated_at"] = now
                released.append(dict(res))
            return released

    def commit_reservations(self, reference: str, now: datetime) -> list[dict]:
        with self._lock:
            holds = [r for r in self._reservations.values() if r["reference"] == reference]
            pending = [r for r in holds if r["status"] != RESERVATION_COMMITTED]
            for res in pending:
                if res["status"] == RESERVATION_RELEASED:
                    raise ConflictError(f"Reservation {res['reservation_id']} was released", product_id=res["product_id"])
            # lapsed holds must be re-acquired from free stock; validate before touching quantities
            lapsed: dict[int, int] = {}
            for res in pending:
                self._require_inventory(res["product_id"])
                if res["status"] == RESERVATION_ACTIVE and res["expires_at"] > now:
                    continue
                lapsed[res["product_id"]] = lapsed.get(res["product_id"], 0) + res["quantity"]
            for product_id, needed in sorted(lapsed.items()):
                available = self._inventory[product_id]["quantity"] - self._reserved(product_id, now)
                if available < needed:
                    raise InsufficientStockError(product_id, needed, max(0, available))
            touched = {}
            for res in pending:
                rec = self._inventory[res["product_id"]]
                rec["quantity"] -= res["quantity"]
                rec["updated_at"] = now
                res["status"] = RESERVATION_COMMITTED
                res["updated_at"] = now
                touched[rec["product_id"]] = rec
            return [self._inventory_view(r, now) for r in touched.values()]

    def deduct(self, lines, now: datetime) -> list[dict]:
        with self._lock:
            merged = merge_lines(lines)
            for product_id, quantity in merged:
                rec = self._require_inventory(product_id)
                available = rec["quantity"] - self._reserved(product_id, now)
                if available < quantity:
                    raise InsufficientStockError(product_id, quantity, max(0, available))
            out = []
            for product_id, quantity in merged:
                rec = self._inventory[product_id]
                rec["quantity"] -= quantity
                rec["updated_at"] = now
                out.append(self._inventory_view(rec, now))
            return out

    def expire_reservations(self, now: datetime) -> int:
        with self._lock:
            count = 0
            for res in self._reservations.values():
                if res["status"] == RESERVATION_ACTIVE and res["expires_at"] <= now:
                    res["status"] = RESERVATION_EXPIRED
                    res["updated_at"] = now
                    count += 1
            return count

    # ---------- Alerts ----------

    def create_alert(self, product_id: int, alert_type: str, message: str, now: datetime) -> dict:
        with self._lock:
            alert_id = self._next_id("alert")
            rec = {
                "alert_id": alert_id,
                "product_id": product_id,
                "alert_type": alert_type,
                "message": message,
                "acknowledged": False,
                "created_at": now,
            }
            self._alerts[alert_id] = rec
            return dict(rec)

    def has_recent_alert(self, product_id: int, alert_type: str, since: datetime) -> bool:
        with self._lock:
            return any(
                a["product_id"] == product_id and a["alert_type"] == alert_type and a["created_at"] >= since
                for a in self._alerts.values()
            )

    def list_alerts(self, alert_type: str | None, limit: int) -> list[dict]:
        with self._lock:
            rows = [
                a for a in self._alerts.values()
                if not a["acknowledged"] and (alert_type is None or a["alert_type"] == alert_type)
            ]
            rows.sort(key=lambda a: (a["created_at"], a["alert_id"]), reverse=True)
            return [dict(a) for a in rows[:limit]]

    def acknowledge_alert(self, alert_id: int) -> bool:
        with self._lock:
            rec = self._alerts.get(alert_id)
            if rec is None:
                return False
            rec["acknowledged"] = True
            return True

    # ---------- Users ----------

    def create_user(self, data: dict) -> dict:
        with self._lock:
            email = data["email"].lower()
            if any(u["email"] == email for u in self._users.values()):
                raise ConflictError("User with this email already exists")
            user_id = self._next_id("user")
            rec = {
                "user_id": user_id,
                "first_name": data["first_name"],
                "last_name": data["last_name"],
                "email": email,
                "password_hash": data["password_hash"],
                "phone": data.get("phone"),
                "role": data.get("role", "customer"),
                "created_at": utcnow(),
            }
            self._users[user_id] = rec
            return dict(rec)

    def get_user(self, user_id: int) -> dict | None:
        with self._lock:
            rec = self._users.get(user_id)
            return dict(rec) if rec else None

    def get_user_by_email(self, email: str) -> dict | None:
        with self._lock:
            email = email.lower()
            for rec in self._users.values():
                if rec["email"] == email:
                    return dict(rec)
            return None

    # ---------- Orders ----------

    def create_order(self, order: dict, items: list[dict]) -> dict:
        with self._lock:
            key = (order.get("idempotency_scope"), order.get("idempotency_key"))
            if any(o["order_number"] == order["order_number"] for o in self._orders.values()):
                raise ConflictError("Order already exists")
            if key[1] and any((o.get("idempotency_scope"), o.get("idempotency_key")) == key for o in self._orders.values()):
                raise ConflictError("Order already exists")
            order_id = self._next_id("order")
            now = utcnow()
            rec = {f: None for f in ORDER_FIELDS}
            rec.update(copy.deepcopy(order))
            rec.update({"order_id": order_id, "created_at": now, "updated_at": now})
            rec["items"] = [
                dict(item, order_item_id=self._next_id("order_item"), order_id=order_id) for item in items
            ]
            self._orders[order_id] = rec
            return copy.deepcopy(rec)

    def count_orders(self) -> int:
        with self._lock:
            return len(self._orders)

    def get_order(self, order_id: int) -> dict | None:
        with self._lock:
            rec = self._orders.get(order_id)
            return copy.deepcopy(rec) if rec else None

    def get_order_by_idempotency_key(self, key: str, scope: str) -> dict | None:
        with self._lock:
            for rec in self._orders.values():
                if rec.get("idempotency_key") == key and rec.get("idempotency_scope") == scope:
                    return copy.deepcopy(rec)
            return None

    def list_orders(self, user_id: int | None = None) -> list[dict]:
        with self._lock:
            rows = [o for o in self._orders.values() if user_id is None or o.get("user_id") == user_id]
            rows.sort(key=lambda o: (o["created_at"], o["order_id"]), reverse=True)
            return [copy.deepcopy(o) for o in rows]

    def update_order(self, order_id: int, fields: dict, expected_statuses=None) -> dict | None:
        with self._lock:
            rec = self._orders.get(order_id)
            if rec is None:
                return None
            if expected_statuses is not None and rec["status"] not in expected_statuses:
                return None
            rec.update(copy.deepcopy(fields))
            rec["updated_at"] = utcnow()
            return copy.deepcopy(rec)

    # ---------- Admin action log ----------

    def log_admin_action(self, entry: dict) -> dict:
        with self._lock:
            rec = dict(entry, log_id=self._next_id("admin_log"), created_at=utcnow())
            self._admin_log.append(rec)
            return dict(rec)

    def list_admin_actions(self, order_id: int) -> list[dict]:
        with self._lock:
            return [dict(e) for e in self._admin_log if e.get("order_id") == order_id]

    # ---------- Reviews ----------

    def create_review(self, data: dict) -> dict:
        with self._lock:
            if any(
                r["product_id"] == data["product_id"] and r["user_id"] == data["user_id"]
                for r in self._reviews.values()
            ):
                raise ConflictError("You have already reviewed this product")
            review_id = self._next_id("review")
            rec = dict(data, review_id=review_id, created_at=utcnow())
            self._reviews[review_id] = rec
            return dict(rec)

    def list_reviews(self, product_id: int) -> list[dict]:
        with self._lock:
            rows = [dict(r) for r in self._reviews.values() if r["product_id"] == product_id]
            rows.sort(key=lambda r: (r["created_at"], r["review_id"]), reverse=True)
            return rows

    # ---------- Wishlist ----------

    def add_wishlist_item(self, user_id: int, product_id: int, now: datetime) -> bool:
        with self._lock:
            key = (user_id, product_id)
            if key in self._wishlist:
                return False
            self._wishlist[key] = {"user_id": user_id, "product_id": product_id, "added_at": now}
            return True

    def remove_wishlist_item(self, user_id: int, product_id: int) -> bool:
        with self._lock:
            return self._wishlist.pop((user_id, product_id), None) is not None

    def list_wishlist(self, user_id: int) -> list[dict]:
        with self._lock:
            rows = [dict(w) for w in self._wishlist.values() if w["user_id"] == user_id]
            rows.sort(key=lambda w: w["added_at"], reverse=True)
            return rows
