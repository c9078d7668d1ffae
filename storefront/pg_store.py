import logging
import uuid
from datetime import datetime

from psycopg import errors as pg_errors
from psycopg.types.json import Jsonb

from .db import get_connection, init_pool, run_with_reconnect
from .errors import ConflictError, InsufficientStockError, NotFoundError
from .store import (
    RESERVATION_ACTIVE,
    RESERVATION_COMMITTED,
    RESERVATION_EXPIRED,
    RESERVATION_RELEASED,
    ORDER_FIELDS,
    STOCK_DISCONTINUED,
    merge_lines,
    utcnow,
)

log = logging.getLogger("storefront.store")

PRODUCT_COLS = "product_id, name, price, description, image, category, is_new, is_featured, created_at, updated_at"
INVENTORY_COLS = "product_id, quantity, low_stock_threshold, restock_level, status, last_restocked, updated_at"
RESERVATION_COLS = "reservation_id, product_id, quantity, reference, status, expires_at, created_at, updated_at"
JSON_FIELDS = {"customer_info", "shipping_address", "billing_address", "details"}
PRODUCT_FIELDS = ("name", "price", "description", "image", "category", "is_new", "is_featured")

# available stock computed against active, unexpired holds only
_INVENTORY_SELECT = f"""
    SELECT {', '.join('i.' + c.strip() for c in INVENTORY_COLS.split(','))},
           COALESCE((
               SELECT SUM(r.quantity) FROM stock_reservations r
               WHERE r.product_id = i.product_id AND r.status = 'active' AND r.expires_at > %s
           ), 0) AS reserved
    FROM inventory i
"""


def _rows(cur) -> list[dict]:
    cols = [d[0] for d in cur.description]
    return [dict(zip(cols, r)) for r in cur.fetchall()]


def _one(cur) -> dict | None:
    row = cur.fetchone()
    if not row:
        return None
    cols = [d[0] for d in cur.description]
    return dict(zip(cols, row))


def _adapt(key: str, value):
    if key in JSON_FIELDS and value is not None:
        return Jsonb(value)
    return value


def _with_available(rec: dict) -> dict:
    rec["reserved"] = int(rec.get("reserved") or 0)
    rec["available"] = max(0, rec["quantity"] - rec["reserved"])
    return rec


class PostgresStore:
    """Raw-SQL store over the shared psycopg pool."""

    name = "postgres"

    def __init__(self, database_url: str) -> None:
        init_pool(database_url)

    def _run(self, fn):
        """Run ``fn(cur)`` in one transaction.

        A dropped connection is retried only while the transaction is still
        open. Once COMMIT is sent the outcome is unknown and the error
        propagates instead of risking a second write.
        """
        committing = False

        def _work():
            nonlocal committing
            with get_connection() as conn:
                try:
                    with conn.cursor() as cur:
                        result = fn(cur)
                    committing = True
                    conn.commit()
                    return result
                except Exception:
                    if not committing:
                        conn.rollback()
                    raise

        return run_with_reconnect(_work, can_retry=lambda e: not committing)

    def ping(self) -> bool:
        def _q(cur):
            cur.execute("SELECT 1")
            return cur.fetchone()[0] == 1

        return self._run(_q)

    # ---------- Products ----------

    def create_product(self, data: dict) -> dict:
        def _q(cur):
            cur.execute(
                f"""
                INSERT INTO products (name, price, description, image, category, is_new, is_featured)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING {PRODUCT_COLS}
                """,
                (
                    data["name"], data["price"], data["description"], data["image"], data["category"],
                    bool(data.get("is_new", False)), bool(data.get("is_featured", False)),
                ),
            )
            return _one(cur)

        return self._run(_q)

    def get_product(self, product_id: int) -> dict | None:
        def _q(cur):
            cur.execute(f"SELECT {PRODUCT_COLS} FROM products WHERE product_id = %s", (product_id,))
            return _one(cur)

        return self._run(_q)

    def get_products(self, product_ids) -> dict[int, dict]:
        ids = sorted({int(p) for p in product_ids})
        if not ids:
            return {}

        def _q(cur):
            cur.execute(f"SELECT {PRODUCT_COLS} FROM products WHERE product_id = ANY(%s)", (ids,))
            return {r["product_id"]: r for r in _rows(cur)}

        return self._run(_q)

    def update_product(self, product_id: int, fields: dict) -> dict | None:
        cols = [k for k in PRODUCT_FIELDS if k in fields]
        if not cols:
            return self.get_product(product_id)

        def _q(cur):
            assignments = ", ".join(f"{c} = %s" for c in cols)
            cur.execute(
                f"UPDATE products SET {assignments}, updated_at = now() WHERE product_id = %s RETURNING {PRODUCT_COLS}",
                tuple(fields[c] for c in cols) + (product_id,),
            )
            return _one(cur)

        return self._run(_q)

    def delete_product(self, product_id: int) -> bool:
        def _q(cur):
            cur.execute("DELETE FROM products WHERE product_id = %s RETURNING product_id", (product_id,))
            return cur.fetchone() is not None

        return self._run(_q)

    def list_products(self, filters: dict, sort: str, limit: int, offset: int) -> tuple[list[dict], int]:
        where = ["TRUE"]
        params: list = []
        if filters.get("category"):
            where.append("category = %s")
            params.append(filters["category"])
        for flag in ("is_featured", "is_new"):
            if filters.get(flag) is not None:
                where.append(f"{flag} = %s")
                params.append(bool(filters[flag]))
        if filters.get("min_price") is not None:
            where.append("price >= %s")
            params.append(filters["min_price"])
        if filters.get("max_price") is not None:
            where.append("price <= %s")
            params.append(filters["max_price"])
        for tok in filters.get("search_tokens") or []:
            where.append("(name ILIKE %s OR description ILIKE %s OR category ILIKE %s)")
            like = f"%{tok}%"
            params.extend([like, like, like])
        order_by = {
            "price_asc": "price ASC, product_id ASC",
            "price_desc": "price DESC, product_id ASC",
            "oldest": "created_at ASC, product_id ASC",
        }.get(sort, "created_at DESC, product_id DESC")
        where_sql = " AND ".join(where)

        def _q(cur):
            cur.execute(f"SELECT COUNT(*) FROM products WHERE {where_sql}", tuple(params))
            total = int(cur.fetchone()[0])
            cur.execute(
                f"SELECT {PRODUCT_COLS} FROM products WHERE {where_sql} ORDER BY {order_by} LIMIT %s OFFSET %s",
                tuple(params) + (limit, offset),
            )
            return _rows(cur), total

        return self._run(_q)

    # ---------- Inventory ----------

    @staticmethod
    def _fetch_inventory(cur, product_id: int, now: datetime) -> dict | None:
        cur.execute(_INVENTORY_SELECT + " WHERE i.product_id = %s", (now, product_id))
        rec = _one(cur)
        return _with_available(rec) if rec else None

    @staticmethod
    def _lock_inventory(cur, product_id: int, now: datetime) -> dict:
        cur.execute(f"SELECT {INVENTORY_COLS} FROM inventory WHERE product_id = %s FOR UPDATE", (product_id,))
        rec = _one(cur)
        if rec is None:
            raise NotFoundError(f"No inventory record for product {product_id}")
        cur.execute(
            "SELECT COALESCE(SUM(quantity), 0) FROM stock_reservations "
            "WHERE product_id = %s AND status = 'active' AND expires_at > %s",
            (product_id, now),
        )
        rec["reserved"] = int(cur.fetchone()[0])
        return rec

    def get_inventory(self, product_id: int, now: datetime) -> dict | None:
        return self._run(lambda cur: self._fetch_inventory(cur, product_id, now))

    def list_inventory(self, offset: int, limit: int, now: datetime) -> list[dict]:
        def _q(cur):
            cur.execute(
                _INVENTORY_SELECT + " ORDER BY i.updated_at DESC, i.product_id DESC LIMIT %s OFFSET %s",
                (now, limit, offset),
            )
            return [_with_available(r) for r in _rows(cur)]

        return self._run(_q)

    def count_inventory(self) -> int:
        def _q(cur):
            cur.execute("SELECT COUNT(*) FROM inventory")
            return int(cur.fetchone()[0])

        return self._run(_q)

    def create_inventory(self, product_id: int, quantity: int, low_stock_threshold: int,
                         restock_level: int, now: datetime) -> dict:
        def _q(cur):
            cur.execute(
                """
                INSERT INTO inventory (product_id, quantity, low_stock_threshold, restock_level, last_restocked, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (product_id) DO NOTHING
                RETURNING product_id
                """,
                (product_id, quantity, low_stock_threshold, restock_level, now, now),
            )
            if cur.fetchone() is None:
                raise ConflictError(f"Inventory already initialized for product {product_id}")
            return self._fetch_inventory(cur, product_id, now)

        try:
            return self._run(_q)
        except pg_errors.ForeignKeyViolation:
            raise NotFoundError(f"Product {product_id} not found")

    def _upsert_locked(self, cur, product_id: int, now: datetime) -> dict:
        cur.execute(
            """
            INSERT INTO inventory (product_id, quantity, last_restocked, updated_at)
            VALUES (%s, 0, %s, %s)
            ON CONFLICT (product_id) DO NOTHING
            """,
            (product_id, now, now),
        )
        return self._lock_inventory(cur, product_id, now)

    def set_inventory_quantity(self, product_id: int, quantity: int, now: datetime) -> dict:
        def _q(cur):
            rec = self._upsert_locked(cur, product_id, now)
            if quantity < rec["reserved"]:
                raise ConflictError(
                    f"Cannot set quantity below reserved stock ({rec['reserved']})",
                    product_id=product_id, reserved=rec["reserved"],
                )
            cur.execute(
                """
                UPDATE inventory SET quantity = %s, restock_level = GREATEST(restock_level, %s), updated_at = %s
                WHERE product_id = %s
                """,
                (quantity, quantity, now, product_id),
            )
            return self._fetch_inventory(cur, product_id, now)

        try:
            return self._run(_q)
        except pg_errors.ForeignKeyViolation:
            raise NotFoundError(f"Product {product_id} not found")

    def add_stock(self, product_id: int, quantity: int, now: datetime) -> dict:
        def _q(cur):
            self._upsert_locked(cur, product_id, now)
            cur.execute(
                "UPDATE inventory SET quantity = quantity + %s, last_restocked = %s, updated_at = %s WHERE product_id = %s",
                (quantity, now, now, product_id),
            )
            return self._fetch_inventory(cur, product_id, now)

        try:
            return self._run(_q)
        except pg_errors.ForeignKeyViolation:
            raise NotFoundError(f"Product {product_id} not found")

    def update_inventory_status(self, product_id: int, status: str, now: datetime) -> dict | None:
        def _q(cur):
            cur.execute(
                "UPDATE inventory SET status = %s, updated_at = %s WHERE product_id = %s RETURNING product_id",
                (status, now, product_id),
            )
            if cur.fetchone() is None:
                return None
            return self._fetch_inventory(cur, product_id, now)

        return self._run(_q)

    def low_stock(self, limit: int, now: datetime) -> list[dict]:
        def _q(cur):
            cur.execute(
                _INVENTORY_SELECT
                + " WHERE i.quantity < i.low_stock_threshold AND i.status <> %s"
                " ORDER BY i.quantity ASC, i.product_id ASC LIMIT %s",
                (now, STOCK_DISCONTINUED, limit),
            )
            return [_with_available(r) for r in _rows(cur)]

        return self._run(_q)

    def inventory_summary(self, now: datetime) -> dict:
        def _q(cur):
            cur.execute(
                """
                SELECT COUNT(*),
                       COALESCE(SUM(quantity), 0),
                       COUNT(*) FILTER (WHERE quantity < low_stock_threshold),
                       COUNT(*) FILTER (WHERE quantity = 0)
                FROM inventory
                """
            )
            total_products, total_quantity, low_count, out_count = cur.fetchone()
            cur.execute(
                """
                SELECT COALESCE(SUM(r.quantity), 0) FROM stock_reservations r
                JOIN inventory i ON i.product_id = r.product_id
                WHERE r.status = 'active' AND r.expires_at > %s
                """,
                (now,),
            )
            total_reserved = cur.fetchone()[0]
            return {
                "total_products": int(total_products),
                "total_quantity": int(total_quantity),
                "total_reserved": int(total_reserved),
                "low_stock_count": int(low_count),
                "out_of_stock_count": int(out_count),
            }

        return self._run(_q)

    # ---------- Reservations ----------

    def reserve(self, lines, expires_at: datetime, reference: str | None, now: datetime) -> list[dict]:
        merged = merge_lines(lines)

        def _q(cur):
            # lock in product-id order so concurrent multi-line reservations can't deadlock
            for product_id, quantity in merged:
                rec = self._lock_inventory(cur, product_id, now)
                available = rec["quantity"] - rec["reserved"]
                if available < quantity:
                    raise InsufficientStockError(product_id, quantity, max(0, available))
            created = []
            for product_id, quantity in merged:
                cur.execute(
                    f"""
                    INSERT INTO stock_reservations (reservation_id, product_id, quantity, reference, status, expires_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {RESERVATION_COLS}
                    """,
                    (uuid.uuid4().hex, product_id, quantity, reference, RESERVATION_ACTIVE, expires_at, now, now),
                )
                created.append(_one(cur))
                cur.execute("UPDATE inventory SET updated_at = %s WHERE product_id = %s", (now, product_id))
            return created

        return self._run(_q)

    def get_reservation(self, reservation_id: str) -> dict | None:
        def _q(cur):
            cur.execute(f"SELECT {RESERVATION_COLS} FROM stock_reservations WHERE reservation_id = %s", (reservation_id,))
            return _one(cur)

        return self._run(_q)

    def release_reservations(self, now: datetime, reservation_ids=None, reference: str | None = None) -> list[dict]:
        where = ["status = %s"]
        params: list = [RESERVATION_ACTIVE]
        if reservation_ids is not None:
            where.append("reservation_id = ANY(%s)")
            params.append(list(reservation_ids))
        if reference is not None:
            where.append("reference = %s")
            params.append(reference)

        def _q(cur):
            cur.execute(
                f"""
                UPDATE stock_reservations
                SET status = CASE WHEN expires_at > %s THEN %s ELSE %s END, updated_at = %s
                WHERE {' AND '.join(where)}
                RETURNING {RESERVATION_COLS}
                """,
                (now, RESERVATION_RELEASED, RESERVATION_EXPIRED, now, *params),
            )
            return _rows(cur)

        return self._run(_q)

    def commit_reservations(self, reference: str, now: datetime) -> list[dict]:
        def _q(cur):
            cur.execute(
                f"SELECT {RESERVATION_COLS} FROM stock_reservations WHERE reference = %s AND status <> %s "
                "ORDER BY product_id FOR UPDATE",
                (reference, RESERVATION_COMMITTED),
            )
            pending = _rows(cur)
            for res in pending:
                if res["status"] == RESERVATION_RELEASED:
                    raise ConflictError(f"Reservation {res['reservation_id']} was released", product_id=res["product_id"])
            locked: dict[int, dict] = {}
            lapsed: dict[int, int] = {}
            for res in pending:
                if res["product_id"] not in locked:
                    locked[res["product_id"]] = self._lock_inventory(cur, res["product_id"], now)
                if res["status"] == RESERVATION_ACTIVE and res["expires_at"] > now:
                    continue
                lapsed[res["product_id"]] = lapsed.get(res["product_id"], 0) + res["quantity"]
            for product_id, needed in sorted(lapsed.items()):
                available = locked[product_id]["quantity"] - locked[product_id]["reserved"]
                if available < needed:
                    raise InsufficientStockError(product_id, needed, max(0, available))
            touched = []
            for res in pending:
                cur.execute(
                    "UPDATE inventory SET quantity = quantity - %s, updated_at = %s WHERE product_id = %s",
                    (res["quantity"], now, res["product_id"]),
                )
                cur.execute(
                    "UPDATE stock_reservations SET status = %s, updated_at = %s WHERE reservation_id = %s",
                    (RESERVATION_COMMITTED, now, res["reservation_id"]),
                )
                if res["product_id"] not in touched:
                    touched.append(res["product_id"])
            return [self._fetch_inventory(cur, pid, now) for pid in touched]

        return self._run(_q)

    def deduct(self, lines, now: datetime) -> list[dict]:
        merged = merge_lines(lines)

        def _q(cur):
            for product_id, quantity in merged:
                rec = self._lock_inventory(cur, product_id, now)
                available = rec["quantity"] - rec["reserved"]
                if available < quantity:
                    raise InsufficientStockError(product_id, quantity, max(0, available))
            out = []
            for product_id, quantity in merged:
                cur.execute(
                    "UPDATE inventory SET quantity = quantity - %s, updated_at = %s WHERE product_id = %s",
                    (quantity, now, product_id),
                )
                out.append(self._fetch_inventory(cur, product_id, now))
            return out

        return self._run(_q)

    def expire_reservations(self, now: datetime) -> int:
        def _q(cur):
            cur.execute(
                "UPDATE stock_reservations SET status = %s, updated_at = %s WHERE status = %s AND expires_at <= %s",
                (RESERVATION_EXPIRED, now, RESERVATION_ACTIVE, now),
            )
            return cur.rowcount or 0

        return self._run(_q)

    # ---------- Alerts ----------

    def create_alert(self, product_id: int, alert_type: str, message: str, now: datetime) -> dict:
        def _q(cur):
            cur.execute(
                """
                INSERT INTO stock_alerts (product_id, alert_type, message, created_at)
                VALUES (%s, %s, %s, %s)
                RETURNING alert_id, product_id, alert_type, message, acknowledged, created_at
                """,
                (product_id, alert_type, message, now),
            )
            return _one(cur)

        return self._run(_q)

    def has_recent_alert(self, product_id: int, alert_type: str, since: datetime) -> bool:
        def _q(cur):
            cur.execute(
                "SELECT 1 FROM stock_alerts WHERE product_id = %s AND alert_type = %s AND created_at >= %s LIMIT 1",
                (product_id, alert_type, since),
            )
            return cur.fetchone() is not None

        return self._run(_q)

    def list_alerts(self, alert_type: str | None, limit: int) -> list[dict]:
        def _q(cur):
            cur.execute(
                """
                SELECT alert_id, product_id, alert_type, message, acknowledged, created_at
                FROM stock_alerts
                WHERE acknowledged = FALSE AND (%s::text IS NULL OR alert_type = %s)
                ORDER BY created_at DESC, alert_id DESC
                LIMIT %s
                """,
                (alert_type, alert_type, limit),
            )
            return _rows(cur)

        return self._run(_q)

    def acknowledge_alert(self, alert_id: int) -> bool:
        def _q(cur):
            cur.execute("UPDATE stock_alerts SET acknowledged = TRUE WHERE alert_id = %s RETURNING alert_id", (alert_id,))
            return cur.fetchone() is not None

        return self._run(_q)

    # ---------- Users ----------

    _USER_COLS = "user_id, first_name, last_name, email, password_hash, phone, role, created_at"

    def create_user(self, data: dict) -> dict:
        def _q(cur):
            cur.execute(
                f"""
                INSERT INTO users (first_name, last_name, email, password_hash, phone, role)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING {self._USER_COLS}
                """,
                (
                    data["first_name"], data["last_name"], data["email"].lower(), data["password_hash"],
                    data.get("phone"), data.get("role", "customer"),
                ),
            )
            return _one(cur)

        try:
            return self._run(_q)
        except pg_errors.UniqueViolation:
            raise ConflictError("User with this email already exists")

    def get_user(self, user_id: int) -> dict | None:
        def _q(cur):
            cur.execute(f"SELECT {self._USER_COLS} FROM users WHERE user_id = %s", (user_id,))
            return _one(cur)

        return self._run(_q)

    def get_user_by_email(self, email: str) -> dict | None:
        def _q(cur):
            cur.execute(f"SELECT {self._USER_COLS} FROM users WHERE email = %s", (email.lower(),))
            return _one(cur)

        return self._run(_q)

    # ---------- Orders ----------

    @staticmethod
    def _attach_items(cur, orders: list[dict]) -> list[dict]:
        if not orders:
            return orders
        ids = [o["order_id"] for o in orders]
        cur.execute(
            """
            SELECT order_item_id, order_id, product_id, name, price, quantity, image
            FROM order_items WHERE order_id = ANY(%s) ORDER BY order_item_id
            """,
            (ids,),
        )
        by_order: dict[int, list] = {}
        for item in _rows(cur):
            by_order.setdefault(item["order_id"], []).append(item)
        for o in orders:
            o["items"] = by_order.get(o["order_id"], [])
        return orders

    def create_order(self, order: dict, items: list[dict]) -> dict:
        cols = [c for c in ORDER_FIELDS if c in order]

        def _q(cur):
            cur.execute(
                f"INSERT INTO orders ({', '.join(cols)}) VALUES ({', '.join(['%s'] * len(cols))}) RETURNING order_id",
                tuple(_adapt(c, order[c]) for c in cols),
            )
            order_id = int(cur.fetchone()[0])
            for item in items:
                cur.execute(
                    "INSERT INTO order_items (order_id, product_id, name, price, quantity, image) VALUES (%s, %s, %s, %s, %s, %s)",
                    (order_id, item["product_id"], item["name"], item["price"], item["quantity"], item.get("image")),
                )
            cur.execute("SELECT * FROM orders WHERE order_id = %s", (order_id,))
            return self._attach_items(cur, [_one(cur)])[0]

        try:
            return self._run(_q)
        except pg_errors.UniqueViolation:
            raise ConflictError("Order already exists")

    def count_orders(self) -> int:
        def _q(cur):
            cur.execute("SELECT COUNT(*) FROM orders")
            return int(cur.fetchone()[0])

        return self._run(_q)

    def get_order(self, order_id: int) -> dict | None:
        def _q(cur):
            cur.execute("SELECT * FROM orders WHERE order_id = %s", (order_id,))
            rec = _one(cur)
            return self._attach_items(cur, [rec])[0] if rec else None

        return self._run(_q)

    def get_order_by_idempotency_key(self, key: str, scope: str) -> dict | None:
        def _q(cur):
            cur.execute("SELECT * FROM orders WHERE idempotency_scope = %s AND idempotency_key = %s", (scope, key))
            rec = _one(cur)
            return self._attach_items(cur, [rec])[0] if rec else None

        return self._run(_q)

    def list_orders(self, user_id: int | None = None) -> list[dict]:
        def _q(cur):
            cur.execute(
                "SELECT * FROM orders WHERE (%s::int IS NULL OR user_id = %s) ORDER BY created_at DESC, order_id DESC",
                (user_id, user_id),
            )
            return self._attach_items(cur, _rows(cur))

        return self._run(_q)

    def update_order(self, order_id: int, fields: dict, expected_statuses=None) -> dict | None:
        cols = [c for c in ORDER_FIELDS if c in fields]

        def _q(cur):
            assignments = ", ".join([f"{c} = %s" for c in cols] + ["updated_at = %s"])
            params = [_adapt(c, fields[c]) for c in cols] + [utcnow(), order_id]
            sql = f"UPDATE orders SET {assignments} WHERE order_id = %s"
            if expected_statuses is not None:
                sql += " AND status = ANY(%s)"
                params.append(list(expected_statuses))
            cur.execute(sql + " RETURNING order_id", tuple(params))
            if cur.fetchone() is None:
                return None
            cur.execute("SELECT * FROM orders WHERE order_id = %s", (order_id,))
            return self._attach_items(cur, [_one(cur)])[0]

        return self._run(_q)

    # ---------- Admin action log ----------

    def log_admin_action(self, entry: dict) -> dict:
        def _q(cur):
            cur.execute(
                """
                INSERT INTO admin_action_log (order_id, action, admin_email, details, ip_address)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING log_id, order_id, action, admin_email, details, ip_address, created_at
                """,
                (
                    entry.get("order_id"), entry["action"], entry.get("admin_email"),
                    _adapt("details", entry.get("details")), entry.get("ip_address"),
                ),
            )
            return _one(cur)

        return self._run(_q)

    def list_admin_actions(self, order_id: int) -> list[dict]:
        def _q(cur):
            cur.execute(
                "SELECT log_id, order_id, action, admin_email, details, ip_address, created_at "
                "FROM admin_action_log WHERE order_id = %s ORDER BY log_id",
                (order_id,),
            )
            return _rows(cur)

        return self._run(_q)

    # ---------- Reviews ----------

    def create_review(self, data: dict) -> dict:
        def _q(cur):
            cur.execute(
                """
                INSERT INTO reviews (product_id, user_id, user_name, rating, comment, verified_purchase)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING review_id, product_id, user_id, user_name, rating, comment, verified_purchase, created_at
                """,
                (
                    data["product_id"], data["user_id"], data["user_name"], data["rating"], data["comment"],
                    bool(data.get("verified_purchase", False)),
                ),
            )
            return _one(cur)

        try:
            return self._run(_q)
        except pg_errors.UniqueViolation:
            raise ConflictError("You have already reviewed this product")

    def list_reviews(self, product_id: int) -> list[dict]:
        def _q(cur):
            cur.execute(
                "SELECT review_id, product_id, user_id, user_name, rating, comment, verified_purchase, created_at "
                "FROM reviews WHERE product_id = %s ORDER BY created_at DESC, review_id DESC",
                (product_id,),
            )
            return _rows(cur)

        return self._run(_q)

    # ---------- Wishlist ----------

    def add_wishlist_item(self, user_id: int, product_id: int, now: datetime) -> bool:
        def _q(cur):
            cur.execute(
                "INSERT INTO wishlist_items (user_id, product_id, added_at) VALUES (%s, %s, %s) "
                "ON CONFLICT DO NOTHING RETURNING product_id",
                (user_id, product_id, now),
            )
            return cur.fetchone() is not None

        return self._run(_q)

    def remove_wishlist_item(self, user_id: int, product_id: int) -> bool:
        def _q(cur):
            cur.execute(
                "DELETE FROM wishlist_items WHERE user_id = %s AND product_id = %s RETURNING product_id",
                (user_id, product_id),
            )
            return cur.fetchone() is not None

        return self._run(_q)

    def list_wishlist(self, user_id: int) -> list[dict]:
        def _q(cur):
            cur.execute(
                "SELECT user_id, product_id, added_at FROM wishlist_items WHERE user_id = %s ORDER BY added_at DESC",
                (user_id,),
            )
            return _rows(cur)

        return self._run(_q)
