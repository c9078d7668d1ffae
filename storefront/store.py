"""Storage boundary for the storefront.

Two interchangeable backends implement the same operations over plain dicts:

- ``PostgresStore`` (``pg_store.py``): raw SQL over a psycopg pool, schema in
  ``db/schema.sql``. Stock-changing operations lock the inventory rows they
  touch (``SELECT ... FOR UPDATE``) so check-then-write is a single step.
- ``MemoryStore`` (``memory_store.py``): dicts behind one re-entrant lock. Used
  when no ``DATABASE_URL`` is configured (local development, tests).

Reserved stock is never a stored counter. It is the sum of reservations that
are ``active`` and whose ``expires_at`` is still in the future, so a hold stops
counting as soon as it expires even if the sweeper has not run yet.
"""
from datetime import datetime, date, timezone
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app

RESERVATION_ACTIVE = "active"
RESERVATION_RELEASED = "released"
RESERVATION_COMMITTED = "committed"
RESERVATION_EXPIRED = "expired"

STOCK_IN = "in-stock"
STOCK_LOW = "low-stock"
STOCK_OUT = "out-of-stock"
STOCK_DISCONTINUED = "discontinued"
INVENTORY_STATUSES = (STOCK_IN, STOCK_LOW, STOCK_OUT, STOCK_DISCONTINUED)

ALERT_TYPES = ("low-stock", "out-of-stock", "restocked", "high-demand")

ORDER_FIELDS = (
    "order_number", "user_id", "customer_info", "shipping_address", "billing_address",
    "payment_method", "payment_status", "status", "shipping_method", "coupon_code",
    "subtotal", "discount", "tax", "shipping_cost", "total", "stock_state", "approval_jti",
    "idempotency_key", "idempotency_scope", "tracking_number", "cancellation_reason", "notes", "estimated_delivery",
    "approved_at", "rejected_at", "cancelled_at", "delivered_at",
)

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def merge_lines(lines) -> list[tuple[int, int]]:
    """Collapse (product_id, quantity) pairs so each product is locked and checked once, in id order."""
    totals: dict[int, int] = {}
    for product_id, quantity in lines:
        totals[int(product_id)] = totals.get(int(product_id), 0) + int(quantity)
    return sorted(totals.items())


def jsonable(value):
    if isinstance(value, dict):
        return {k: jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [jsonable(v) for v in value]
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def make_store(config):
    if config.backend == "postgres":
        from .pg_store import PostgresStore

        return PostgresStore(config.DATABASE_URL)
    from .memory_store import MemoryStore

    return MemoryStore()


def current_store():
    return current_app.extensions["storefront.store"]
