"""Order lifecycle: placement, approval, cancellation and stock side effects.

Stock follows the order through ``stock_state``:

- ``reserved``: a hold under the order number (non-COD orders awaiting approval)
- ``committed``: stock deducted (COD at placement, others on approval)
- ``released``: the hold was dropped (rejected/cancelled before approval)
- ``restocked``: committed stock was returned after a cancellation
"""
import html
import logging
import secrets
import time
from datetime import timedelta

from flask import Response, current_app, jsonify, request

from .auth import (
    EMAIL_RE,
    current_user_id,
    is_admin,
    make_approval_token,
    optional_auth,
    requires_auth,
    verify_approval_token,
)
from .errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StorefrontError,
    ValidationError,
    require_int,
)
from .pricing import normalize_shipping_method
from .store import current_store, jsonable, money, utcnow

log = logging.getLogger("storefront.orders")

VALID_TRANSITIONS = {
    "pending": ("approved", "rejected", "cancelled"),
    "pending_admin_approval": ("approved", "rejected", "cancelled"),
    "receipt_submitted": ("approved", "rejected", "cancelled"),
    "approved": ("processing", "shipped", "cancelled"),
    "processing": ("shipped", "cancelled"),
    "shipped": ("delivered", "cancelled"),
    "delivered": (),
    "rejected": (),
    "cancelled": (),
}
ORDER_STATUSES = tuple(VALID_TRANSITIONS)
AWAITING_APPROVAL = ("pending", "pending_admin_approval", "receipt_submitted")
PAYMENT_METHODS = ("cod", "card", "bank_transfer", "payoneer", "meezan", "jazzcash", "easypaisa")
ADDRESS_FIELDS = ("full_name", "address", "city", "state", "postal_code", "country", "phone")
REQUIRED_ADDRESS_FIELDS = ("address", "city", "country")


def is_valid_transition(current: str, new: str) -> bool:
    return new in VALID_TRANSITIONS.get(current, ())


def _clean_address(raw, label: str, required: bool = True) -> dict | None:
    if raw is None and not required:
        return None
    if not isinstance(raw, dict):
        raise ValidationError(f"{label} is required")
    address = {}
    for key in ADDRESS_FIELDS:
        camel = key.split("_")[0] + "".join(p.title() for p in key.split("_")[1:])
        value = raw.get(key, raw.get(camel))
        if value not in (None, ""):
            address[key] = str(value).strip()[:200]
    missing = [k for k in REQUIRED_ADDRESS_FIELDS if not address.get(k)]
    if missing:
        raise ValidationError(f"{label} is missing: {', '.join(missing)}")
    return address


def _clean_customer_info(raw) -> dict:
    if not isinstance(raw, dict):
        raise ValidationError("Customer info (name, email, phone) is required for guest checkout")
    name = str(raw.get("name") or "").strip()
    email = str(raw.get("email") or "").strip().lower()
    phone = str(raw.get("phone") or "").strip()
    if not 2 <= len(name) <= 100:
        raise ValidationError("Customer name must be between 2 and 100 characters")
    if len(email) > 254 or not EMAIL_RE.match(email):
        raise ValidationError("Please provide a valid email")
    if not 7 <= len(phone) <= 20:
        raise ValidationError("Phone must be between 7 and 20 characters")
    return {"name": name, "email": email, "phone": phone}


def idempotency_scope(user_id: int | None, customer_info: dict | None) -> str:
    if user_id is not None:
        return f"user:{user_id}"
    return f"guest:{customer_info['email']}"


class OrderService:
    def __init__(self, store, inventory, cart, config, clock=utcnow):
        self.store = store
        self.inventory = inventory
        self.cart = cart
        self.config = config
        self.clock = clock

    # ---------- Placement ----------

    def parse_items(self, raw_items) -> list[tuple[int, int]]:
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("Order must contain items")
        lines = []
        for item in raw_items:
            if not isinstance(item, dict):
                raise ValidationError("Each order item must be an object")
            product_id = require_int(item.get("product_id", item.get("productId")), "productId", minimum=1)
            quantity = require_int(item.get("quantity"), "quantity", minimum=1, maximum=self.config.MAX_QTY_PER_LINE)
            lines.append((product_id, quantity))
        return lines

    def place_order(self, payload: dict, user_id: int | None = None, idempotency_key: str | None = None,
                    client_ip: str | None = None) -> tuple[dict, bool]:
        """Create an order. Returns (order, created); created is False on an idempotent replay.

        Idempotency keys belong to the caller: a signed-in user, or a guest
        identified by the customer email. Another caller reusing the key
        places its own order.
        """
        customer_info = None
        if user_id is None:
            customer_info = _clean_customer_info(payload.get("customer_info", payload.get("customerInfo")))
        scope = idempotency_scope(user_id, customer_info) if idempotency_key else None
        if idempotency_key:
            existing = self.store.get_order_by_idempotency_key(idempotency_key, scope)
            if existing:
                log.info("idempotent replay key=%s order_id=%s", idempotency_key, existing["order_id"])
                return existing, False

        lines = self.parse_items(payload.get("items"))
        shipping_address = _clean_address(payload.get("shipping_address", payload.get("shippingAddress")), "Shipping address")
        billing_address = _clean_address(
            payload.get("billing_address", payload.get("billingAddress")), "Billing address", required=False
        ) or shipping_address
        payment_method = str(payload.get("payment_method", payload.get("paymentMethod")) or "").lower()
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Payment method must be one of {', '.join(PAYMENT_METHODS)}")
        shipping_method = normalize_shipping_method(payload.get("shipping_method", payload.get("shippingMethod")))
        coupon_code = payload.get("coupon_code", payload.get("couponCode")) or None

        pricing = self.cart.calculate_cart_total(
            [{"product_id": pid, "quantity": qty} for pid, qty in lines], shipping_method, coupon_code
        )
        breakdown = pricing["breakdown"]
        now = self.clock()
        order_number = f"ORD{int(time.time() * 1000)}{self.store.count_orders() + 1}{secrets.token_hex(2).upper()}"
        cod = payment_method == "cod"

        if cod:
            self.inventory.deduct_items(lines)
        else:
            self.inventory.reserve_items(lines, self.config.ORDER_RESERVATION_MINUTES, reference=order_number)

        order = {
            "order_number": order_number,
            "user_id": user_id,
            "customer_info": customer_info,
            "shipping_address": shipping_address,
            "billing_address": billing_address,
            "payment_method": payment_method,
            "payment_status": "pending" if cod else "unpaid",
            "status": "approved" if cod else "pending_admin_approval",
            "shipping_method": shipping_method,
            "coupon_code": breakdown["discount"]["code"],
            "subtotal": money(breakdown["subtotal"]),
            "discount": money(breakdown["discount"]["amount"]),
            "tax": money(breakdown["tax"]["amount"]),
            "shipping_cost": money(breakdown["shipping"]["cost"]),
            "total": money(breakdown["total"]),
            "stock_state": "committed" if cod else "reserved",
            "idempotency_key": idempotency_key,
            "idempotency_scope": scope,
            "notes": str(payload.get("notes") or "")[:500] or None,
            "estimated_delivery": now + timedelta(days=self.cart.estimate_delivery_date(shipping_method)["estimated_days"]),
            "approved_at": now if cod else None,
        }
        items = [
            {
                "product_id": line["product_id"],
                "name": line["name"],
                "price": money(line["unit_price"]),
                "quantity": line["quantity"],
                "image": line.get("image"),
            }
            for line in pricing["items"]
        ]
        try:
            created = self.store.create_order(order, items)
        except ConflictError:
            self._undo_placement_stock(order_number, lines, cod)
            if idempotency_key:
                existing = self.store.get_order_by_idempotency_key(idempotency_key, scope)
                if existing:
                    return existing, False
            raise
        log.info(
            "order created order_id=%s order_number=%s status=%s payment=%s total=%s",
            created["order_id"], order_number, created["status"], payment_method, created["total"],
        )
        if not cod:
            created = self.issue_approval(created, client_ip)
        return created, True

    def _undo_placement_stock(self, order_number: str, lines, cod: bool) -> None:
        if cod:
            for product_id, quantity in lines:
                self.inventory.add_stock(product_id, quantity, f"Order {order_number} not saved")
        else:
            self.inventory.release_reference(order_number)

    def issue_approval(self, order: dict, client_ip: str | None = None) -> dict:
        """Mint an approval token for the order, store its jti and hand the links to the notifier."""
        token, jti = make_approval_token(order["order_id"], "approve", client_ip)
        order = self.store.update_order(order["order_id"], {"approval_jti": jti}) or order
        base = self.config.BACKEND_URL.rstrip("/")
        links = {
            "approve_url": f"{base}/api/orders/{order['order_id']}/approve?token={token}",
            "reject_url": f"{base}/api/orders/{order['order_id']}/reject?token={token}",
        }
        notifier = current_app.extensions.get("storefront.approval_notifier")
        if notifier:
            notifier(order, token, links)
        return order

    # ---------- Reads ----------

    def get_order_for(self, order_id: int, user_id: int | None, admin: bool) -> dict:
        order = self.store.get_order(order_id)
        if not order:
            raise NotFoundError("Order not found")
        if not admin and order.get("user_id") != user_id:
            raise ForbiddenError("Not authorized")
        return order

    # ---------- Transitions ----------

    def approve(self, order_id: int, token: str | None, client_ip: str | None = None) -> dict:
        claims = verify_approval_token(token, order_id)
        order = self.store.get_order(order_id)
        if not order:
            raise NotFoundError("Order not found")
        if order["status"] not in AWAITING_APPROVAL:
            if order.get("approved_at") is not None:
                raise ConflictError("Order already approved")
            raise ValidationError(f"Unable to approve order with status: {order['status']}")
        if not order.get("approval_jti") or claims.get("jti") != order["approval_jti"]:
            raise ForbiddenError("Invalid or expired approval token")

        self._commit_stock(order)
        now = self.clock()
        updated = self.store.update_order(
            order_id,
            {"status": "approved", "payment_status": "paid", "approved_at": now, "approval_jti": None, "stock_state": "committed"},
            expected_statuses=AWAITING_APPROVAL,
        )
        if updated is None:
            return self._lost_race(order_id, "approve", committed=True)
        self._record_admin_action(updated, "approve", claims.get("adminEmail"), client_ip, {"total": updated["total"]})
        log.info("order approved order_id=%s order_number=%s", order_id, updated["order_number"])
        return updated

    def reject(self, order_id: int, token: str | None, client_ip: str | None = None) -> dict:
        claims = verify_approval_token(token, order_id)
        order = self.store.get_order(order_id)
        if not order:
            raise NotFoundError("Order not found")
        if not order.get("approval_jti") or claims.get("jti") != order["approval_jti"]:
            raise ForbiddenError("Invalid or expired token")
        updated = self.store.update_order(
            order_id,
            {"status": "rejected", "rejected_at": self.clock(), "approval_jti": None},
            expected_statuses=AWAITING_APPROVAL,
        )
        if updated is None:
            raise ValidationError("Unable to reject order")
        updated = self._restore_stock(updated)
        self._record_admin_action(updated, "reject", claims.get("adminEmail"), client_ip, {"total": updated["total"]})
        log.info("order rejected order_id=%s order_number=%s", order_id, updated["order_number"])
        return updated

    def cancel(self, order_id: int, user_id: int | None, admin: bool, reason: str | None = None) -> dict:
        order = self.get_order_for(order_id, user_id, admin)
        if not is_valid_transition(order["status"], "cancelled"):
            raise ValidationError(f"Cannot cancel order with status: {order['status']}")
        updated = self.store.update_order(
            order_id,
            {
                "status": "cancelled",
                "cancelled_at": self.clock(),
                "cancellation_reason": (reason or "Customer requested cancellation")[:500],
                "approval_jti": None,
            },
            expected_statuses=(order["status"],),
        )
        if updated is None:
            raise ConflictError("Order changed while cancelling; retry")
        updated = self._restore_stock(updated)
        log.info("order cancelled order_id=%s by_user=%s", order_id, user_id)
        return updated

    def update_status(self, order_id: int, status: str, tracking_number: str | None = None,
                      admin_email: str | None = None, client_ip: str | None = None) -> dict:
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown status: {status}")
        order = self.store.get_order(order_id)
        if not order:
            raise NotFoundError("Order not found")
        old_status = order["status"]
        if not is_valid_transition(old_status, status):
            raise ValidationError(f"Invalid status transition: {old_status} -> {status}")

        now = self.clock()
        fields: dict = {"status": status}
        if tracking_number:
            fields["tracking_number"] = str(tracking_number)[:80]
        if status == "approved":
            self._commit_stock(order)
            fields.update({"approved_at": now, "approval_jti": None, "stock_state": "committed"})
            if order["payment_method"] != "cod":
                fields["payment_status"] = "paid"
        elif status == "delivered":
            fields["delivered_at"] = now
        elif status == "rejected":
            fields.update({"rejected_at": now, "approval_jti": None})
        elif status == "cancelled":
            fields.update({"cancelled_at": now, "approval_jti": None})

        updated = self.store.update_order(order_id, fields, expected_statuses=(old_status,))
        if updated is None:
            return self._lost_race(order_id, "update_status", committed=status == "approved")
        if status in ("rejected", "cancelled"):
            updated = self._restore_stock(updated)
        self._record_admin_action(
            updated, "update_status", admin_email, client_ip,
            {"old_status": old_status, "new_status": status, "tracking_number": tracking_number},
        )
        log.info("order status order_id=%s %s -> %s by=%s", order_id, old_status, status, admin_email)
        return updated

    # ---------- Stock side effects ----------

    def _commit_stock(self, order: dict) -> None:
        if order.get("stock_state") == "reserved":
            self.inventory.commit_reference(order["order_number"])

    def _restore_stock(self, order: dict) -> dict:
        state = order.get("stock_state")
        if state == "reserved":
            self.inventory.release_reference(order["order_number"])
            new_state = "released"
        elif state == "committed":
            for item in order.get("items") or []:
                if item.get("product_id") is None:
                    continue
                try:
                    self.inventory.add_stock(item["product_id"], item["quantity"], f"Returned from order {order['order_number']}")
                except NotFoundError:
                    log.warning("restock skipped, product gone product_id=%s order_id=%s", item["product_id"], order["order_id"])
            new_state = "restocked"
        else:
            return order
        return self.store.update_order(order["order_id"], {"stock_state": new_state}) or order

    def _lost_race(self, order_id: int, action: str, committed: bool) -> dict:
        """A concurrent transition won; undo our commit when the order ended up closed."""
        current = self.store.get_order(order_id)
        if current is None:
            raise NotFoundError("Order not found")
        if committed and current["status"] in ("rejected", "cancelled") and current.get("stock_state") in ("reserved", "released"):
            # we committed the hold after the other side already released it
            self.store.update_order(order_id, {"stock_state": "committed"})
            self._restore_stock(dict(current, stock_state="committed"))
        if current.get("approved_at") is not None and action == "approve":
            raise ConflictError("Order already approved")
        raise ConflictError(f"Order status changed to {current['status']}; retry")

    def _record_admin_action(self, order: dict, action: str, admin_email: str | None,
                             client_ip: str | None, details: dict) -> None:
        self.store.log_admin_action({
            "order_id": order["order_id"],
            "action": action,
            "admin_email": admin_email or "system",
            "details": jsonable(dict(details, order_number=order["order_number"])),
            "ip_address": client_ip,
        })
        log.info("admin action order_id=%s action=%s admin=%s", order["order_id"], action, admin_email or "system")


def order_service() -> OrderService:
    return current_app.extensions["storefront.orders"]


def log_approval_links(order: dict, token: str, links: dict) -> None:
    """Default notifier: record that an approval request went out (email delivery is handled elsewhere)."""
    log.info(
        "approval requested order_id=%s order_number=%s total=%s",
        order["order_id"], order["order_number"], order["total"],
    )


def public_order(order: dict) -> dict:
    return jsonable({k: v for k, v in order.items() if k not in ("approval_jti", "idempotency_scope")})


def _html(title: str, body: str, status: int) -> Response:
    page = f"<h1>{html.escape(title)}</h1>" + (f"<p>{html.escape(body)}</p>" if body else "")
    return Response(page, status=status, mimetype="text/html")


def _client_ip() -> str | None:
    forwarded = request.headers.get("X-Forwarded-For", "")
    return forwarded.split(",")[0].strip() or request.remote_addr


def register_orders(app):
    @app.post("/api/orders")
    @optional_auth
    def place_order():
        payload = request.get_json(silent=True) or {}
        key = (request.headers.get("Idempotency-Key") or "").strip() or None
        if key and len(key) > 128:
            return jsonify({"success": False, "error": "Idempotency-Key too long"}), 400
        order, created = order_service().place_order(payload, current_user_id(), key, _client_ip())
        body = {"success": True, "message": "Order created successfully" if created else "Order already placed",
                "order": public_order(order)}
        return jsonify(body), (201 if created else 200)

    @app.get("/api/orders")
    @requires_auth()
    def my_orders():
        orders = current_store().list_orders(user_id=current_user_id())
        return jsonify({"success": True, "orders": [public_order(o) for o in orders]})

    @app.get("/api/orders/admin/all")
    @requires_auth(role="admin")
    def all_orders():
        status = request.args.get("status")
        orders = current_store().list_orders()
        if status:
            orders = [o for o in orders if o["status"] == status]
        return jsonify({"success": True, "orders": [public_order(o) for o in orders]})

    @app.get("/api/orders/<int:order_id>")
    @requires_auth()
    def get_order(order_id: int):
        order = order_service().get_order_for(order_id, current_user_id(), is_admin())
        return jsonify({"success": True, "order": public_order(order)})

    @app.put("/api/orders/<int:order_id>/cancel")
    @requires_auth()
    def cancel_order(order_id: int):
        reason = (request.get_json(silent=True) or {}).get("reason")
        order = order_service().cancel(order_id, current_user_id(), is_admin(), reason)
        return jsonify({"success": True, "message": "Order cancelled successfully", "order": public_order(order)})

    @app.put("/api/orders/<int:order_id>/status")
    @requires_auth(role="admin")
    def update_order_status(order_id: int):
        body = request.get_json(silent=True) or {}
        status = body.get("status")
        if not status:
            return jsonify({"success": False, "error": "status is required"}), 400
        order = order_service().update_status(
            order_id, str(status), body.get("tracking_number", body.get("trackingNumber")),
            (getattr(request, "user", None) or {}).get("email"), _client_ip(),
        )
        return jsonify({"success": True, "message": "Order status updated", "order": public_order(order)})

    @app.post("/api/orders/<int:order_id>/approval-link")
    @requires_auth(role="admin")
    def reissue_approval(order_id: int):
        svc = order_service()
        order = current_store().get_order(order_id)
        if not order:
            raise NotFoundError("Order not found")
        if order["status"] not in AWAITING_APPROVAL:
            raise ConflictError(f"Order is {order['status']}, not awaiting approval")
        order = svc.issue_approval(order, _client_ip())
        return jsonify({"success": True, "message": "Approval request re-sent", "order_id": order_id})

    @app.get("/api/orders/<int:order_id>/approve")
    def approve_order(order_id: int):
        try:
            order_service().approve(order_id, request.args.get("token"), _client_ip())
        except StorefrontError as e:
            log.warning("approve failed order_id=%s status=%s error=%s", order_id, e.status, e.message)
            return _html(e.message, "", e.status)
        return _html("Order Approved Successfully!", "The customer has been notified.", 200)

    @app.get("/api/orders/<int:order_id>/reject")
    def reject_order(order_id: int):
        try:
            order_service().reject(order_id, request.args.get("token"), _client_ip())
        except StorefrontError as e:
            log.warning("reject failed order_id=%s status=%s error=%s", order_id, e.status, e.message)
            return _html(e.message, "", e.status)
        return _html("Order Rejected", "The order status has been updated to rejected.", 200)
