"""Smoke test runner for the storefront API.
Verifies basic endpoints when the server is already running on localhost:5000.
Usage:
  source .venv/bin/activate && python scripts/run_smoke.py
Env: API_BASE, ADMIN_EMAIL, ADMIN_PASSWORD (admin checks are skipped without a password).
"""
import os, json, secrets, requests
from dotenv import load_dotenv

load_dotenv()
API_BASE = os.getenv("API_BASE", "http://localhost:5000")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@omnora.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

def get(path: str, token: str | None = None):
    h = {"Accept": "application/json"}
    if token: h["Authorization"] = f"Bearer {token}"
    r = requests.get(f"{API_BASE}{path}", headers=h, timeout=15)
    try: data = r.json()
    except ValueError: data = {"raw": r.text}
    return r.status_code, data

def post(path: str, payload: dict, token: str | None = None):
    h = {"Content-Type": "application/json"}
    if token: h["Authorization"] = f"Bearer {token}"
    r = requests.post(f"{API_BASE}{path}", json=payload, headers=h, timeout=20)
    try: data = r.json()
    except ValueError: data = {"raw": r.text}
    return r.status_code, data

results = []

# 1. Health
status, data = get("/health")
results.append(("health", status, data))

# 2. Register a throwaway customer
email = f"smoke_{secrets.token_hex(4)}@example.com"
reg_status, reg_data = post("/api/auth/register", {
    "firstName": "Smoke", "lastName": "Test", "email": email, "password": "Smoke!Test9",
})
cust_token = reg_data.get("access_token") if reg_status == 201 else None
results.append(("customer_register", reg_status, {k: reg_data.get(k) for k in ["token_type", "error"] if k in reg_data}))

# 3. Product list (unauth) page=1
prod_status, prod_data = get("/api/products?page=1&limit=5")
products = prod_data.get("products", []) if isinstance(prod_data, dict) else []
results.append(("products", prod_status, {"items": len(products), "total": prod_data.get("pagination", {}).get("total")}))

# 4. Stock check + cart pricing for the first product in stock
in_stock = [p for p in products if p.get("available_stock", 0) > 0]
if in_stock:
    pid = in_stock[0]["product_id"]
    check_status, check_data = get(f"/api/inventory/check/{pid}")
    results.append(("inventory_check", check_status, check_data))
    calc_status, calc_data = post("/api/cart/calculate", {
        "items": [{"productId": pid, "quantity": 1}], "shippingMethod": "standard", "couponCode": "WELCOME10",
    })
    results.append(("cart_calculate", calc_status, calc_data.get("breakdown") or calc_data))
else:
    print("\nNo products in stock; run scripts/seed_products.py to exercise cart pricing.")

# 5. Customer order history
orders_status, orders_data = get("/api/orders", cust_token)
results.append(("my_orders", orders_status, {"orders": len(orders_data.get("orders", [])) if isinstance(orders_data, dict) else None}))

# 6. Admin-only views
if ADMIN_PASSWORD:
    admin_status, admin_data = post("/api/auth/login", {"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    admin_token = admin_data.get("access_token") if admin_status == 200 else None
    results.append(("admin_login", admin_status, {k: admin_data.get(k) for k in ["token_type", "error"] if k in admin_data}))
    summary_status, summary_data = get("/api/inventory/summary", admin_token)
    results.append(("inventory_summary", summary_status, summary_data.get("summary") or summary_data))
    all_status, all_data = get("/api/orders/admin/all", admin_token)
    results.append(("admin_orders", all_status, {"orders": len(all_data.get("orders", [])) if isinstance(all_data, dict) else None}))
    # role separation: the customer token must not reach admin views
    denied_status, _ = get("/api/inventory/summary", cust_token)
    results.append(("customer_denied_admin", 200 if denied_status == 403 else 500, {"status": denied_status}))
else:
    print("\nADMIN_PASSWORD not set; skipping admin checks.")

# Summarize
failures = []
for name, status, info in results:
    ok = 200 <= status < 300
    print(f"\n{name}: status={status} info={json.dumps(info)}")
    if not ok:
        failures.append(name)

print("\nSmoke Summary: PASS" if not failures else f"Smoke Summary: FAIL -> {failures}")
if failures:
    raise SystemExit(1)
