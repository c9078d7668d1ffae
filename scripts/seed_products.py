#!/usr/bin/env python3
"""Seed the catalog with the default bath-bomb range and opening stock.

Usage:
    export DATABASE_URL=postgresql://...
    python scripts/seed_products.py
    python scripts/seed_products.py --stock 250 --reset-stock

Options:
    --stock INT           Opening quantity per product (default SEED_STOCK env or 100)
    --threshold INT       Low-stock threshold (default 5)
    --reset-stock         Overwrite quantity for products that already exist
    --dry-run             Print what would be inserted

Products are matched by name, so re-running never duplicates rows.
"""
import os
import argparse
import time
import psycopg
from dotenv import load_dotenv

DEFAULT_PRODUCTS = [
    {
        "name": "Calm Lavender Bath Bomb",
        "description": "Soothing lavender with chamomile for a restful soak. Lavender oil, chamomile extract and shea butter.",
        "price": 899,
        "image": "/images/main/calm lavender.png",
        "is_featured": True,
        "is_new": True,
    },
    {
        "name": "Breathe Eucalyptus Bath Bomb",
        "description": "Eucalyptus and peppermint for clarity and refresh. Enriched with cocoa butter.",
        "price": 949,
        "image": "/images/main/breath bath.png",
        "is_featured": True,
        "is_new": True,
    },
    {
        "name": "Glow Citrus Bath Bomb",
        "description": "Bright citrus with vitamin E for a mood lift. Orange, lemon and sweet almond oil.",
        "price": 899,
        "image": "/images/main/Glow Citrus Bath Bomb.png",
        "is_featured": True,
        "is_new": False,
    },
    {
        "name": "Rose Comfort Bath Bomb",
        "description": "Soft rose and vanilla for gentle comfort, with kaolin clay and colloidal oat.",
        "price": 999,
        "image": "/images/main/rose.png",
        "is_featured": False,
        "is_new": False,
    },
    {
        "name": "Balance Green Tea Bath Bomb",
        "description": "Green tea antioxidants and jojoba oil for balanced skin.",
        "price": 949,
        "image": "/images/main/green tea.png",
        "is_featured": False,
        "is_new": False,
    },
    {
        "name": "Unwind Chamomile Bath Bomb",
        "description": "Chamomile and calendula for calming downtime.",
        "price": 899,
        "image": "/images/main/unvind.png",
        "is_featured": False,
        "is_new": False,
    },
]


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--stock", type=int, default=int(os.getenv("SEED_STOCK", "100")))
    ap.add_argument("--threshold", type=int, default=5)
    ap.add_argument("--reset-stock", action="store_true")
    ap.add_argument("--dry-run", action="store_true")
    args = ap.parse_args()

    load_dotenv(os.getenv("DOTENV_PATH", ".env"))
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        raise SystemExit("DATABASE_URL not set (ensure .env exists or export DATABASE_URL)")

    if args.dry_run:
        for p in DEFAULT_PRODUCTS:
            print("DRY-RUN product:", p["name"], p["price"], f"stock={args.stock}")
        return 0

    status = "out-of-stock" if args.stock == 0 else ("low-stock" if args.stock < args.threshold else "in-stock")
    start = time.time()
    created = updated = 0
    with psycopg.connect(db_url) as conn:
        with conn.cursor() as cur:
            for p in DEFAULT_PRODUCTS:
                cur.execute("SELECT product_id FROM products WHERE name = %s", (p["name"],))
                row = cur.fetchone()
                if row:
                    product_id = row[0]
                    if args.reset_stock:
                        cur.execute(
                            "UPDATE inventory SET quantity = %s, restock_level = GREATEST(restock_level, %s), "
                            "status = %s, updated_at = now() WHERE product_id = %s",
                            (args.stock, args.stock, status, product_id),
                        )
                        updated += 1
                    continue
                cur.execute(
                    """
                    INSERT INTO products (name, price, description, image, category, is_new, is_featured)
                    VALUES (%s, %s, %s, %s, 'bath-bombs', %s, %s)
                    RETURNING product_id
                    """,
                    (p["name"], p["price"], p["description"], p["image"], p["is_new"], p["is_featured"]),
                )
                product_id = cur.fetchone()[0]
                cur.execute(
                    """
                    INSERT INTO inventory (product_id, quantity, low_stock_threshold, restock_level, status)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (product_id, args.stock, args.threshold, max(args.stock, 20), status),
                )
                created += 1
        conn.commit()
    elapsed = time.time() - start
    print(f"Seeded {created} new products, reset stock on {updated}; elapsed {elapsed:.2f}s")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
