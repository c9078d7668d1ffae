#!/usr/bin/env python3
"""Create (or promote) an admin account.

Usage:
    export DATABASE_URL=postgresql://...
    python scripts/create_admin.py --email admin@omnora.com
    python scripts/create_admin.py --email ops@omnora.com --password <PASSWORD> --first-name Ops --last-name Team

Options:
    --password TEXT       Password for a new account (auto random if omitted)
    --dry-run             Show what would happen without writing

Behavior:
    - An existing user with that email is promoted to role 'admin'; the password is left untouched.
    - Uses bcrypt (Python) with BCRYPT_ROUNDS (default 12), the same hash the API checks at login.
"""
import os
import argparse
import secrets
import psycopg
from dotenv import load_dotenv
import bcrypt


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--email", type=str, default=None)
    ap.add_argument("--password", type=str, default=None)
    ap.add_argument("--first-name", type=str, default="Store")
    ap.add_argument("--last-name", type=str, default="Admin")
    ap.add_argument("--dry-run", action="store_true")
    args = ap.parse_args()

    load_dotenv(os.getenv("DOTENV_PATH", ".env"))
    db_url = os.getenv("DATABASE_URL")
    if not db_url:
        raise SystemExit("DATABASE_URL not set (ensure .env exists or export DATABASE_URL)")
    email = (args.email or os.getenv("ADMIN_EMAIL", "admin@omnora.com")).strip().lower()

    with psycopg.connect(db_url) as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT user_id, role FROM users WHERE email = %s", (email,))
            row = cur.fetchone()
            if row:
                user_id, role = row
                if role == "admin":
                    print(f"{email} is already an admin (user_id={user_id}).")
                    return 0
                if args.dry_run:
                    print(f"DRY-RUN would promote user_id={user_id} {email} from {role} to admin")
                    return 0
                cur.execute("UPDATE users SET role = 'admin' WHERE user_id = %s", (user_id,))
                conn.commit()
                print(f"Promoted {email} (user_id={user_id}) to admin.")
                return 0

            password = args.password or secrets.token_urlsafe(12)
            if args.dry_run:
                print(f"DRY-RUN would create admin {email} ({args.first_name} {args.last_name})")
                return 0
            rounds = int(os.getenv("BCRYPT_ROUNDS", "12"))
            hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")
            cur.execute(
                """
                INSERT INTO users (first_name, last_name, email, password_hash, role)
                VALUES (%s, %s, %s, %s, 'admin')
                RETURNING user_id
                """,
                (args.first_name, args.last_name, email, hashed),
            )
            user_id = cur.fetchone()[0]
        conn.commit()
    print(f"Created admin {email} (user_id={user_id}). Password: {password if not args.password else '[as provided]'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
